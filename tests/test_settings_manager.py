"""SettingsManager 测试：设置持久化与「获取模型列表」流程。"""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from persona_chat.core.settings_manager import FETCH_SUCCESS_MESSAGE, SettingsManager
from persona_chat.endpoint.client import ModelEndpointClient
from persona_chat.endpoint.errors import AuthError, NetworkError, NotConfiguredError
from persona_chat.models.protocol import ModelDiscoveryResult


@pytest.fixture
def client():
    client = MagicMock()
    client.discover_models = AsyncMock()
    return client


@pytest.fixture
async def settings(tmp_path, client):
    manager = SettingsManager(db_path=str(tmp_path / "settings.db"), client=client)
    await manager.initialize()
    yield manager
    await manager.close()


async def test_defaults_are_unconfigured(settings):
    config = settings.snapshot()
    assert config.base_url == ""
    assert not config.is_configured


async def test_save_and_reload(tmp_path, settings):
    await settings.save(" sk-abcdef1234 ", "https://api.example.com/v1 ", "model-1")
    assert settings.snapshot().api_key == "sk-abcdef1234"

    other = SettingsManager(db_path=str(tmp_path / "settings.db"))
    await other.initialize()
    try:
        config = other.snapshot()
        assert config.base_url == "https://api.example.com/v1"
        assert config.model_name == "model-1"
        assert config.is_configured
        assert config.masked()["api_key"] == "****1234"
    finally:
        await other.close()


async def test_snapshot_is_replaced_not_mutated(settings):
    await settings.save("sk-1", "https://a.example.com/v1", "m1")
    before = settings.snapshot()
    await settings.save("sk-2", "https://b.example.com/v1", "m2")
    assert before.api_key == "sk-1"
    assert settings.snapshot().api_key == "sk-2"


async def test_fetch_models_with_url_correction(settings, client):
    client.discover_models.return_value = ModelDiscoveryResult(
        models=["gpt-4o", "gpt-4o-mini"], active_base_url="https://api.example.com/v1",
    )
    result = await settings.fetch_models("https://api.example.com/", "sk-test", current_model="unknown")

    client.discover_models.assert_awaited_once_with("https://api.example.com/", "sk-test")
    assert result.ok
    assert result.url_corrected
    assert result.active_base_url == "https://api.example.com/v1"
    assert result.selected_model == "gpt-4o"
    assert result.status_message == FETCH_SUCCESS_MESSAGE
    assert settings.snapshot().available_models == ("gpt-4o", "gpt-4o-mini")
    # 地址只返回给调用方，不自动保存
    assert settings.snapshot().base_url == ""


async def test_fetch_models_keeps_current_model(settings, client):
    client.discover_models.return_value = ModelDiscoveryResult(
        models=["a", "b"], active_base_url="https://api.example.com/v1",
    )
    result = await settings.fetch_models("https://api.example.com/v1", "sk-test", current_model="b")
    assert result.selected_model == "b"
    assert not result.url_corrected


async def test_fetch_models_empty_list(settings, client):
    client.discover_models.return_value = ModelDiscoveryResult(models=[], active_base_url="https://x.example.com/v1")
    result = await settings.fetch_models("https://x.example.com/v1", "sk-test", current_model="m")
    assert result.ok
    assert result.models == []
    assert result.selected_model == "m"


async def test_fetch_models_failure_only_sets_status(settings, client):
    await settings.save("sk-1", "https://a.example.com/v1", "m1")
    client.discover_models.side_effect = NetworkError("refused")

    result = await settings.fetch_models("https://bad.example.com", "sk-1")
    assert not result.ok
    assert result.status_message == NetworkError.user_message
    assert settings.last_fetch_status == NetworkError.user_message
    assert settings.snapshot().base_url == "https://a.example.com/v1"

    client.discover_models.side_effect = AuthError("HTTP 401")
    result = await settings.fetch_models("https://a.example.com/v1", "sk-bad")
    assert result.status_message == AuthError.user_message


async def test_reset(settings):
    await settings.save("sk-1", "https://a.example.com/v1", "m1")
    await settings.update_models(["m1", "m2"])
    await settings.reset()
    assert settings.snapshot().available_models == ()
    assert not settings.snapshot().is_configured
    assert await settings.load() == settings.snapshot()


async def test_fetch_models_malformed_url_reports_status(tmp_path):
    def handler(request):
        raise AssertionError("no request expected")

    client = ModelEndpointClient(transport=httpx.MockTransport(handler))
    manager = SettingsManager(db_path=str(tmp_path / "settings.db"), client=client)
    await manager.initialize()
    try:
        result = await manager.fetch_models("https://host.example:abc", "sk-test")
        assert not result.ok
        assert result.status_message == NotConfiguredError.user_message
        assert manager.snapshot().available_models == ()
    finally:
        await manager.close()
