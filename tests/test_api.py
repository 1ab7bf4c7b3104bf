"""HTTP 路由测试：用 httpx.ASGITransport 直接调用 FastAPI 应用，组件使用临时目录。"""

import random

import httpx
import pytest

from persona_chat import main
from persona_chat.api.websocket import WebSocketManager
from persona_chat.core.call_logger import CallLogger
from persona_chat.core.context_builder import ContextBuilder
from persona_chat.core.orchestrator import ConversationOrchestrator
from persona_chat.core.session_store import SessionStore
from persona_chat.core.settings_manager import SettingsManager
from persona_chat.endpoint.client import ModelEndpointClient
from persona_chat.models.persona import HUMAN_ID, Persona
from persona_chat.models.protocol import OrchestratorConfig
from persona_chat.registry.persona_registry import PersonaRegistry


def _endpoint(request: httpx.Request):
    if request.url.path.endswith("/models"):
        return httpx.Response(200, json={"data": [{"id": "model-1"}]})
    return httpx.Response(200, json={"choices": [{"message": {"content": "收到"}}]})


@pytest.fixture
async def api(tmp_path, monkeypatch):
    registry = PersonaRegistry(config_dir=str(tmp_path / "personas"))
    registry.register_persona(Persona(id="ai-a", name="甲"))
    registry.register_persona(Persona(id="ai-b", name="乙"))
    db_path = str(tmp_path / "test.db")
    store = SessionStore(db_path=db_path, registry=registry)
    await store.initialize()
    client = ModelEndpointClient(transport=httpx.MockTransport(_endpoint))
    settings = SettingsManager(db_path=db_path, client=client)
    await settings.initialize()
    ws_manager = WebSocketManager()
    call_logger = CallLogger(log_dir=str(tmp_path / "logs"))
    context_builder = ContextBuilder(store, registry)
    orchestrator = ConversationOrchestrator(
        session_store=store,
        context_builder=context_builder,
        client=client,
        settings=settings,
        registry=registry,
        ws_manager=ws_manager,
        config=OrchestratorConfig(auto_chat_min_delay=0, auto_chat_max_delay=0, auto_chat_turn_limit=2),
        call_logger=call_logger,
        rng=random.Random(1),
    )
    monkeypatch.setattr(main, "app_state", main.AppState(
        session_store=store,
        registry=registry,
        settings=settings,
        client=client,
        ws_manager=ws_manager,
        context_builder=context_builder,
        call_logger=call_logger,
        orchestrator=orchestrator,
    ))
    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
        yield http, orchestrator
    await orchestrator.shutdown()
    await settings.close()
    await store.close()


async def test_settings_flow(api):
    http, _ = api
    resp = await http.put("/api/settings", json={
        "api_key": "sk-abcdef9999", "base_url": "https://api.example.com", "model_name": "",
    })
    assert resp.json()["settings"]["api_key"] == "****9999"

    resp = await http.post("/api/settings/models/fetch", json={})
    body = resp.json()
    assert body["ok"] is True
    assert body["models"] == ["model-1"]
    assert body["selected_model"] == "model-1"

    resp = await http.get("/api/settings")
    assert resp.json()["settings"]["available_models"] == ["model-1"]
    assert resp.json()["last_fetch_status"] == "获取模型列表成功"


async def test_fetch_models_requires_url_and_key(api):
    http, _ = api
    resp = await http.post("/api/settings/models/fetch", json={"base_url": "https://api.example.com"})
    assert resp.status_code == 400


async def test_chat_flow(api):
    http, orchestrator = api
    await http.put("/api/settings", json={
        "api_key": "sk-test", "base_url": "https://api.example.com/v1", "model_name": "model-1",
    })
    resp = await http.post("/api/chats", json={"participant_ids": [HUMAN_ID, "ai-a"]})
    chat_id = resp.json()["chat"]["id"]

    resp = await http.post(f"/api/chats/{chat_id}/messages", json={"content": "hello"})
    assert resp.json()["status"] == "processing"
    await orchestrator.wait_idle(chat_id)

    resp = await http.get(f"/api/chats/{chat_id}/messages")
    assert [m["content"] for m in resp.json()["messages"]] == ["hello", "收到"]

    resp = await http.get(f"/api/chats/{chat_id}/state")
    assert resp.json()["state"]["typing_persona_id"] is None

    resp = await http.get(f"/api/chats/{chat_id}/logs")
    assert resp.json()["logs"][0]["outcome"] == "ok"

    resp = await http.post(f"/api/chats/{chat_id}/auto-chat", json={"active": True})
    assert resp.status_code == 400

    resp = await http.delete(f"/api/chats/{chat_id}")
    assert resp.json() == {"ok": True}
    resp = await http.get(f"/api/chats/{chat_id}")
    assert resp.status_code == 404


async def test_invalid_chat_and_unknown_ids(api):
    http, _ = api
    resp = await http.post("/api/chats", json={"participant_ids": [HUMAN_ID]})
    assert resp.status_code == 400
    resp = await http.post("/api/chats/missing/messages", json={"content": "hi"})
    assert resp.status_code == 404
    resp = await http.get("/api/personas/missing")
    assert resp.status_code == 404


async def test_reset_requires_confirm(api):
    http, _ = api
    await http.post("/api/chats", json={"participant_ids": ["ai-a", "ai-b"]})
    resp = await http.post("/api/settings/reset", json={})
    assert resp.status_code == 400

    resp = await http.post("/api/settings/reset", json={"confirm": True})
    assert resp.json() == {"ok": True}
    resp = await http.get("/api/chats")
    assert resp.json()["chats"] == []
