"""模型接口客户端：封装对 OpenAI 兼容接口的所有出站调用。

- discover_models：按候选 URL 依次请求 {base}/models，返回第一个可解析的模型列表，
  并把实际可用的 base URL 报告给调用方（用户常漏写 /v1 或多写结尾斜杠）。
- complete：按人设翻译历史后请求 {base}/chat/completions，返回生成文本。

HTTP 状态与异常统一映射为 persona_chat.endpoint.errors 中的错误类型。
"""

from __future__ import annotations

import logging
import time
from typing import Any, Mapping, Sequence

import httpx

from persona_chat.core.context_builder import build_completion_messages
from persona_chat.endpoint.errors import (
    AuthError,
    EndpointError,
    NetworkError,
    NotConfiguredError,
    ParseError,
    RateLimitError,
)
from persona_chat.models.persona import Persona
from persona_chat.models.protocol import EndpointConfig, ModelDiscoveryResult
from persona_chat.models.session import Message

logger = logging.getLogger(__name__)

# 用户可能直接粘贴完整的接口路径，先去掉这些后缀再生成候选
_KNOWN_PATH_SUFFIXES = ("/chat/completions", "/completions", "/models")


def base_url_candidates(base_url: str) -> list[str]:
    """生成 base URL 的规范化候选（有序、去重）：原样（去结尾斜杠）在前，补 /v1 在后。"""
    url = base_url.strip().rstrip("/")
    for suffix in _KNOWN_PATH_SUFFIXES:
        if url.endswith(suffix):
            url = url[: -len(suffix)].rstrip("/")
            break
    if not url:
        return []

    candidates = [url]
    if not url.endswith("/v1"):
        candidates.append(f"{url}/v1")
    return candidates


def parse_model_list(data: Any) -> list[str]:
    """从常见的模型列表结构中取出模型 id，保持顺序并去重。

    支持 {"data": [{"id": ...}]}（OpenAI）、{"models": [{"name"/"id": ...}]} 以及裸列表。
    结构不符时抛 ParseError；空列表是合法结果。
    """
    if isinstance(data, dict):
        items = data.get("data")
        if items is None:
            items = data.get("models")
    else:
        items = data
    if not isinstance(items, list):
        raise ParseError("model list not found in response")

    models: list[str] = []
    for item in items:
        if isinstance(item, str):
            model_id = item
        elif isinstance(item, dict):
            model_id = item.get("id") or item.get("name") or item.get("model")
        else:
            model_id = None
        if not isinstance(model_id, str) or not model_id:
            raise ParseError("unrecognized model entry in response")
        if model_id not in models:
            models.append(model_id)
    return models


def parse_completion_text(data: Any) -> str:
    """从 chat/completions 响应中取出生成文本；content 为空或 null 时返回空串。"""
    try:
        choice = data["choices"][0]
    except (KeyError, IndexError, TypeError):
        raise ParseError("choices missing in completion response") from None
    if not isinstance(choice, dict):
        raise ParseError("unrecognized choice in completion response")

    message = choice.get("message")
    if isinstance(message, dict):
        content = message.get("content")
    else:
        content = choice.get("text")

    if content is None:
        return ""
    if isinstance(content, list):
        # 部分兼容接口返回分段内容 [{"type": "text", "text": "..."}]
        return "".join(part.get("text", "") for part in content if isinstance(part, dict))
    if not isinstance(content, str):
        raise ParseError("unrecognized content in completion response")
    return content


class ModelEndpointClient:
    """OpenAI 兼容接口客户端；每次调用使用调用方传入的配置快照，不持有可变配置。"""

    def __init__(
        self,
        timeout: float = 60.0,
        connect_timeout: float = 10.0,
        temperature: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """transport 供测试注入 httpx.MockTransport。"""
        self.timeout = httpx.Timeout(timeout, connect=connect_timeout)
        self.temperature = temperature
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    @staticmethod
    def _headers(api_key: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}

    async def discover_models(self, base_url: str, api_key: str) -> ModelDiscoveryResult:
        """依次尝试候选 URL 的 /models，返回第一个成功且可解析的结果。

        401/403 立即抛 AuthError，429 立即抛 RateLimitError；全部候选都失败时：
        全是连接错误抛 NetworkError，出现过 2xx 但无法解析抛 ParseError，否则抛 EndpointError。
        """
        if not api_key:
            raise AuthError("api key missing")
        candidates = base_url_candidates(base_url)
        if not candidates:
            raise NotConfiguredError("base url missing")

        logger.info("[CALL] discover_models: base_url=%s candidates=%s", base_url, candidates)
        network_errors = 0
        parse_failed = False
        last_status: int | None = None

        async with self._client() as client:
            for candidate in candidates:
                try:
                    response = await client.get(f"{candidate}/models", headers=self._headers(api_key))
                except httpx.InvalidURL as e:
                    logger.warning("[CALL] discover_models: invalid base url %r: %s", base_url, e)
                    raise NotConfiguredError(f"invalid base url: {e}") from e
                except httpx.HTTPError as e:
                    network_errors += 1
                    logger.info("[CALL] discover_models: candidate=%s connection failed: %s", candidate, e)
                    continue

                status = response.status_code
                if status in (401, 403):
                    logger.warning("[CALL] discover_models: candidate=%s rejected credentials (%s)", candidate, status)
                    raise AuthError(f"HTTP {status}")
                if status == 429:
                    raise RateLimitError()
                if not response.is_success:
                    last_status = status
                    logger.info("[CALL] discover_models: candidate=%s status=%s", candidate, status)
                    continue

                try:
                    models = parse_model_list(response.json())
                except (ValueError, ParseError) as e:
                    parse_failed = True
                    logger.info("[CALL] discover_models: candidate=%s unparseable body: %s", candidate, e)
                    logger.debug("[CALL] discover_models: body preview=%s", response.text[:200])
                    continue

                logger.info(
                    "[CALL] discover_models: ok active_base_url=%s models=%d", candidate, len(models),
                )
                return ModelDiscoveryResult(models=models, active_base_url=candidate)

        if network_errors == len(candidates):
            raise NetworkError(f"could not connect to {base_url}")
        if parse_failed:
            raise ParseError("no candidate returned a recognizable model list")
        raise EndpointError(last_status or 0)

    async def complete(
        self,
        config: EndpointConfig,
        persona: Persona,
        history: Sequence[Message],
        participants: Mapping[str, Persona],
    ) -> str:
        """为 persona 生成下一条回复；history 为派发时的快照。"""
        if not config.api_key:
            raise AuthError("api key missing")
        if not config.base_url or not config.model_name:
            raise NotConfiguredError("base url or model missing")

        messages = build_completion_messages(persona, history, participants)
        payload: dict[str, Any] = {
            "model": config.model_name,
            "messages": [m.model_dump() for m in messages],
        }
        if self.temperature is not None:
            payload["temperature"] = self.temperature

        url = f"{config.base_url.rstrip('/')}/chat/completions"
        logger.info(
            "[CALL] complete: persona_id=%s model=%s messages=%d api_key=%s",
            persona.id, config.model_name, len(messages), "set" if config.api_key else "unset",
        )
        started = time.monotonic()
        try:
            async with self._client() as client:
                response = await client.post(url, headers=self._headers(config.api_key), json=payload)
        except httpx.InvalidURL as e:
            logger.warning("[CALL] complete: invalid base url %r: %s", config.base_url, e)
            raise NotConfiguredError(f"invalid base url: {e}") from e
        except httpx.HTTPError as e:
            logger.warning("[CALL] complete: connection failed persona_id=%s: %s", persona.id, type(e).__name__)
            raise NetworkError(str(e)) from e

        status = response.status_code
        if status in (401, 403):
            raise AuthError(f"HTTP {status}")
        if status == 429:
            raise RateLimitError()
        if not response.is_success:
            logger.debug("[CALL] complete: error body preview=%s", response.text[:200])
            raise EndpointError(status)

        try:
            data = response.json()
        except ValueError as e:
            # 含 JSONDecodeError 与非法 UTF-8 的 UnicodeDecodeError
            raise ParseError("completion body is not JSON") from e
        text = parse_completion_text(data)
        logger.info(
            "[CALL] complete: persona_id=%s done in %dms output_len=%d",
            persona.id, int((time.monotonic() - started) * 1000), len(text),
        )
        return text
