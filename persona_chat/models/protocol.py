"""编排器与模型接口之间的协议：接口配置、模型发现结果、请求消息与运行状态。

作为编排、上下文构建、接口调用的统一数据结构，不依赖具体存储格式。
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class EndpointConfig(BaseModel):
    """OpenAI 兼容接口的配置；只在保存设置时整体替换，进行中的请求持有各自的快照。"""

    model_config = ConfigDict(frozen=True)

    base_url: str = ""
    api_key: str = ""
    model_name: str = ""
    available_models: tuple[str, ...] = ()

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url and self.api_key and self.model_name)

    def masked(self) -> dict:
        """供展示层读取的配置：API Key 只露出末四位。"""
        key = self.api_key
        return {
            "base_url": self.base_url,
            "api_key": f"****{key[-4:]}" if len(key) > 4 else ("****" if key else ""),
            "model_name": self.model_name,
            "available_models": list(self.available_models),
        }


class ModelDiscoveryResult(BaseModel):
    """模型发现结果：模型列表与实际可用的 base URL（可能已被自动修正）。"""

    models: list[str] = Field(default_factory=list)
    active_base_url: str = ""


class ChatCompletionMessage(BaseModel):
    """发给 chat/completions 的单条消息。"""

    role: Literal["system", "user", "assistant"] = "user"
    content: str = ""


class ChatRunState(BaseModel):
    """单个聊天的瞬时编排状态（不持久化）。

    打字状态按聊天保存：typing_persona_id 只属于 chat_id 这个聊天，
    展示层不需要再做跨聊天过滤。
    """

    chat_id: str
    auto_chat_active: bool = False
    typing_persona_id: str | None = None
    pending_request_token: str | None = None
    last_error: str | None = None

    @property
    def typing_chat_id(self) -> str | None:
        return self.chat_id if self.typing_persona_id else None


class OrchestratorConfig(BaseModel):
    """编排行为配置：自动对话节奏、历史窗口与可选的连续轮数上限。"""

    auto_chat_min_delay: float = 1.5
    auto_chat_max_delay: float = 4.0
    history_limit: int = 50
    auto_chat_turn_limit: int | None = None  # None 表示不限轮数
