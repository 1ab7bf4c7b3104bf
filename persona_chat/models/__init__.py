"""统一导出人设、会话与协议相关数据模型，供其他模块引用。"""
from persona_chat.models.persona import HUMAN_ID, Persona
from persona_chat.models.protocol import (
    ChatCompletionMessage,
    ChatRunState,
    EndpointConfig,
    ModelDiscoveryResult,
    OrchestratorConfig,
)
from persona_chat.models.session import SYSTEM_SENDER_ID, ChatSession, ChatSummary, Message

__all__ = [
    "HUMAN_ID",
    "SYSTEM_SENDER_ID",
    "Persona",
    "Message",
    "ChatSession",
    "ChatSummary",
    "EndpointConfig",
    "ModelDiscoveryResult",
    "ChatCompletionMessage",
    "ChatRunState",
    "OrchestratorConfig",
]
