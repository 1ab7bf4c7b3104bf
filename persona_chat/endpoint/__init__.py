"""模型接口：OpenAI 兼容的模型发现与对话补全客户端，以及错误分类。"""
from persona_chat.endpoint.client import ModelEndpointClient, base_url_candidates
from persona_chat.endpoint.errors import (
    AuthError,
    EndpointClientError,
    EndpointError,
    NetworkError,
    NotConfiguredError,
    ParseError,
    RateLimitError,
)

__all__ = [
    "ModelEndpointClient",
    "base_url_candidates",
    "EndpointClientError",
    "AuthError",
    "NetworkError",
    "EndpointError",
    "RateLimitError",
    "ParseError",
    "NotConfiguredError",
]
