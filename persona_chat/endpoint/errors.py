"""模型接口错误分类。

每个错误都带一条固定的 user_message，供编排器写入聊天系统消息或设置页提示；
其中不包含服务端原始响应体或 API Key。
"""

from __future__ import annotations


class EndpointClientError(Exception):
    """所有模型接口错误的基类。"""

    kind = "error"
    user_message = "模型接口调用失败。"


class NotConfiguredError(EndpointClientError):
    """接口地址或模型名尚未配置，或地址本身无法解析。"""

    kind = "not_configured"
    user_message = "模型接口地址无效或尚未配置，请在设置中检查地址与模型名称。"


class AuthError(EndpointClientError):
    """API Key 缺失或无效（401/403），不会自动重试。"""

    kind = "auth"
    user_message = "API Key 无效或缺失，请在设置中检查。"


class NetworkError(EndpointClientError):
    """连接失败或超时，可由用户手动重试。"""

    kind = "network"
    user_message = "网络连接失败，请检查接口地址或稍后重试。"


class EndpointError(EndpointClientError):
    """非 2xx 且非鉴权、非限流的响应；只暴露状态码。"""

    kind = "endpoint"

    def __init__(self, status_code: int, message: str = ""):
        super().__init__(message or f"Endpoint returned HTTP {status_code}")
        self.status_code = status_code

    @property
    def user_message(self) -> str:  # type: ignore[override]
        return f"模型接口返回错误（HTTP {self.status_code}）。"


class RateLimitError(EndpointError):
    """服务端明确限流（429），与硬失败区分，便于以后做退避。"""

    kind = "rate_limit"

    def __init__(self, message: str = ""):
        super().__init__(429, message or "Endpoint rate limit exceeded")

    @property
    def user_message(self) -> str:  # type: ignore[override]
        return "请求过于频繁，已被模型接口限流，请稍后再试。"


class ParseError(EndpointClientError):
    """响应不是可识别的结构。"""

    kind = "parse"
    user_message = "模型接口返回了无法识别的响应。"
