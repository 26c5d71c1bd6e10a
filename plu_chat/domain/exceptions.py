"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在对账层或服务层做统一捕获，并渲染为聊天中的错误消息。
"""

from typing import Any, Optional


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 turn_id、conversation_id 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class ValidationError(BusinessError):
    """参数或配置校验失败，发生在任何网络调用之前。"""


class TransportError(BusinessError):
    """webhook 调用失败（非 2xx 或网络异常）。"""


class NetworkError(TransportError):
    """网络层错误，例如连接失败、超时等。"""


class ApiError(TransportError):
    """webhook 返回非 2xx 状态码时抛出。"""


class DecodeError(BusinessError):
    """单行流数据或响应体无法解析；只在本地跳过，不会中断本轮对话。"""


class ReconciliationTimeout(BusinessError):
    """轮询窗口内未观察到服务端落库的助手回复。"""


class PersistenceError(BusinessError):
    """持久化层读写失败。"""


def format_error_message(error: Any, fallback: Optional[str] = None) -> str:
    """把任意错误对象转换为可展示给用户的文本。"""

    default = fallback or "An unexpected error occurred"
    if isinstance(error, str):
        return error or default
    if isinstance(error, BusinessError):
        return error.message or default
    message = getattr(error, "message", None)
    if isinstance(message, str) and message:
        return message
    if isinstance(error, Exception) and str(error):
        return str(error)
    return default
