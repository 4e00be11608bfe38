"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在会话编排层统一捕获并转换为用户可见的错误消息。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 conversation_id、model 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、超时、读取中断等。"""


class ApiError(BusinessError):
    """补全服务返回非 2xx/429 错误时抛出。"""


class RateLimitError(BusinessError):
    """补全服务限流错误。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class StreamDecodeError(BusinessError):
    """流式响应出现无法恢复的解码错误（如非法 UTF-8），终止当前流。

    单条 JSON 记录损坏不会抛出此异常，只会跳过该行。
    """


class ConversationNotFoundError(BusinessError):
    """目标会话不存在。"""


class SessionBusyError(BusinessError):
    """已有一轮对话正在进行，拒绝新的发送。"""
