"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 Web 层做统一捕获与用户提示。

凭证层错误（BrokerUnavailable / DelegationDenied / InitializationFailed）
会阻塞后续所有调用，直到上层重新初始化成功。
"""

from typing import Any, Optional


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "UPSTREAM_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 role_arn、model_id 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class BrokerUnavailable(BusinessError):
    """身份代理不可达（网络错误、超时、服务端 5xx、限流），调用方可重试。"""

    def __init__(self, message: str, **extra):
        super().__init__(code="BROKER_UNAVAILABLE", message=message, http_status=502, **extra)


class InitializationFailed(BusinessError):
    """首次初始化过程中的其他错误，不会自动重试。"""

    def __init__(self, message: str, code: str = "INITIALIZATION_FAILED", **extra):
        super().__init__(code=code, message=message, http_status=500, **extra)


class DelegationDenied(InitializationFailed):
    """身份代理明确拒绝委托，视为配置级致命错误。"""

    def __init__(self, message: str, **extra):
        super().__init__(message, code="DELEGATION_DENIED", **extra)


class EmptyConversation(BusinessError):
    """发送前发现对话为空。正常情况下归一化保证不会出现。"""

    def __init__(self, message: str = "Normalized conversation is empty"):
        super().__init__(code="EMPTY_CONVERSATION", message=message, http_status=500)


class UnexpectedResponseShape(BusinessError):
    """模型返回结构中缺少预期的内容字段。"""

    def __init__(self, message: str, raw: Any = None):
        super().__init__(code="UNEXPECTED_RESPONSE_SHAPE", message=message, http_status=502)
        self.raw = raw


class UpstreamError(BusinessError):
    """调用模型时的传输错误或厂商返回的错误。

    status_code 与 request_id 原样保留，便于运维排查；
    传输层错误（无 HTTP 响应）时 status_code 为 None。
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        **extra,
    ):
        super().__init__(
            code="UPSTREAM_ERROR",
            message=message,
            http_status=502,
            status_code=status_code,
            request_id=request_id,
            **extra,
        )
        self.status_code = status_code
        self.request_id = request_id


class StreamTransportError(BusinessError):
    """流式传输中途失败。已经交付的增量仍然有效，不会回滚。"""

    def __init__(self, message: str, **extra):
        super().__init__(code="STREAM_TRANSPORT_ERROR", message=message, http_status=502, **extra)
