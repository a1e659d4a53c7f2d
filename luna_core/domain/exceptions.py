"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError。
编排层（ChatOrchestrator）会在边界处捕获它们，并转换为一条
助手消息，UI 层永远不会收到异常。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 trace_id、provider 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、超时等。"""


class ApiError(BusinessError):
    """远端服务返回非 2xx/429 错误时抛出。"""


class RateLimitError(BusinessError):
    """远端服务限流。本项目不做重试/退避，直接记为失败回合。"""


class MissingPayloadError(ApiError):
    """远端服务正常响应，但缺少动作需要的数据（如图片、视频链接）。"""


class ValidationError(BusinessError):
    """参数或配置校验失败，例如缺少 API Key、附件超过大小上限。"""


class StorageError(BusinessError):
    """历史记录读写失败（文件损坏、磁盘不可写等），code 为 STORE_*_ERROR。"""
