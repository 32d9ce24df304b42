"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在服务层或调用方做统一捕获与提示。

分类：
- 瞬时错误（RateLimitError / NetworkError）：在网关内部按退避策略重试，
  超过上限后才向上抛出。
- 致命错误（AuthError）：凭证无效，绝不重试。
- 远端执行错误（RunFailedError / RunTimeoutError）：原样抛给调用方。
- 良性错误（DuplicateThreadError / FollowUpLimitError）：由编排层消化。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 run_id、external_id 等）。
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
    """远端 API 返回不可重试的非 2xx 错误时抛出。"""


class AuthError(ApiError):
    """认证失败（HTTP 401），不做任何重试。"""


class RateLimitError(BusinessError):
    """远端限流错误（HTTP 429），重试次数耗尽后抛出。"""


class ValidationError(BusinessError):
    """参数或配置校验失败。"""


class NotFoundError(BusinessError):
    """请求的记录不存在。"""


class DuplicateThreadError(BusinessError):
    """同一个外部会话已存在线程映射。

    existing 属性携带已存在的 ConversationThread，调用方应直接复用它。
    """

    def __init__(self, code: str, message: str, existing=None, **extra):
        super().__init__(code=code, message=message, http_status=409, **extra)
        self.existing = existing


class RunFailedError(BusinessError):
    """远端 run 以失败状态结束。"""

    def __init__(self, code: str, message: str, run_id=None, remote_status=None, detail=None, **extra):
        super().__init__(code=code, message=message, http_status=502, **extra)
        self.run_id = run_id
        self.remote_status = remote_status
        self.detail = detail


class RunTimeoutError(RunFailedError):
    """在等待上限内 run 没有结束。"""


class FollowUpLimitError(BusinessError):
    """连续 3 条均为己方消息，拒绝继续跟进（策略拒绝，不是故障）。"""
