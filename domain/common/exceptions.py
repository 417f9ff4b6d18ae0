"""领域层业务异常定义，供领域、应用与基础设施使用。

核心（core）层仅负责把异常映射为协议层状态码，领域层不反向依赖核心层。

异常按类别组织：
- Validation: 调用方需修正输入，不自动重试
- NotFound: 资源不存在
- Conflict: 状态冲突（非法状态转换、处理中）
- RateLimited: 超出配额，调用方在 retry_after 之后重试
- ExternalProcessor: 外部支付处理方失败
- Internal: 存储/缓存故障
"""
from __future__ import annotations

from typing import Optional
from shared.codes import BusinessCode


class BusinessException(Exception):
    """业务异常基类"""

    category: str = "business"

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
        message_key: Optional[str] = None,
        format_params: Optional[dict] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        self.message_key = message_key
        self.format_params = format_params
        super().__init__(self.message)


class DomainValidationException(BusinessException):
    category = "validation"

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: dict | None = None,
        message_key: str | None = None,
        format_params: dict | None = None,
        code: int = BusinessCode.PARAM_VALIDATION_ERROR,
        error_type: str = "DomainValidationError",
    ):
        super().__init__(
            code=code,
            message=message,
            error_type=error_type,
            details=details,
            field=field,
            message_key=message_key or "validation.domain",
            format_params=format_params,
        )


class ResourceNotFoundException(BusinessException):
    category = "not_found"

    def __init__(
        self,
        message: str,
        *,
        code: int = BusinessCode.NOT_FOUND,
        error_type: str = "NotFound",
        details: dict | None = None,
        message_key: str | None = None,
    ):
        super().__init__(
            code=code,
            message=message,
            error_type=error_type,
            details=details,
            message_key=message_key or "resource.not_found",
        )


class ConflictException(BusinessException):
    """资源当前状态不允许该操作。调用方应查询状态，而不是盲目重试。"""

    category = "conflict"

    def __init__(
        self,
        message: str,
        *,
        code: int = BusinessCode.CONFLICT,
        error_type: str = "Conflict",
        details: dict | None = None,
        field: str | None = None,
        message_key: str | None = None,
    ):
        super().__init__(
            code=code,
            message=message,
            error_type=error_type,
            details=details,
            field=field,
            message_key=message_key or "resource.conflict",
        )


class RateLimitedException(BusinessException):
    """限流异常，retry_after 为建议的重试等待秒数"""

    category = "rate_limited"

    def __init__(self, retry_after: float, *, subject: Optional[str] = None):
        self.retry_after = retry_after
        details = {"retry_after": retry_after}
        if subject:
            details["subject"] = subject
        super().__init__(
            code=BusinessCode.TOO_MANY_REQUESTS,
            message="Too many requests, please try again later",
            error_type="RateLimited",
            details=details,
            message_key="rate.limited",
            format_params={"retry_after": retry_after},
        )


class InternalServiceException(BusinessException):
    """存储或缓存故障。原始异常只记录日志，不向外泄漏。"""

    category = "internal"

    def __init__(self, message: str = "Internal service error", *, details: Optional[dict] = None):
        super().__init__(
            code=BusinessCode.SYSTEM_ERROR,
            message=message,
            error_type="InternalError",
            details=details,
            message_key="error.internal",
        )
