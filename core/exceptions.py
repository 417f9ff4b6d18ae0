"""
业务异常到协议层状态码的映射

传输层（HTTP/gRPC，不在本仓库内）只需调用 `to_error_response` 即可 1:1 映射错误。
"""
from datetime import datetime, timezone
from http import HTTPStatus
from typing import Optional
import uuid

from pydantic import BaseModel, Field, field_serializer

from shared.codes import BusinessCode
from shared.codes.payment_codes import PAYMENT_CODE_CATEGORY, PaymentCode
from domain.common.exceptions import BusinessException


_BUSINESS_CODE_STATUS = {
    BusinessCode.PARAM_ERROR: HTTPStatus.BAD_REQUEST,
    BusinessCode.PARAM_MISSING: HTTPStatus.BAD_REQUEST,
    BusinessCode.PARAM_TYPE_ERROR: HTTPStatus.BAD_REQUEST,
    BusinessCode.PARAM_VALIDATION_ERROR: HTTPStatus.UNPROCESSABLE_ENTITY,

    BusinessCode.BUSINESS_ERROR: HTTPStatus.BAD_REQUEST,
    BusinessCode.NOT_FOUND: HTTPStatus.NOT_FOUND,
    BusinessCode.CONFLICT: HTTPStatus.CONFLICT,

    BusinessCode.SYSTEM_ERROR: HTTPStatus.INTERNAL_SERVER_ERROR,
    BusinessCode.DATABASE_ERROR: HTTPStatus.INTERNAL_SERVER_ERROR,
    BusinessCode.NETWORK_ERROR: HTTPStatus.INTERNAL_SERVER_ERROR,
    BusinessCode.SERVICE_UNAVAILABLE: HTTPStatus.SERVICE_UNAVAILABLE,

    BusinessCode.RATE_LIMIT_ERROR: HTTPStatus.TOO_MANY_REQUESTS,
    BusinessCode.TOO_MANY_REQUESTS: HTTPStatus.TOO_MANY_REQUESTS,
}

_CATEGORY_STATUS = {
    "validation": HTTPStatus.UNPROCESSABLE_ENTITY,
    "not_found": HTTPStatus.NOT_FOUND,
    "conflict": HTTPStatus.CONFLICT,
    "rate_limited": HTTPStatus.TOO_MANY_REQUESTS,
    "external_processor": HTTPStatus.BAD_GATEWAY,
    "internal": HTTPStatus.INTERNAL_SERVER_ERROR,
}


def business_code_to_http_status(code: int) -> HTTPStatus:
    """根据业务码映射HTTP状态码（默认400）。"""
    try:
        return _BUSINESS_CODE_STATUS[BusinessCode(code)]
    except (ValueError, KeyError):
        pass
    try:
        category = PAYMENT_CODE_CATEGORY[PaymentCode(code)]
    except (ValueError, KeyError):
        return HTTPStatus.BAD_REQUEST
    if code == PaymentCode.PROVIDER_TIMEOUT:
        return HTTPStatus.GATEWAY_TIMEOUT
    return _CATEGORY_STATUS[category]


class ErrorDetail(BaseModel):
    """错误详情"""
    type: str
    category: str
    details: Optional[dict] = None
    field: Optional[str] = None
    request_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_serializer('timestamp')
    def serialize_timestamp(self, timestamp: datetime) -> str:
        """序列化时间戳为 UTC ISO8601，统一使用 Z 结尾"""
        return timestamp.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class ErrorResponse(BaseModel):
    code: int
    message: str
    status: int
    error: ErrorDetail
    retry_after: Optional[float] = None


def to_error_response(exc: BusinessException, request_id: Optional[str] = None) -> ErrorResponse:
    """把业务异常渲染为统一的错误响应结构"""
    status = business_code_to_http_status(exc.code)
    return ErrorResponse(
        code=int(exc.code),
        message=exc.message,
        status=int(status),
        error=ErrorDetail(
            type=exc.error_type,
            category=exc.category,
            details=exc.details,
            field=exc.field,
            request_id=request_id or str(uuid.uuid4()),
        ),
        retry_after=getattr(exc, "retry_after", None),
    )
