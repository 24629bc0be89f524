"""
JSON envelope shared by every API route.

success: {"success": true, "data": ..., "message": ..., "timestamp": ...}
error:   {"success": false, "error": {"code", "message", "details"}, "timestamp": ...}
"""

from datetime import datetime, timezone
from typing import Any, NamedTuple, Optional

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from app.services.errors import PaymentError, PaymentGatewayError


class ErrorCode(NamedTuple):
    code: str
    message: str
    status: int


class ApiErrors:
    UNAUTHORIZED = ErrorCode("UNAUTHORIZED", "غير مصرح لك بالوصول", 401)
    FORBIDDEN = ErrorCode("FORBIDDEN", "غير مسموح لك بهذا الإجراء", 403)
    NOT_FOUND = ErrorCode("NOT_FOUND", "الموارد المطلوبة غير موجودة", 404)
    VALIDATION_ERROR = ErrorCode("VALIDATION_ERROR", "البيانات المرسلة غير صحيحة", 400)
    DUPLICATE_ERROR = ErrorCode("DUPLICATE_ERROR", "البيانات مكررة", 409)
    INTERNAL_ERROR = ErrorCode("INTERNAL_ERROR", "حدث خطأ داخلي في الخادم", 500)


class ApiError(Exception):
    """Raised by routes; rendered by the exception handler in app.main."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 400,
        details: Optional[Any] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details

    @classmethod
    def from_code(cls, error: ErrorCode, message: Optional[str] = None, details: Optional[Any] = None) -> "ApiError":
        return cls(error.code, message or error.message, error.status, details)

    @classmethod
    def from_service_error(cls, error: PaymentError) -> "ApiError":
        details = error.details
        if isinstance(error, PaymentGatewayError):
            details = {**(details or {}), "kind": error.kind.value, "retryable": error.retryable}
        return cls(error.code, error.message, error.status_code, details)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def success_response(data: Any = None, message: Optional[str] = None, status_code: int = 200) -> JSONResponse:
    content = {
        "success": True,
        "data": data,
        "timestamp": _timestamp(),
    }
    if message:
        content["message"] = message
    return JSONResponse(status_code=status_code, content=jsonable_encoder(content))


def error_response(
    code: str,
    message: str,
    status_code: int = 400,
    details: Optional[Any] = None,
) -> JSONResponse:
    error = {"code": code, "message": message}
    if details is not None:
        error["details"] = details
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder({
            "success": False,
            "error": error,
            "timestamp": _timestamp(),
        }),
    )
