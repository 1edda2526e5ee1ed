"""
Error taxonomy for order flow handlers.

Every error is an HTTPException so it passes through ``safe_handler`` unchanged
and is rendered by the exception handler in ``main.py`` as
``{"error": <detail>, "code": <code>}``.
"""

from typing import Optional

from fastapi import HTTPException


class OrderFlowError(HTTPException):
    status_code_default = 500
    code = "internal_error"
    detail_default = "Internal error"

    def __init__(
        self,
        detail: Optional[str] = None,
        code: Optional[str] = None,
        headers: Optional[dict] = None,
    ):
        super().__init__(
            status_code=self.status_code_default,
            detail=detail or self.detail_default,
            headers=headers,
        )
        if code:
            self.code = code


class ValidationError(OrderFlowError):
    status_code_default = 400
    code = "validation_error"
    detail_default = "Invalid request"


class Forbidden(OrderFlowError):
    status_code_default = 403
    code = "forbidden"
    detail_default = "Forbidden"


class Unauthorized(Forbidden):
    status_code_default = 401
    code = "unauthorized"
    detail_default = "Unauthorized"


class NotFound(OrderFlowError):
    status_code_default = 404
    code = "not_found"
    detail_default = "Not found"


class Conflict(OrderFlowError):
    status_code_default = 400
    code = "conflict"
    detail_default = "Request conflicts with current state"


class AlreadyCanceled(Conflict):
    code = "already_canceled"
    detail_default = "Order already canceled"


class TooLate(Conflict):
    code = "too_late"
    detail_default = "Order has already shipped"


class WindowExpired(Conflict):
    code = "window_expired"
    detail_default = "Cancellation window has expired"


class RateLimited(OrderFlowError):
    status_code_default = 429
    code = "rate_limited"
    detail_default = "Too many requests"


class UpstreamError(OrderFlowError):
    status_code_default = 502
    code = "upstream_error"
    detail_default = "Upstream provider error"


class InternalError(OrderFlowError):
    status_code_default = 500
    code = "internal_error"
    detail_default = "Internal error"
