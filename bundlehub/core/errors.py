"""Typed domain errors.

Services raise these; ``main.py`` maps them to HTTP responses of the form
``{"error": {"message": ..., "code": ..., **details}}``.
"""

from typing import Any, Dict, Optional


class AppError(Exception):
    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    default_message: str = "An unexpected error occurred. Please try again."

    def __init__(self, message: Optional[str] = None, code: Optional[str] = None, **details: Any):
        self.message = message or self.default_message
        if code:
            self.code = code
        self.details: Dict[str, Any] = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body = {"message": self.message, "code": self.code, "statusCode": self.status_code}
        body.update(self.details)
        return body


class ValidationError(AppError):
    status_code = 400
    code = "VALIDATION_ERROR"
    default_message = "Invalid request data"


class InvalidStateError(AppError):
    status_code = 400
    code = "INVALID_STATE"
    default_message = "Operation not allowed in the current state"


class InvalidCodeError(AppError):
    status_code = 400
    code = "INVALID_OTP"
    default_message = "Invalid OTP. Please check your email and try again."


class AlreadyUsedError(AppError):
    status_code = 400
    code = "OTP_ALREADY_USED"
    default_message = "This OTP has already been used. Please request a new one."


class ExpiredError(AppError):
    status_code = 400
    code = "OTP_EXPIRED"
    default_message = "OTP has expired. Please request a new one."


class UnauthorizedError(AppError):
    status_code = 401
    code = "UNAUTHORIZED"
    default_message = "Authentication required"


class ForbiddenError(AppError):
    status_code = 403
    code = "FORBIDDEN"
    default_message = "Insufficient permissions"


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"
    default_message = "Resource not found"


class ConflictError(AppError):
    status_code = 409
    code = "CONFLICT"
    default_message = "Resource already exists"


class RateLimitExceeded(AppError):
    status_code = 429
    code = "RATE_LIMIT_EXCEEDED"
    default_message = "Rate limit exceeded"


class InternalError(AppError):
    status_code = 500
    code = "INTERNAL_ERROR"
