from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse


class AppError(Exception):
    """Base application error with consistent schema."""

    def __init__(
        self,
        message: str,
        code: str = "ERROR",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, code="UNAUTHORIZED", status_code=status.HTTP_401_UNAUTHORIZED)


class ForbiddenError(AppError):
    def __init__(self, message: str = "Forbidden"):
        super().__init__(message, code="FORBIDDEN", status_code=status.HTTP_403_FORBIDDEN)


class NotFoundError(AppError):
    def __init__(self, message: str = "Not found", details: dict[str, Any] | None = None):
        super().__init__(message, code="NOT_FOUND", status_code=status.HTTP_404_NOT_FOUND, details=details)


class ConflictError(AppError):
    def __init__(self, message: str = "Conflict", details: dict[str, Any] | None = None):
        super().__init__(message, code="CONFLICT", status_code=status.HTTP_409_CONFLICT, details=details)


class ValidationError(AppError):
    """Malformed input: negative amounts, out-of-range percentages, bad ids."""

    def __init__(self, message: str = "Invalid input", details: dict[str, Any] | None = None):
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details,
        )


class MissingExternalRefError(AppError):
    def __init__(self, message: str = "External reference is required", details: dict[str, Any] | None = None):
        super().__init__(
            message,
            code="MISSING_EXTERNAL_REF",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details,
        )


class InsufficientBalanceError(AppError):
    def __init__(self, message: str = "Insufficient balance", details: dict[str, Any] | None = None):
        super().__init__(message, code="INSUFFICIENT_BALANCE", status_code=status.HTTP_409_CONFLICT, details=details)


class DuplicateExternalRefError(AppError):
    def __init__(self, external_ref: str, details: dict[str, Any] | None = None):
        super().__init__(
            "This external reference has already been used",
            code="DUPLICATE_EXTERNAL_REF",
            status_code=status.HTTP_409_CONFLICT,
            details={"external_ref": external_ref, **(details or {})},
        )
        self.external_ref = external_ref


class InvalidStateError(AppError):
    def __init__(self, message: str = "Invalid state", details: dict[str, Any] | None = None):
        super().__init__(message, code="INVALID_STATE", status_code=status.HTTP_409_CONFLICT, details=details)


class InvalidTransitionError(AppError):
    def __init__(self, current: str, target: str, details: dict[str, Any] | None = None):
        super().__init__(
            f"Cannot move from {current} to {target}",
            code="INVALID_TRANSITION",
            status_code=status.HTTP_409_CONFLICT,
            details={"current": current, "target": target, **(details or {})},
        )
        self.current = current
        self.target = target


class PostUnavailableError(AppError):
    def __init__(self, post_id: str, details: dict[str, Any] | None = None):
        super().__init__(
            "This post is no longer available",
            code="POST_UNAVAILABLE",
            status_code=status.HTTP_409_CONFLICT,
            details={"post_id": post_id, **(details or {})},
        )
        self.post_id = post_id


def error_response(request: Request, exc: AppError) -> ORJSONResponse:
    body = {
        "error": {
            "message": exc.message,
            "code": exc.code,
            "details": exc.details,
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(status_code=exc.status_code, content=body)


async def app_exception_handler(request: Request, exc: AppError) -> ORJSONResponse:
    return error_response(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    body = {
        "error": {
            "message": "Validation error",
            "code": "VALIDATION_ERROR",
            "details": {"errors": [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in exc.errors()]},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=body,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    from pointsledger.core.logging import get_logger
    get_logger(__name__).exception("unhandled_exception", exc_info=exc)
    body = {
        "error": {
            "message": "Internal server error",
            "code": "INTERNAL_ERROR",
            "details": {},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=body,
    )
