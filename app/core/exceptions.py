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
    def __init__(self, message: str = "Not found"):
        super().__init__(message, code="NOT_FOUND", status_code=status.HTTP_404_NOT_FOUND)


class ConflictError(AppError):
    def __init__(self, message: str = "Conflict", details: dict[str, Any] | None = None):
        super().__init__(message, code="CONFLICT", status_code=status.HTTP_409_CONFLICT, details=details)


class BadRequestError(AppError):
    def __init__(self, message: str = "Bad request", details: dict[str, Any] | None = None):
        super().__init__(message, code="BAD_REQUEST", status_code=status.HTTP_400_BAD_REQUEST, details=details)


class InvalidStateTransitionError(AppError):
    """A lifecycle guard rejected the requested status change."""

    def __init__(self, entity: str, current: str, expected: list[str] | tuple[str, ...], target: str | None = None):
        expected = list(expected)
        if target:
            message = f"Cannot move {entity} from {current} to {target}; expected {' or '.join(expected)}"
        else:
            message = f"{entity.capitalize()} is {current}; expected {' or '.join(expected)}"
        super().__init__(
            message,
            code="INVALID_STATE_TRANSITION",
            status_code=status.HTTP_409_CONFLICT,
            details={"entity": entity, "current": current, "expected": expected, "target": target},
        )


class InsufficientCreditsError(AppError):
    def __init__(self, required: int, available: int):
        super().__init__(
            f"Insufficient credits (need {required}, have {available})",
            code="INSUFFICIENT_CREDITS",
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            details={"required": required, "available": available},
        )


class DuplicateApplicationError(AppError):
    def __init__(self, message: str = "You have already applied for this job"):
        super().__init__(message, code="DUPLICATE_APPLICATION", status_code=status.HTTP_409_CONFLICT)


class PaymentNotFoundError(AppError):
    def __init__(self, payment_ref: str):
        super().__init__(
            f"Payment {payment_ref} not found",
            code="PAYMENT_NOT_FOUND",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"payment_ref": payment_ref},
        )


class PaymentNotSucceededError(AppError):
    def __init__(self, payment_ref: str, payment_status: str):
        super().__init__(
            "Payment has not been completed",
            code="PAYMENT_NOT_SUCCEEDED",
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            details={"payment_ref": payment_ref, "status": payment_status},
        )


class OwnerMismatchError(AppError):
    def __init__(self, message: str = "Payment does not belong to this user"):
        super().__init__(message, code="OWNER_MISMATCH", status_code=status.HTTP_403_FORBIDDEN)


class PaymentProcessorError(AppError):
    """Upstream payment processor failed; safe to retry."""

    def __init__(self, message: str = "Payment processor unavailable"):
        super().__init__(message, code="PAYMENT_PROCESSOR_ERROR", status_code=status.HTTP_502_BAD_GATEWAY)


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
            "details": {"errors": jsonable_errors(exc)},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=body,
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    """Drop the raw ctx objects pydantic attaches; they are not always serializable."""
    return [{k: v for k, v in err.items() if k != "ctx"} for err in exc.errors()]


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    from app.core.logging import get_logger
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
