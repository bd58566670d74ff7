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


class ValidationError(AppError):
    """Malformed or missing settlement input. Nothing was written."""

    def __init__(self, message: str = "Validation error", details: dict[str, Any] | None = None):
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details,
        )


class InsufficientBalanceError(AppError):
    """Requested credits exceed the balance read at validation time. Nothing was written."""

    def __init__(self, current_balance: int, requested: int, user_id: str | None = None):
        self.current_balance = current_balance
        self.requested = requested
        super().__init__(
            f"User has insufficient credits. Current balance: {current_balance}",
            code="INSUFFICIENT_BALANCE",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"user_id": user_id, "current_balance": current_balance, "requested": requested},
        )


class ConflictError(AppError):
    def __init__(self, message: str = "Conflict", details: dict[str, Any] | None = None):
        super().__init__(message, code="CONFLICT", status_code=status.HTTP_409_CONFLICT, details=details)


class PersistenceError(AppError):
    """A store call failed at a known step; the balance was not debited."""

    def __init__(
        self,
        step: str,
        message: str = "Store write failed",
        details: dict[str, Any] | None = None,
        code: str = "PERSISTENCE_ERROR",
        status_code: int = status.HTTP_503_SERVICE_UNAVAILABLE,
    ):
        self.step = step
        super().__init__(message, code=code, status_code=status_code, details={"step": step, **(details or {})})


class SettlementTimeoutError(PersistenceError):
    """A store call or the whole settlement ran past its deadline."""

    def __init__(self, step: str, message: str = "Settlement timed out", details: dict[str, Any] | None = None):
        super().__init__(
            step,
            message,
            details=details,
            code="SETTLEMENT_TIMEOUT",
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
        )


class PartialFailureError(AppError):
    """
    A settlement record exists and the debit was applied (or its outcome is unknown),
    but downstream records are missing. Needs reconciliation, distinct from a clean failure.
    """

    def __init__(
        self,
        settlement_id: str,
        step: str,
        missing: list[str],
        reason: str,
        debit_applied: bool | None,
    ):
        self.settlement_id = settlement_id
        self.step = step
        self.missing = missing
        self.debit_applied = debit_applied
        super().__init__(
            f"Settlement {settlement_id} is incomplete: {reason}",
            code="PARTIAL_FAILURE",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details={
                "settlement_id": settlement_id,
                "step": step,
                "missing": missing,
                "debit_applied": debit_applied,
                "reason": reason,
            },
        )


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
            "details": {"errors": exc.errors()},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=body,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    from nila_admin.core.logging import get_logger
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
