import logging
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.core.request_context import request_id_ctx_var

logger = logging.getLogger(__name__)


class DomainError(Exception):
    code = "domain_error"
    status_code = status.HTTP_400_BAD_REQUEST
    retryable = False

    def __init__(self, message: str, detail: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail if detail is not None else message


class CapacityExhausted(DomainError):
    code = "capacity_exhausted"
    status_code = status.HTTP_409_CONFLICT


SlotUnavailable = CapacityExhausted


class ConcurrencyConflict(DomainError):
    code = "concurrency_conflict"
    status_code = status.HTTP_409_CONFLICT
    retryable = True


class ExternalServiceFailure(DomainError):
    code = "external_service_failure"
    status_code = status.HTTP_502_BAD_GATEWAY
    retryable = True

    def __init__(self, service: str, message: str, detail: Any = None) -> None:
        super().__init__(message, detail)
        self.service = service


class ValidationFailure(DomainError):
    code = "validation_failure"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class InvalidStatusTransition(ValidationFailure):
    code = "invalid_status_transition"

    def __init__(self, from_status: str, to_status: str) -> None:
        super().__init__(
            f"Cannot move booking from {from_status} to {to_status}",
            {"from_status": from_status, "to_status": to_status},
        )
        self.from_status = from_status
        self.to_status = to_status


class WebhookSignatureInvalid(ValidationFailure):
    code = "signature_verification_failed"
    status_code = status.HTTP_400_BAD_REQUEST


class DataIntegrityViolation(DomainError):
    code = "data_integrity_violation"
    status_code = status.HTTP_404_NOT_FOUND


def _error_payload(code: str, message: str, detail):
    return {
        "error": {
            "code": code,
            "message": message,
            "detail": detail,
        },
        "detail": detail,
        "request_id": request_id_ctx_var.get(),
    }


async def http_exception_handler(_: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_payload(
            code=f"http_{exc.status_code}",
            message=str(exc.detail),
            detail=exc.detail,
        ),
        headers=exc.headers,
    )


async def validation_exception_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=_error_payload(
            code="validation_error",
            message="Request validation failed",
            detail=exc.errors(),
        ),
    )


async def domain_exception_handler(request: Request, exc: DomainError) -> JSONResponse:
    logger.info(
        "domain_error code=%s path=%s message=%s",
        exc.code,
        request.url.path,
        exc.message,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_payload(code=exc.code, message=exc.message, detail=exc.detail),
    )
