"""Structured error handlers with request_id correlation.

Every error response includes a consistent envelope:
    {
        "code": "ERROR_CODE",
        "message": "Human-readable message",
        "details": null | object,
        "request_id": "uuid"
    }

Service failures arrive as :class:`ActionResult` values; :func:`unwrap`
turns a failed result into an ``HTTPException`` carrying the same code,
message and details, so clients see the service's own wording.
"""
from __future__ import annotations

import logging
from typing import Any, TypeVar

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.services.results import ActionError, ActionResult, ErrorCode

logger = logging.getLogger(__name__)

T = TypeVar("T")

STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: 422,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.INVALID_STATUS_TRANSITION: 409,
    ErrorCode.ALREADY_EXISTS: 409,
    ErrorCode.PERMISSION_DENIED: 403,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.EMAIL_MISMATCH: 403,
    ErrorCode.INVITATION_EXPIRED: 410,
    ErrorCode.CREATE_FAILED: 500,
    ErrorCode.UPDATE_FAILED: 500,
    ErrorCode.DELETE_FAILED: 500,
    ErrorCode.INTERNAL_ERROR: 500,
}


def status_for(code: ErrorCode | None) -> int:
    if code is None:
        return 500
    return STATUS_BY_CODE.get(code, 400)


def unwrap(result: ActionResult[T]) -> T:
    """Return the result's data, or raise the failure as an HTTP error."""
    if result.ok:
        return result.data  # type: ignore[return-value]
    code = result.code or ErrorCode.INTERNAL_ERROR
    raise HTTPException(
        status_code=status_for(code),
        detail={
            "code": code.value,
            "message": result.error or "Request failed",
            "details": result.details,
        },
    )


def _get_request_id(request: Request) -> str:
    """Extract request_id set by ObservabilityMiddleware."""
    return getattr(request.state, "request_id", "unknown")


def _error_payload(
    code: str, message: str, details: object, request_id: str
) -> dict[str, Any]:
    return {
        "code": code,
        "message": message,
        "details": details,
        "request_id": request_id,
    }


def register_error_handlers(app: object) -> None:
    @app.exception_handler(HTTPException)  # type: ignore[arg-type]
    async def http_exception_handler(
        request: Request, exc: HTTPException
    ) -> JSONResponse:
        request_id = _get_request_id(request)
        detail = exc.detail
        code = f"http_{exc.status_code}"
        message = "Request failed"
        details = None
        if isinstance(detail, dict):
            code = detail.get("code", code)
            message = detail.get("message", message)
            details = detail.get("details")
        elif isinstance(detail, str):
            message = detail
        else:
            details = detail
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(code, message, details, request_id),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(ActionError)  # type: ignore[arg-type]
    async def action_error_handler(request: Request, exc: ActionError) -> JSONResponse:
        return JSONResponse(
            status_code=status_for(exc.code),
            content=_error_payload(
                exc.code.value, exc.message, exc.details, _get_request_id(request)
            ),
        )

    @app.exception_handler(RequestValidationError)  # type: ignore[arg-type]
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        request_id = _get_request_id(request)
        logger.warning(
            "Validation error on %s %s: %s",
            request.method,
            request.url.path,
            exc.errors(),
            extra={"request_id": request_id},
        )
        return JSONResponse(
            status_code=422,
            content=_error_payload(
                ErrorCode.VALIDATION_ERROR.value,
                "Validation error",
                # input and ctx may hold values that are not JSON serializable
                [
                    {k: v for k, v in error.items() if k in ("type", "loc", "msg")}
                    for error in exc.errors()
                ],
                request_id,
            ),
        )

    @app.exception_handler(Exception)  # type: ignore[arg-type]
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        request_id = _get_request_id(request)
        logger.exception(
            "Unhandled exception on %s %s",
            request.method,
            request.url.path,
            extra={"request_id": request_id},
        )
        return JSONResponse(
            status_code=500,
            content=_error_payload(
                ErrorCode.INTERNAL_ERROR.value,
                "Internal server error",
                None,
                request_id,
            ),
        )
