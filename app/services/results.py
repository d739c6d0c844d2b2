"""Discriminated success/failure results returned by every service action.

Service code raises :class:`ActionError` where it wants to stop with a known
failure; :func:`service_action` turns that, and anything else that escapes,
into an :class:`ActionResult` so callers never see an exception.
"""
from __future__ import annotations

import enum
import functools
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from app.services.context import PermissionDenied

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorCode(str, enum.Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    INVALID_STATUS_TRANSITION = "INVALID_STATUS_TRANSITION"
    ALREADY_EXISTS = "ALREADY_EXISTS"
    CREATE_FAILED = "CREATE_FAILED"
    UPDATE_FAILED = "UPDATE_FAILED"
    DELETE_FAILED = "DELETE_FAILED"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    FORBIDDEN = "FORBIDDEN"
    INVITATION_EXPIRED = "INVITATION_EXPIRED"
    EMAIL_MISMATCH = "EMAIL_MISMATCH"
    INTERNAL_ERROR = "INTERNAL_ERROR"


@dataclass(frozen=True)
class ActionResult(Generic[T]):
    ok: bool
    data: T | None = None
    error: str | None = None
    code: ErrorCode | None = None
    details: Any = None

    @classmethod
    def success(cls, data: T | None = None) -> ActionResult[T]:
        return cls(ok=True, data=data)

    @classmethod
    def failure(
        cls, code: ErrorCode, message: str, details: Any = None
    ) -> ActionResult[T]:
        return cls(ok=False, error=message, code=code, details=details)


class ActionError(Exception):
    def __init__(self, code: ErrorCode, message: str, details: Any = None) -> None:
        self.code = code
        self.message = message
        self.details = details
        super().__init__(message)


def _rollback(target: Any) -> None:
    db = getattr(target, "db", None)
    if db is None:
        return
    try:
        db.rollback()
    except SQLAlchemyError:
        logger.exception("Rollback failed")


def _validation_message(exc: ValidationError) -> str:
    errors = exc.errors(include_url=False)
    if not errors:
        return "Validation error"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = str(first.get("msg", "Invalid value")).removeprefix("Value error, ")
    return f"{location}: {message}" if location else message


def service_action(
    failure_message: str,
    failure_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
) -> Callable[[Callable[..., ActionResult[T]]], Callable[..., ActionResult[T]]]:
    """Wrap a service method so every exit is an ActionResult.

    The wrapped method's owner must expose its session as ``self.db``; it is
    rolled back before any failure is returned.
    """

    def decorator(fn: Callable[..., ActionResult[T]]) -> Callable[..., ActionResult[T]]:
        @functools.wraps(fn)
        def wrapper(self: Any, *args: Any, **kwargs: Any) -> ActionResult[T]:
            try:
                return fn(self, *args, **kwargs)
            except ActionError as exc:
                _rollback(self)
                return ActionResult.failure(exc.code, exc.message, exc.details)
            except PermissionDenied as exc:
                _rollback(self)
                logger.warning("Permission denied in %s: %s", fn.__name__, exc.permission)
                return ActionResult.failure(
                    ErrorCode.PERMISSION_DENIED, str(exc), {"permission": exc.permission}
                )
            except ValidationError as exc:
                _rollback(self)
                return ActionResult.failure(
                    ErrorCode.VALIDATION_ERROR,
                    _validation_message(exc),
                    exc.errors(include_url=False, include_context=False, include_input=False),
                )
            except SQLAlchemyError:
                _rollback(self)
                logger.exception("Database error in %s", fn.__name__)
                return ActionResult.failure(failure_code, failure_message)
            except Exception:
                _rollback(self)
                logger.exception("Unexpected error in %s", fn.__name__)
                return ActionResult.failure(ErrorCode.INTERNAL_ERROR, failure_message)

        return wrapper

    return decorator
