"""
Result envelope returned by every public core operation.

Core code raises ``BookingError`` subclasses internally; the
``service_operation`` decorator turns them (and store failures) into a
``ServiceResult`` so callers can branch on ``is_success`` instead of
catching exceptions across the boundary.
"""

from __future__ import annotations

import functools
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field as dc_field
from datetime import UTC, datetime
from typing import Any, Generic, ParamSpec, TypeVar

from loguru import logger
from tortoise.exceptions import BaseORMException

from salon_bookings.errors import BookingError, ErrorCode

T = TypeVar("T")
P = ParamSpec("P")


@dataclass
class ServiceError:
    code: ErrorCode
    message: str
    field: str | None = None
    timestamp: datetime = dc_field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_exception(cls, exc: BookingError) -> ServiceError:
        return cls(code=exc.code, message=exc.message, field=exc.field)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "field": self.field,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class ServiceResult(Generic[T]):
    is_success: bool
    data: T | None = None
    error: ServiceError | None = None

    @classmethod
    def success(cls, data: T | None = None) -> ServiceResult[T]:
        return cls(is_success=True, data=data)

    @classmethod
    def failure(cls, error: ServiceError) -> ServiceResult[T]:
        return cls(is_success=False, error=error)

    @property
    def code(self) -> ErrorCode | None:
        return self.error.code if self.error else None

    def to_dict(self) -> dict[str, Any]:
        """``{success, error?, data?}`` payload for logs and API bodies."""
        if self.is_success:
            return {"success": True, "data": self.data}
        assert self.error is not None
        return {"success": False, "error": self.error.to_dict()}


def service_operation(
    operation: str,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[ServiceResult[T]]]]:
    """
    Wrap an async core operation so it returns a ServiceResult.

    Domain errors become failures with their own code; any Tortoise error
    becomes PERSISTENCE_ERROR. Everything else is a bug and propagates.
    """

    def decorator(
        func: Callable[P, Awaitable[T]],
    ) -> Callable[P, Awaitable[ServiceResult[T]]]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> ServiceResult[T]:
            try:
                data = await func(*args, **kwargs)
            except BookingError as exc:
                logger.info("{} rejected: [{}] {}", operation, exc.code, exc.message)
                return ServiceResult.failure(ServiceError.from_exception(exc))
            except BaseORMException as exc:
                logger.exception("{} failed in the store", operation)
                return ServiceResult.failure(
                    ServiceError(
                        code=ErrorCode.PERSISTENCE_ERROR,
                        message=f"Failed to {operation}: {exc}",
                    )
                )
            return ServiceResult.success(data)

        return wrapper

    return decorator
