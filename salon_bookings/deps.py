from dataclasses import dataclass, field
from functools import lru_cache
from typing import TypeVar
from urllib.parse import unquote
from uuid import UUID

import httpx
from fastapi import Depends, Header, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from loguru import logger

from salon_bookings import settings
from salon_bookings.errors import ErrorCode
from salon_bookings.result import ServiceResult
from salon_bookings.scopes import BOOKING_SCOPE_DESCRIPTIONS, BookingScope

T = TypeVar("T")

# Tokens are verified by the gateway; the scheme only documents the scopes.
oauth2_scheme = OAuth2PasswordBearer(
    tokenUrl=f"{settings.users_ms_url}/auth/token",
    scopes=BOOKING_SCOPE_DESCRIPTIONS,
    auto_error=False,
)


@dataclass
class CurrentUser:
    id: UUID
    username: str
    scopes: list[str] = field(default_factory=list)

    @property
    def is_admin(self) -> bool:
        return "admin:scopes" in self.scopes or BookingScope.ADMIN in self.scopes

    def has(self, scope: str) -> bool:
        return self.is_admin or scope in self.scopes


def get_current_user(
    x_user_id: str = Header(...),
    x_username: str = Header(...),
    x_user_scopes: str = Header(default=""),
) -> CurrentUser:
    """
    Reads the headers injected by the gateway after forwardAuth validation.
    The JWT has already been verified, we just trust these headers.
    """
    try:
        user_id = UUID(x_user_id)
    except (ValueError, TypeError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid user identity from gateway",
        ) from None

    scopes = x_user_scopes.split(" ") if x_user_scopes else []

    return CurrentUser(id=user_id, username=unquote(x_username), scopes=scopes)


def require_scopes(*required: str):
    """
    Factory that returns a dependency enforcing one or more scopes.
    Admins pass every check.

    Usage:
        @router.get("/protected")
        async def route(user = Depends(require_scopes("bookings:read"))):
            ...
    """

    async def _dep(
        current_user: CurrentUser = Depends(get_current_user),
    ) -> CurrentUser:
        missing = [s for s in required if not current_user.has(s)]
        if missing:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing required scopes: {', '.join(missing)}",
            )
        return current_user

    return _dep


# ---------------------------------------------------------------------------
# Pre-built scope dependencies
# ---------------------------------------------------------------------------

can_read_booking = require_scopes(BookingScope.READ)
can_write_booking = require_scopes(BookingScope.WRITE)
can_manage_booking = require_scopes(BookingScope.MANAGE)
can_admin_delete_booking = require_scopes(BookingScope.ADMIN_DELETE)
can_work_services = require_scopes(BookingScope.SERVE)
can_read_commissions = require_scopes(BookingScope.COMMISSIONS_READ)
can_manage_commissions = require_scopes(BookingScope.COMMISSIONS_MANAGE)
can_manage_payroll = require_scopes(BookingScope.PAYROLL)
can_read_sessions = require_scopes(BookingScope.SESSIONS_READ)
can_write_sessions = require_scopes(BookingScope.SESSIONS_WRITE)
can_manage_vouchers = require_scopes(BookingScope.VOUCHERS)
can_manage_discounts = require_scopes(BookingScope.DISCOUNTS)


# ---------------------------------------------------------------------------
# Result → HTTP
# ---------------------------------------------------------------------------

_STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.INACTIVE_ENTITY: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.INVALID_VOUCHER: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.EXPIRED: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorCode.PERSISTENCE_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def unwrap(result: ServiceResult[T]) -> T:
    """Return the data of a successful result or raise the matching HTTPException."""
    if result.is_success:
        return result.data  # type: ignore[return-value]
    assert result.error is not None
    raise HTTPException(
        status_code=_STATUS_BY_CODE.get(
            result.error.code, status.HTTP_500_INTERNAL_SERVER_ERROR
        ),
        detail={"code": result.error.code.value, "message": result.error.message},
    )


# ---------------------------------------------------------------------------
# NotificationsClient — thin async wrapper around notifications-ms internal API
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def _get_notifications_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=settings.notifications_ms_url,
        timeout=httpx.Timeout(5.0),
        follow_redirects=True,
    )


class NotificationsClient:
    """
    Thin async wrapper around the notifications-ms internal API.
    Failures are swallowed: a missed confirmation must never fail a booking.
    """

    @property
    def _client(self) -> httpx.AsyncClient:
        return _get_notifications_http_client()

    async def send_booking_confirmation(self, booking_id: UUID) -> bool:
        """Returns True when notifications-ms accepted the confirmation."""
        try:
            resp = await self._client.post(
                f"/notifications/bookings/{booking_id}/confirmation"
            )
        except httpx.RequestError:
            logger.warning(
                "notifications-ms unreachable for booking {}", booking_id, exc_info=True
            )
            return False
        if resp.status_code >= 400:
            logger.warning(
                "notifications-ms returned {} for booking {}",
                resp.status_code,
                booking_id,
            )
            return False
        return True


_notifications_client = NotificationsClient()


def get_notifications_client() -> NotificationsClient:
    return _notifications_client
