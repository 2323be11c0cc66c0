from datetime import date
from uuid import UUID

from fastapi import APIRouter, Depends, status
from loguru import logger

from salon_bookings.cache import get_day_view_cache, set_day_view_cache
from salon_bookings.crud import booking_crud
from salon_bookings.deps import (
    CurrentUser,
    NotificationsClient,
    can_admin_delete_booking,
    can_manage_booking,
    can_read_booking,
    can_write_booking,
    get_notifications_client,
    unwrap,
)
from salon_bookings.pricing import quote
from salon_bookings.projection import announce_change, build_day_view
from salon_bookings.schemas import (
    BookingCreate,
    BookingDetail,
    BookingFilters,
    BookingResponse,
    BookingStatusUpdate,
    DayView,
    GiftCertificateRedeem,
    PriceQuote,
    QuoteRequest,
)

router = APIRouter(prefix="/bookings", tags=["bookings"])


def _row(booking: BookingResponse) -> dict:
    return {
        "id": str(booking.id),
        "appointment_date": booking.appointment_date.isoformat(),
        "status": booking.status.value,
    }


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("/quote", response_model=PriceQuote)
async def quote_booking(
    payload: QuoteRequest,
    _: CurrentUser = Depends(can_write_booking),
) -> PriceQuote:
    """Price a selection without writing anything."""
    return unwrap(await quote(payload))


@router.get("/", response_model=list[BookingResponse])
async def list_bookings(
    filters: BookingFilters = Depends(),
    _: CurrentUser = Depends(can_read_booking),
) -> list[BookingResponse]:
    return unwrap(await booking_crud.list_bookings(filters=filters))


@router.post("/", response_model=BookingDetail, status_code=status.HTTP_201_CREATED)
async def create_booking(
    payload: BookingCreate,
    current_user: CurrentUser = Depends(can_write_booking),
    notifications: NotificationsClient = Depends(get_notifications_client),
) -> BookingDetail:
    booking = unwrap(
        await booking_crud.create_booking(payload=payload, notifier=notifications)
    )
    logger.debug("Booking {} created by {}", booking.id, current_user.id)
    await announce_change("bookings", "INSERT", _row(booking), booking.appointment_date)
    return booking


@router.post(
    "/gift-certificates/{code}",
    response_model=BookingDetail,
    status_code=status.HTTP_201_CREATED,
)
async def redeem_gift_certificate(
    code: str,
    payload: GiftCertificateRedeem,
    current_user: CurrentUser = Depends(can_write_booking),
    notifications: NotificationsClient = Depends(get_notifications_client),
) -> BookingDetail:
    """Book the services a gift certificate paid for."""
    booking = unwrap(
        await booking_crud.redeem_gift_certificate(code, payload, notifier=notifications)
    )
    logger.debug("Gift certificate {} redeemed by {}", code, current_user.id)
    await announce_change("bookings", "INSERT", _row(booking), booking.appointment_date)
    return booking


@router.get("/day/{day}", response_model=DayView)
async def get_day_view(
    day: date,
    _: CurrentUser = Depends(can_read_booking),
) -> DayView:
    """The day board: every booking of the day with its service instances."""
    cached = await get_day_view_cache(day)
    if cached is not None:
        logger.debug("Cache hit for day view: {}", day)
        return DayView.model_validate(cached)

    logger.debug("Cache miss for day view: {}", day)
    view = await build_day_view(day)
    await set_day_view_cache(day, view.model_dump(mode="json"))
    return view


@router.get("/{booking_id}", response_model=BookingDetail)
async def get_booking(
    booking_id: UUID,
    _: CurrentUser = Depends(can_read_booking),
) -> BookingDetail:
    return unwrap(await booking_crud.get_booking(booking_id))


@router.patch("/{booking_id}/status", response_model=BookingResponse)
async def update_booking_status(
    booking_id: UUID,
    payload: BookingStatusUpdate,
    _: CurrentUser = Depends(can_manage_booking),
) -> BookingResponse:
    updated = unwrap(
        await booking_crud.update_booking_status(booking_id, payload.status)
    )
    await announce_change("bookings", "UPDATE", _row(updated), updated.appointment_date)
    return updated


@router.delete(
    "/{booking_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(can_admin_delete_booking)],
)
async def delete_booking(booking_id: UUID) -> None:
    deleted = unwrap(await booking_crud.delete_booking(booking_id))
    await announce_change("bookings", "DELETE", _row(deleted), deleted.appointment_date)
