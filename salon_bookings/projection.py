"""
Day board projection.

Staff screens show one day's bookings with their service instances. The
projection loads that day once and then follows row-level change
notifications: any change touching a booking refetches that booking whole,
so a notification delivered twice or out of order still converges on the
stored state.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import date
from uuid import UUID

import pydantic
from loguru import logger
from redis.asyncio import Redis

from salon_bookings import settings
from salon_bookings.cache import invalidate_day_view_cache, publish_change
from salon_bookings.crud import booking_detail, load_detail
from salon_bookings.models import Booking, ServiceInstance
from salon_bookings.schemas import BookingDetail, ChangeNotification, DayView


def _sort_key(detail: BookingDetail) -> tuple[str, str]:
    return detail.appointment_time, str(detail.id)


async def fetch_booking(booking_id: UUID) -> BookingDetail | None:
    booking = await Booking.get_or_none(id=booking_id)
    if booking is None:
        return None
    return await load_detail(booking)


async def build_day_view(day: date) -> DayView:
    bookings = await Booking.filter(appointment_date=day).order_by(
        "appointment_time", "id"
    )
    by_booking: dict[UUID, list[ServiceInstance]] = {b.id: [] for b in bookings}
    if bookings:
        for instance in await ServiceInstance.filter(
            booking_id__in=list(by_booking)
        ).order_by("sequence_order"):
            by_booking[instance.booking_id].append(instance)
    return DayView(
        day=day, bookings=[booking_detail(b, by_booking[b.id]) for b in bookings]
    )


class DayBookingsProjection:
    def __init__(self, day: date) -> None:
        self.day = day
        self._bookings: dict[UUID, BookingDetail] = {}

    @property
    def bookings(self) -> list[BookingDetail]:
        return sorted(self._bookings.values(), key=_sort_key)

    def view(self) -> DayView:
        return DayView(day=self.day, bookings=self.bookings)

    async def load(self) -> DayView:
        view = await build_day_view(self.day)
        self._bookings = {b.id: b for b in view.bookings}
        logger.debug("Loaded {} booking(s) for {}", len(self._bookings), self.day)
        return view

    async def apply(self, notification: ChangeNotification) -> bool:
        """Fold one change into the view. Returns True when the view changed."""
        booking_id = _booking_id_of(notification)
        if booking_id is None:
            logger.warning(
                "Ignoring {} on {} without a booking id",
                notification.event_type,
                notification.table,
            )
            return False

        if notification.table == "bookings" and notification.event_type == "DELETE":
            return self._bookings.pop(booking_id, None) is not None

        detail = await fetch_booking(booking_id)
        if detail is None or detail.appointment_date != self.day:
            return self._bookings.pop(booking_id, None) is not None

        if self._bookings.get(booking_id) == detail:
            return False
        self._bookings[booking_id] = detail
        return True


def _booking_id_of(notification: ChangeNotification) -> UUID | None:
    key = "id" if notification.table == "bookings" else "booking_id"
    for row in (notification.new, notification.old):
        if row and row.get(key):
            try:
                return UUID(str(row[key]))
            except ValueError:
                return None
    return None


async def listen(
    redis: Redis,
    handler: Callable[[ChangeNotification], Awaitable[object]],
    channel: str | None = None,
) -> None:
    """Feed every change published on the channel to ``handler`` until cancelled."""
    channel = channel or settings.BOOKING_CHANGES_CHANNEL
    pubsub = redis.pubsub()
    await pubsub.subscribe(channel)
    logger.info("Listening for booking changes on {}", channel)
    try:
        async for message in pubsub.listen():
            if message.get("type") != "message":
                continue
            try:
                notification = ChangeNotification.model_validate_json(message["data"])
            except pydantic.ValidationError:
                logger.warning("Dropping malformed change notification on {}", channel)
                continue
            await handler(notification)
    finally:
        await pubsub.unsubscribe(channel)
        await pubsub.aclose()


async def announce_change(
    table: str,
    event_type: str,
    row: dict,
    day: date | None = None,
) -> None:
    """Publish a change and drop the cached board for the affected day."""
    payload = ChangeNotification(
        table=table,
        event_type=event_type,
        new=None if event_type == "DELETE" else row,
        old=row if event_type == "DELETE" else None,
    )
    await publish_change(
        settings.BOOKING_CHANGES_CHANNEL, payload.model_dump(mode="json")
    )
    if day is None and row.get("booking_id"):
        day = (
            await Booking.filter(id=row["booking_id"])
            .first()
            .values_list("appointment_date", flat=True)
        )
    if day is not None:
        await invalidate_day_view_cache(day)
