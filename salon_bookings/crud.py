from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Protocol
from uuid import UUID

from loguru import logger
from tortoise.exceptions import BaseORMException
from tortoise.expressions import F
from tortoise.transactions import in_transaction

from salon_bookings import settings
from salon_bookings.commissions import CommissionEngine, commission_engine
from salon_bookings.errors import (
    ConflictError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from salon_bookings.gift_certificates import (
    certificate_lines,
    consume_gift_certificate,
    load_redeemable_gift_certificate,
)
from salon_bookings.models import (
    Booking,
    BookingStatus,
    CommissionTransaction,
    Customer,
    ServiceInstance,
    capitalize_words,
)
from salon_bookings.pricing import build_quote
from salon_bookings.result import service_operation
from salon_bookings.schemas import (
    BookingCreate,
    BookingDetail,
    BookingFilters,
    BookingResponse,
    GiftCertificateRedeem,
    ServiceInstanceResponse,
)
from salon_bookings.timeutils import appointment_start, utcnow
from salon_bookings.vouchers import consume_voucher, resolve_redemption


class ConfirmationSender(Protocol):
    async def send_booking_confirmation(self, booking_id: UUID) -> bool: ...


_VALID_TRANSITIONS: dict[BookingStatus, set[BookingStatus]] = {
    BookingStatus.PENDING: {
        BookingStatus.CONFIRMED,
        BookingStatus.IN_PROGRESS,
        BookingStatus.CANCELLED,
        BookingStatus.NO_SHOW,
    },
    BookingStatus.CONFIRMED: {
        BookingStatus.IN_PROGRESS,
        BookingStatus.CANCELLED,
        BookingStatus.NO_SHOW,
    },
    BookingStatus.IN_PROGRESS: {BookingStatus.COMPLETED, BookingStatus.CANCELLED},
    BookingStatus.COMPLETED: {BookingStatus.PAID, BookingStatus.CANCELLED},
    BookingStatus.PAID: set(),
    BookingStatus.CANCELLED: set(),
    BookingStatus.NO_SHOW: set(),
}

_STATUS_TIMESTAMPS: dict[BookingStatus, str] = {
    BookingStatus.CONFIRMED: "confirmed_at",
    BookingStatus.IN_PROGRESS: "started_at",
    BookingStatus.COMPLETED: "completed_at",
    BookingStatus.PAID: "paid_at",
    BookingStatus.CANCELLED: "cancelled_at",
}


def allowed_transitions(current: BookingStatus) -> set[BookingStatus]:
    return _VALID_TRANSITIONS.get(current, set())


def booking_detail(
    booking: Booking, instances: list[ServiceInstance]
) -> BookingDetail:
    return BookingDetail(
        **BookingResponse.model_validate(booking, from_attributes=True).model_dump(),
        instances=[
            ServiceInstanceResponse.model_validate(i, from_attributes=True)
            for i in instances
        ],
    )


async def load_detail(booking: Booking) -> BookingDetail:
    instances = await ServiceInstance.filter(booking_id=booking.id).order_by(
        "sequence_order"
    )
    return booking_detail(booking, instances)


class BookingCRUD:
    def __init__(self, engine: CommissionEngine) -> None:
        self.engine = engine
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    @service_operation("create booking")
    async def create_booking(
        self,
        payload: BookingCreate,
        notifier: ConfirmationSender | None = None,
    ) -> BookingDetail:
        """
        Price and persist a booking with all of its service instances.

        Validation and pricing happen before anything is written. The
        customer, booking, instances, voucher consumption and spend update
        then commit together or not at all.
        """
        return await self._create(payload, notifier)

    @service_operation("redeem gift certificate")
    async def redeem_gift_certificate(
        self,
        code: str,
        details: GiftCertificateRedeem,
        notifier: ConfirmationSender | None = None,
    ) -> BookingDetail:
        """Book a certificate's services for its customer and mark it USED."""
        certificate = await load_redeemable_gift_certificate(code)
        services, service_sets = await certificate_lines(certificate)
        payload = BookingCreate(
            customer_id=certificate.customer_id,
            appointment_date=details.appointment_date,
            appointment_time=details.appointment_time,
            branch=details.branch,
            services=services,
            service_sets=service_sets,
            notes=details.notes or f"Gift certificate {certificate.code} redeemed",
        )
        return await self._create(payload, notifier, gift_certificate_id=certificate.id)

    async def _create(
        self,
        payload: BookingCreate,
        notifier: ConfirmationSender | None,
        gift_certificate_id: UUID | None = None,
    ) -> BookingDetail:
        if payload.customer_id is None and not payload.customer_name:
            raise ValidationError(
                "Either an existing customer or a customer name is required",
                field="customer_name",
            )
        if not payload.services and not payload.service_sets:
            raise ValidationError(
                "At least one service or service set is required", field="services"
            )

        quote = await build_quote(payload.services, payload.service_sets)

        customer: Customer | None = None
        if payload.customer_id is not None:
            customer = await Customer.get_or_none(id=payload.customer_id)
            if customer is None:
                raise NotFoundError.for_entity("Customer", payload.customer_id)

        redemption = await resolve_redemption(
            quote,
            payload.branch,
            voucher_id=payload.voucher_id,
            voucher_code=payload.voucher_code,
            apply_discount=payload.apply_discount,
            customer_id=payload.customer_id,
        )
        charge = quote.grand_total - redemption.amount
        now = utcnow()

        try:
            async with in_transaction():
                if customer is None:
                    customer = await Customer.create(
                        name=capitalize_words(payload.customer_name or ""),
                        email=payload.customer_email,
                    )
                elif payload.customer_email and payload.customer_email != customer.email:
                    customer.email = payload.customer_email
                    await customer.save(update_fields=["email", "updated_at"])

                booking = await Booking.create(
                    customer_id=customer.id,
                    appointment_date=payload.appointment_date,
                    appointment_time=payload.appointment_time.strftime("%H:%M"),
                    duration=quote.duration,
                    branch=payload.branch,
                    grand_total=quote.grand_total,
                    grand_discount=redemption.amount,
                    voucher_id=redemption.voucher.id if redemption.voucher else None,
                    discount_id=redemption.discount.id if redemption.discount else None,
                    notes=payload.notes,
                )

                await ServiceInstance.bulk_create(
                    [
                        ServiceInstance(
                            booking_id=booking.id,
                            service_id=unit.service_id,
                            service_set_id=unit.service_set_id,
                            price_at_booking=unit.price_at_booking,
                            sequence_order=order,
                        )
                        for order, unit in enumerate(quote.units, start=1)
                    ]
                )

                # only once the booking and every instance are in place
                if redemption.voucher is not None:
                    await consume_voucher(redemption.voucher.id)
                if gift_certificate_id is not None:
                    await consume_gift_certificate(gift_certificate_id, booking.id)

                await Customer.filter(id=customer.id).update(
                    spent=F("spent") + charge, last_transaction=now
                )
        except BaseORMException as exc:
            logger.exception("Booking creation rolled back")
            raise PersistenceError(f"Failed to save booking: {exc}") from exc

        logger.info(
            "Booking {} created for customer {}: total={} discount={} units={}",
            booking.id,
            customer.id,
            quote.grand_total,
            redemption.amount,
            len(quote.units),
        )

        if notifier is not None:
            starts_at = appointment_start(booking.appointment_date, booking.appointment_time)
            lead = timedelta(seconds=settings.CONFIRMATION_LEAD_SECONDS)
            if starts_at > now + lead:
                self._fire_and_forget(self._send_confirmation(notifier, booking.id))

        return await load_detail(booking)

    def _fire_and_forget(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _send_confirmation(
        self, notifier: ConfirmationSender, booking_id: UUID
    ) -> None:
        try:
            sent = await notifier.send_booking_confirmation(booking_id)
        except Exception:
            logger.warning(
                "Confirmation for booking {} failed", booking_id, exc_info=True
            )
            return
        if not sent:
            logger.warning("Confirmation for booking {} was not delivered", booking_id)

    async def drain(self) -> None:
        """Wait for in-flight confirmations (used on shutdown)."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @service_operation("get booking")
    async def get_booking(self, booking_id: UUID) -> BookingDetail:
        booking = await Booking.get_or_none(id=booking_id)
        if booking is None:
            raise NotFoundError.for_entity("Booking", booking_id)
        return await load_detail(booking)

    @service_operation("list bookings")
    async def list_bookings(self, filters: BookingFilters) -> list[BookingResponse]:
        qs = Booking.all()

        if filters.appointment_date is not None:
            qs = qs.filter(appointment_date=filters.appointment_date)
        if filters.branch is not None:
            qs = qs.filter(branch=filters.branch)
        if filters.status is not None:
            qs = qs.filter(status=filters.status)
        if filters.customer_id is not None:
            qs = qs.filter(customer_id=filters.customer_id)

        offset = (filters.page - 1) * filters.page_size
        bookings = await qs.offset(offset).limit(filters.page_size)
        return [
            BookingResponse.model_validate(b, from_attributes=True) for b in bookings
        ]

    # ------------------------------------------------------------------
    # Status workflow & admin delete
    # ------------------------------------------------------------------

    @service_operation("update booking status")
    async def update_booking_status(
        self, booking_id: UUID, new_status: BookingStatus
    ) -> BookingResponse:
        booking = await Booking.get_or_none(id=booking_id)
        if booking is None:
            raise NotFoundError.for_entity("Booking", booking_id)

        allowed = allowed_transitions(booking.status)
        if new_status not in allowed:
            raise ValidationError(
                f"Cannot transition from '{booking.status}' to '{new_status}'. "
                f"Allowed: {sorted(s.value for s in allowed)}",
                field="status",
            )

        changes: dict = {"status": new_status}
        if new_status in _STATUS_TIMESTAMPS:
            changes[_STATUS_TIMESTAMPS[new_status]] = utcnow()

        async with in_transaction():
            updated = await Booking.filter(id=booking_id, status=booking.status).update(
                **changes
            )
            if not updated:
                raise ConflictError("Booking status changed concurrently, reload and retry")
            if new_status == BookingStatus.CANCELLED:
                await self.engine.revert_live(booking_id, "booking cancelled")

        if new_status == BookingStatus.CANCELLED:
            self.engine.cancel_scheduled(booking_id)

        await booking.refresh_from_db()
        logger.info("Booking {} moved to {}", booking_id, new_status)
        return BookingResponse.model_validate(booking, from_attributes=True)

    @service_operation("delete booking")
    async def delete_booking(self, booking_id: UUID) -> BookingResponse:
        """Hard delete; instances, commissions and session links cascade."""
        booking = await Booking.get_or_none(id=booking_id)
        if booking is None:
            raise NotFoundError.for_entity("Booking", booking_id)
        if await CommissionTransaction.filter(
            booking_id=booking_id, payslip_release_id__isnull=False
        ).exists():
            raise ConflictError("Booking has commissions included in a released payslip")

        self.engine.cancel_scheduled(booking_id)
        await Booking.filter(id=booking_id).delete()
        logger.info("Booking {} deleted", booking_id)
        return BookingResponse.model_validate(booking, from_attributes=True)


booking_crud = BookingCRUD(commission_engine)
