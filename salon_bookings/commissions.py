"""
Commission engine.

A booking earns commissions once every one of its service instances is
SERVED and has stayed SERVED for the debounce window. Applying writes one
ADD row per served instance whose claimant is a commissioned employee;
leaving that state (an unserve, a cancellation) writes a paired REVERT row
for every live ADD. Rows are never updated in place beyond their status
flag, so the ledger always nets to the current truth.

Every evaluation re-reads instance state inside a transaction that holds
the booking row, so concurrent serve/unserve calls on sibling instances
cannot double-apply or miss a revert.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from loguru import logger
from tortoise.expressions import Subquery
from tortoise.transactions import in_transaction

from salon_bookings import settings
from salon_bookings.errors import NotFoundError
from salon_bookings.models import (
    Booking,
    BookingStatus,
    CommissionStatus,
    CommissionTransaction,
    CommissionType,
    Employee,
    EmployeeRole,
    InstanceStatus,
    ServiceInstance,
)
from salon_bookings.result import service_operation
from salon_bookings.schemas import (
    CommissionEvaluation,
    CommissionOutcome,
    CommissionSweep,
    CommissionTransactionResponse,
)
from salon_bookings.timeutils import utcnow

CENT = Decimal("0.01")

# percent of the instance price; roles not listed earn nothing
ROLE_COMMISSION_RATES: dict[EmployeeRole, Decimal] = {
    EmployeeRole.WORKER: Decimal("10"),
    EmployeeRole.MASSEUSE: Decimal("50"),
}

_CLOSED_STATUSES = {BookingStatus.CANCELLED, BookingStatus.NO_SHOW}

# extra wait so the deferred check lands after the window, not on its edge
_DEFERRED_SLACK_SECONDS = 1.0


def commission_rate_for(employee: Employee) -> Decimal:
    if employee.commission_rate is not None:
        return employee.commission_rate
    return ROLE_COMMISSION_RATES.get(employee.role, Decimal("0"))


def commission_amount(price: Decimal, rate: Decimal) -> Decimal:
    return (price * rate / 100).quantize(CENT, rounding=ROUND_HALF_UP)


def all_served(instances: list[ServiceInstance]) -> bool:
    return bool(instances) and all(i.status == InstanceStatus.SERVED for i in instances)


def served_for(instances: list[ServiceInstance], window: timedelta, now: datetime) -> bool:
    """True when every instance is SERVED and the latest serve is ``window`` old."""
    if not all_served(instances):
        return False
    latest = max(i.served_at for i in instances if i.served_at is not None)
    return latest <= now - window


def _to_responses(rows: list[CommissionTransaction]) -> list[CommissionTransactionResponse]:
    return [
        CommissionTransactionResponse.model_validate(r, from_attributes=True)
        for r in rows
    ]


class CommissionEngine:
    def __init__(self) -> None:
        self._pending: dict[UUID, asyncio.Task] = {}

    @property
    def debounce(self) -> timedelta:
        return timedelta(seconds=settings.COMMISSION_DEBOUNCE_SECONDS)

    # ------------------------------------------------------------------
    # Core evaluation
    # ------------------------------------------------------------------

    async def evaluate(self, booking_id: UUID) -> CommissionEvaluation:
        """Apply, revert or leave alone, based on the booking's current state."""
        now = utcnow()
        async with in_transaction():
            booking = await Booking.filter(id=booking_id).select_for_update().first()
            if booking is None:
                raise NotFoundError.for_entity("Booking", booking_id)

            instances = await ServiceInstance.filter(booking_id=booking_id)
            live = await self._live_adds(booking_id)

            if booking.status in _CLOSED_STATUSES or not all_served(instances):
                if live:
                    reverted = await self._revert(booking, live, now, "booking left served state")
                    return CommissionEvaluation(
                        booking_id=booking_id,
                        outcome=CommissionOutcome.REVERTED,
                        transactions=_to_responses(reverted),
                    )
                return CommissionEvaluation(
                    booking_id=booking_id, outcome=CommissionOutcome.NOT_ELIGIBLE
                )

            if not served_for(instances, self.debounce, now):
                return CommissionEvaluation(
                    booking_id=booking_id, outcome=CommissionOutcome.PENDING_DEBOUNCE
                )

            created = await self._apply(booking, instances, live, now)

        outcome = (
            CommissionOutcome.APPLIED
            if created or not live
            else CommissionOutcome.ALREADY_APPLIED
        )
        if created:
            logger.info(
                "Applied {} commission(s) for booking {}", len(created), booking_id
            )
        return CommissionEvaluation(
            booking_id=booking_id, outcome=outcome, transactions=_to_responses(created)
        )

    async def revert_live(self, booking_id: UUID, note: str) -> list[CommissionTransaction]:
        """
        Revert every live ADD of a booking. Must run inside the caller's
        transaction (booking cancellation reuses it).
        """
        booking = await Booking.filter(id=booking_id).select_for_update().first()
        if booking is None:
            raise NotFoundError.for_entity("Booking", booking_id)
        live = await self._live_adds(booking_id)
        if not live:
            return []
        return await self._revert(booking, live, utcnow(), note)

    async def _live_adds(self, booking_id: UUID) -> list[CommissionTransaction]:
        return await CommissionTransaction.filter(
            booking_id=booking_id,
            transaction_type=CommissionType.ADD,
            status=CommissionStatus.APPLIED,
        )

    async def _apply(
        self,
        booking: Booking,
        instances: list[ServiceInstance],
        live: list[CommissionTransaction],
        now: datetime,
    ) -> list[CommissionTransaction]:
        already = {t.service_instance_id for t in live}
        claimants = {i.claimed_by for i in instances if i.claimed_by is not None}
        employees = {
            e.user_id: e
            for e in await Employee.filter(user_id__in=list(claimants), is_active=True)
        }

        created: list[CommissionTransaction] = []
        for instance in instances:
            if instance.id in already:
                continue
            employee = employees.get(instance.claimed_by)
            if employee is None:
                logger.debug(
                    "No employee for claimant {} of instance {}",
                    instance.claimed_by,
                    instance.id,
                )
                continue
            rate = commission_rate_for(employee)
            amount = commission_amount(instance.price_at_booking, rate)
            if amount <= 0:
                continue
            created.append(
                await CommissionTransaction.create(
                    employee_id=employee.id,
                    booking_id=booking.id,
                    service_instance_id=instance.id,
                    amount=amount,
                    service_price=instance.price_at_booking,
                    commission_rate=rate,
                    role_at_time=employee.role,
                    transaction_type=CommissionType.ADD,
                    status=CommissionStatus.APPLIED,
                    live_key=str(instance.id),
                    applied_at=now,
                )
            )

        booking.commission_processed_at = now
        await booking.save(update_fields=["commission_processed_at", "updated_at"])
        return created

    async def _revert(
        self,
        booking: Booking,
        live: list[CommissionTransaction],
        now: datetime,
        note: str,
    ) -> list[CommissionTransaction]:
        reverted: list[CommissionTransaction] = []
        for add in live:
            reverted.append(
                await CommissionTransaction.create(
                    employee_id=add.employee_id,
                    booking_id=add.booking_id,
                    service_instance_id=add.service_instance_id,
                    reverses_id=add.id,
                    amount=add.amount,
                    service_price=add.service_price,
                    commission_rate=add.commission_rate,
                    role_at_time=add.role_at_time,
                    transaction_type=CommissionType.REVERT,
                    status=CommissionStatus.APPLIED,
                    applied_at=now,
                    notes=note,
                )
            )
            await CommissionTransaction.filter(
                id=add.id, status=CommissionStatus.APPLIED
            ).update(status=CommissionStatus.REVERTED, reverted_at=now, live_key=None)

        booking.commission_processed_at = None
        await booking.save(update_fields=["commission_processed_at", "updated_at"])
        logger.info(
            "Reverted {} commission(s) for booking {}: {}", len(reverted), booking.id, note
        )
        return reverted

    # ------------------------------------------------------------------
    # Deferred re-evaluation after the debounce window
    # ------------------------------------------------------------------

    def schedule_evaluation(self, booking_id: UUID, delay: float | None = None) -> None:
        """(Re)arm a one-shot evaluation once the debounce window has passed."""
        if delay is None:
            delay = self.debounce.total_seconds() + _DEFERRED_SLACK_SECONDS
        self.cancel_scheduled(booking_id)
        task = asyncio.create_task(self._deferred_evaluation(booking_id, delay))
        self._pending[booking_id] = task
        task.add_done_callback(lambda t: self._forget(booking_id, t))
        logger.debug("Commission check for booking {} in {}s", booking_id, delay)

    def cancel_scheduled(self, booking_id: UUID) -> None:
        task = self._pending.pop(booking_id, None)
        if task is not None and not task.done():
            task.cancel()

    def is_scheduled(self, booking_id: UUID) -> bool:
        return booking_id in self._pending

    def _forget(self, booking_id: UUID, task: asyncio.Task) -> None:
        if self._pending.get(booking_id) is task:
            del self._pending[booking_id]

    async def _deferred_evaluation(self, booking_id: UUID, delay: float) -> None:
        await asyncio.sleep(delay)
        result = await self.check_booking(booking_id)
        if not result.is_success:
            logger.warning(
                "Deferred commission check for booking {} failed: {}",
                booking_id,
                result.error.message if result.error else "unknown error",
            )

    async def shutdown(self) -> None:
        tasks = list(self._pending.values())
        self._pending.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    @service_operation("evaluate commissions")
    async def check_booking(self, booking_id: UUID) -> CommissionEvaluation:
        return await self.evaluate(booking_id)

    @service_operation("revert commissions")
    async def revert_booking(
        self, booking_id: UUID, note: str = "manual revert"
    ) -> CommissionEvaluation:
        async with in_transaction():
            reverted = await self.revert_live(booking_id, note)
        return CommissionEvaluation(
            booking_id=booking_id,
            outcome=CommissionOutcome.REVERTED if reverted else CommissionOutcome.NOT_ELIGIBLE,
            transactions=_to_responses(reverted),
        )

    @service_operation("apply missing commissions")
    async def apply_missing_commissions(self, limit: int = 200) -> CommissionSweep:
        """Sweep for fully served bookings whose deferred check never ran."""
        unserved = ServiceInstance.exclude(status=InstanceStatus.SERVED).values(
            "booking_id"
        )
        booking_ids = (
            await ServiceInstance.filter(
                status=InstanceStatus.SERVED,
                booking__commission_processed_at__isnull=True,
                booking_id__not_in=Subquery(unserved),
            )
            .exclude(booking__status__in=list(_CLOSED_STATUSES))
            .order_by("booking_id")
            .distinct()
            .limit(limit)
            .values_list("booking_id", flat=True)
        )

        applied: list[UUID] = []
        for booking_id in booking_ids:
            evaluation = await self.evaluate(booking_id)
            if evaluation.outcome == CommissionOutcome.APPLIED:
                applied.append(booking_id)

        if applied:
            logger.info("Commission sweep applied {} booking(s)", len(applied))
        return CommissionSweep(checked=len(booking_ids), applied=applied)

    @service_operation("list commissions")
    async def list_booking_transactions(
        self, booking_id: UUID
    ) -> list[CommissionTransactionResponse]:
        if not await Booking.exists(id=booking_id):
            raise NotFoundError.for_entity("Booking", booking_id)
        rows = await CommissionTransaction.filter(booking_id=booking_id).order_by(
            "created_at"
        )
        return _to_responses(rows)


commission_engine = CommissionEngine()
