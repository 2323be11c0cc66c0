from __future__ import annotations

from datetime import date
from decimal import Decimal
from uuid import UUID

from loguru import logger
from tortoise.transactions import in_transaction

from salon_bookings.errors import ConflictError, NotFoundError, ValidationError
from salon_bookings.models import (
    Attendance,
    Booking,
    BookingStatus,
    Branch,
    CommissionStatus,
    CommissionTransaction,
    CommissionType,
    Employee,
    PayslipRelease,
)
from salon_bookings.result import service_operation
from salon_bookings.schemas import (
    AttendanceMark,
    AttendanceResponse,
    PayrollSummary,
    PayslipReleaseResponse,
    SalesSummary,
)

ZERO = Decimal("0")

# statuses that count towards pay: live ADDs, reverted ADDs and their REVERT rows
_COUNTED_STATUSES = [CommissionStatus.APPLIED, CommissionStatus.REVERTED]
_SOLD_STATUSES = [BookingStatus.COMPLETED, BookingStatus.PAID]


def signed_amount(tx: CommissionTransaction) -> Decimal:
    """ADD counts positive, REVERT negative, so a reverted pair nets to zero."""
    if tx.transaction_type == CommissionType.REVERT:
        return -tx.amount
    return tx.amount


async def _get_employee(employee_id: UUID) -> Employee:
    employee = await Employee.get_or_none(id=employee_id)
    if employee is None:
        raise NotFoundError.for_entity("Employee", employee_id)
    return employee


async def _unreleased(
    employee_id: UUID,
) -> tuple[list[Attendance], list[CommissionTransaction]]:
    attendance = await Attendance.filter(
        employee_id=employee_id, is_present=True, payslip_release_id__isnull=True
    )
    commissions = await CommissionTransaction.filter(
        employee_id=employee_id,
        status__in=_COUNTED_STATUSES,
        payslip_release_id__isnull=True,
    )
    return attendance, commissions


def _summarize(
    employee_id: UUID,
    attendance: list[Attendance],
    commissions: list[CommissionTransaction],
) -> PayrollSummary:
    attendance_amount = sum((a.daily_rate_applied for a in attendance), ZERO)
    commission_amount = sum((signed_amount(t) for t in commissions), ZERO)
    return PayrollSummary(
        employee_id=employee_id,
        attendance_days=len(attendance),
        attendance_amount=attendance_amount,
        commission_transactions=len(commissions),
        commission_amount=commission_amount,
        total_amount=attendance_amount + commission_amount,
    )


@service_operation("record attendance")
async def record_attendance(mark: AttendanceMark) -> AttendanceResponse:
    employee = await _get_employee(mark.employee_id)

    existing = await Attendance.get_or_none(
        employee_id=employee.id, work_date=mark.work_date
    )
    if existing is not None and existing.payslip_release_id is not None:
        raise ConflictError("Attendance for that day has already been paid out")

    row, _ = await Attendance.update_or_create(
        defaults={
            "is_present": mark.is_present,
            "daily_rate_applied": employee.daily_rate if mark.is_present else ZERO,
        },
        employee_id=employee.id,
        work_date=mark.work_date,
    )
    logger.info(
        "Attendance for {} on {}: present={}", employee.id, mark.work_date, mark.is_present
    )
    return AttendanceResponse.model_validate(row, from_attributes=True)


@service_operation("summarize unpaid payroll")
async def unpaid_summary(employee_id: UUID) -> PayrollSummary:
    await _get_employee(employee_id)
    attendance, commissions = await _unreleased(employee_id)
    return _summarize(employee_id, attendance, commissions)


@service_operation("release payslip")
async def release_payslip(
    employee_id: UUID, released_by: UUID | None = None
) -> PayslipReleaseResponse:
    """Pay out everything unpaid so far and mark those rows as released."""
    async with in_transaction():
        employee = await Employee.filter(id=employee_id).select_for_update().first()
        if employee is None:
            raise NotFoundError.for_entity("Employee", employee_id)

        attendance, commissions = await _unreleased(employee_id)
        summary = _summarize(employee_id, attendance, commissions)
        if summary.total_amount <= 0:
            raise ValidationError(
                f"Nothing to release: unpaid total is {summary.total_amount}"
            )

        release = await PayslipRelease.create(
            employee_id=employee_id,
            attendance_amount=summary.attendance_amount,
            commission_amount=summary.commission_amount,
            total_amount=summary.total_amount,
            released_by=released_by,
        )
        for model, rows in ((Attendance, attendance), (CommissionTransaction, commissions)):
            if not rows:
                continue
            marked = await model.filter(
                id__in=[r.id for r in rows], payslip_release_id__isnull=True
            ).update(payslip_release_id=release.id)
            if marked != len(rows):
                raise ConflictError("Payroll changed while releasing, retry")

    logger.info(
        "Released payslip {} for employee {}: {}",
        release.id,
        employee_id,
        release.total_amount,
    )
    return PayslipReleaseResponse.model_validate(release, from_attributes=True)


@service_operation("summarize sales")
async def sales_summary(
    start: date, end: date, branch: Branch | None = None
) -> SalesSummary:
    if end < start:
        raise ValidationError("end must not be before start", field="end")

    bookings = Booking.filter(
        appointment_date__gte=start,
        appointment_date__lte=end,
        status__in=_SOLD_STATUSES,
    )
    commissions = CommissionTransaction.filter(
        booking__appointment_date__gte=start,
        booking__appointment_date__lte=end,
        status__in=_COUNTED_STATUSES,
    )
    if branch is not None:
        bookings = bookings.filter(branch=branch)
        commissions = commissions.filter(booking__branch=branch)

    sold = await bookings
    ledger = await commissions
    added = sum(
        (t.amount for t in ledger if t.transaction_type == CommissionType.ADD), ZERO
    )
    reverted = sum(
        (t.amount for t in ledger if t.transaction_type == CommissionType.REVERT), ZERO
    )
    return SalesSummary(
        start=start,
        end=end,
        branch=branch,
        bookings=len(sold),
        sales_total=sum((b.grand_total - b.grand_discount for b in sold), ZERO),
        commission_added=added,
        commission_reverted=reverted,
        commission_net=added - reverted,
    )
