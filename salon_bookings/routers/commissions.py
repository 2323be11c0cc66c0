from datetime import date
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from salon_bookings import payroll
from salon_bookings.commissions import commission_engine
from salon_bookings.deps import (
    CurrentUser,
    can_manage_commissions,
    can_manage_payroll,
    can_read_commissions,
    unwrap,
)
from salon_bookings.models import Branch
from salon_bookings.schemas import (
    AttendanceMark,
    AttendanceResponse,
    CommissionEvaluation,
    CommissionSweep,
    CommissionTransactionResponse,
    PayrollSummary,
    PayslipReleaseResponse,
    SalesSummary,
)

router = APIRouter(tags=["commissions"])


# ---------------------------------------------------------------------------
# Commission ledger
# ---------------------------------------------------------------------------


@router.get(
    "/commissions/bookings/{booking_id}",
    response_model=list[CommissionTransactionResponse],
    dependencies=[Depends(can_read_commissions)],
)
async def list_booking_commissions(
    booking_id: UUID,
) -> list[CommissionTransactionResponse]:
    return unwrap(await commission_engine.list_booking_transactions(booking_id))


@router.post(
    "/commissions/bookings/{booking_id}/evaluate",
    response_model=CommissionEvaluation,
    dependencies=[Depends(can_manage_commissions)],
)
async def evaluate_booking(booking_id: UUID) -> CommissionEvaluation:
    return unwrap(await commission_engine.check_booking(booking_id))


@router.post("/commissions/bookings/{booking_id}/revert", response_model=CommissionEvaluation)
async def revert_booking(
    booking_id: UUID,
    current_user: CurrentUser = Depends(can_manage_commissions),
) -> CommissionEvaluation:
    return unwrap(
        await commission_engine.revert_booking(
            booking_id, note=f"manual revert by {current_user.username}"
        )
    )


@router.post(
    "/commissions/sweep",
    response_model=CommissionSweep,
    dependencies=[Depends(can_manage_commissions)],
)
async def sweep_commissions(
    limit: int = Query(default=200, ge=1, le=1000),
) -> CommissionSweep:
    """Apply commissions for fully served bookings whose deferred check was lost."""
    return unwrap(await commission_engine.apply_missing_commissions(limit))


# ---------------------------------------------------------------------------
# Payroll
# ---------------------------------------------------------------------------


@router.post(
    "/payroll/attendance",
    response_model=AttendanceResponse,
    dependencies=[Depends(can_manage_payroll)],
)
async def record_attendance(payload: AttendanceMark) -> AttendanceResponse:
    return unwrap(await payroll.record_attendance(payload))


@router.get(
    "/payroll/employees/{employee_id}/summary",
    response_model=PayrollSummary,
    dependencies=[Depends(can_manage_payroll)],
)
async def unpaid_summary(employee_id: UUID) -> PayrollSummary:
    return unwrap(await payroll.unpaid_summary(employee_id))


@router.post(
    "/payroll/employees/{employee_id}/release",
    response_model=PayslipReleaseResponse,
    status_code=status.HTTP_201_CREATED,
)
async def release_payslip(
    employee_id: UUID,
    current_user: CurrentUser = Depends(can_manage_payroll),
) -> PayslipReleaseResponse:
    return unwrap(await payroll.release_payslip(employee_id, released_by=current_user.id))


@router.get(
    "/payroll/sales",
    response_model=SalesSummary,
    dependencies=[Depends(can_manage_payroll)],
)
async def sales_summary(
    start: date,
    end: date,
    branch: Branch | None = None,
) -> SalesSummary:
    return unwrap(await payroll.sales_summary(start, end, branch))
