from __future__ import annotations

from datetime import date, datetime, time
from decimal import Decimal
from enum import StrEnum
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from salon_bookings.models import (
    BookingStatus,
    Branch,
    CommissionStatus,
    CommissionType,
    DiscountStatus,
    DiscountType,
    EmployeeRole,
    InstanceStatus,
    SessionStatus,
    VoucherStatus,
)

MAX_LINE_QUANTITY = 10

# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------


class ServiceLine(BaseModel):
    service_id: UUID
    quantity: int = Field(default=1, ge=1, le=MAX_LINE_QUANTITY)


class ServiceSetLine(BaseModel):
    service_set_id: UUID
    quantity: int = Field(default=1, ge=1, le=MAX_LINE_QUANTITY)


class QuoteRequest(BaseModel):
    services: list[ServiceLine] = Field(default_factory=list)
    service_sets: list[ServiceSetLine] = Field(default_factory=list)


class PricedUnit(BaseModel):
    """One future ServiceInstance: a single unit of a service."""

    service_id: UUID
    service_set_id: UUID | None = None
    price_at_booking: Decimal  # commission base, unrounded for set members


class PriceQuote(BaseModel):
    grand_total: Decimal
    duration: int
    units: list[PricedUnit]


# ---------------------------------------------------------------------------
# Bookings
# ---------------------------------------------------------------------------


class BookingCreate(BaseModel):
    customer_id: UUID | None = None
    customer_name: str | None = Field(default=None, max_length=255)
    customer_email: str | None = Field(default=None, max_length=255)

    appointment_date: date
    appointment_time: time
    branch: Branch

    services: list[ServiceLine] = Field(default_factory=list)
    service_sets: list[ServiceSetLine] = Field(default_factory=list)

    voucher_id: UUID | None = None
    voucher_code: str | None = Field(default=None, max_length=6)
    apply_discount: bool = False
    notes: str | None = Field(default=None, max_length=1000)

    @field_validator("customer_name", "customer_email", "voucher_code", mode="after")
    @classmethod
    def blank_to_none(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        return v or None

    @field_validator("voucher_code", mode="after")
    @classmethod
    def upper_code(cls, v: str | None) -> str | None:
        return v.upper() if v else v


class BookingStatusUpdate(BaseModel):
    status: BookingStatus


class ServiceInstanceResponse(BaseModel):
    id: UUID
    booking_id: UUID
    service_id: UUID
    service_set_id: UUID | None
    price_at_booking: Decimal
    sequence_order: int
    status: InstanceStatus
    claimed_by: UUID | None
    claimed_at: datetime | None
    served_by: UUID | None
    served_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class BookingResponse(BaseModel):
    id: UUID
    customer_id: UUID
    appointment_date: date
    appointment_time: str
    duration: int
    branch: Branch
    grand_total: Decimal
    grand_discount: Decimal
    status: BookingStatus
    voucher_id: UUID | None
    discount_id: UUID | None
    notes: str | None
    confirmed_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    paid_at: datetime | None = None
    cancelled_at: datetime | None = None
    commission_processed_at: datetime | None = None
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class BookingDetail(BookingResponse):
    instances: list[ServiceInstanceResponse] = Field(default_factory=list)


class BookingFilters(BaseModel):
    """Bind to a FastAPI route via Depends(BookingFilters)."""

    appointment_date: date | None = None
    branch: Branch | None = None
    status: BookingStatus | None = None
    customer_id: UUID | None = None

    # Pagination
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)


# ---------------------------------------------------------------------------
# Vouchers & discounts
# ---------------------------------------------------------------------------


class VoucherCreate(BaseModel):
    value: Decimal = Field(gt=0, max_digits=10, decimal_places=2)
    customer_id: UUID | None = None
    expires_on: date | None = None


class VoucherResponse(BaseModel):
    id: UUID
    code: str
    value: Decimal
    status: VoucherStatus
    customer_id: UUID | None
    expires_on: date | None
    used_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class DiscountCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    discount_type: DiscountType
    value: Decimal = Field(gt=0, max_digits=10, decimal_places=2)
    branch: Branch | None = None
    service_ids: list[UUID] = Field(default_factory=list)
    start_date: datetime
    end_date: datetime

    @model_validator(mode="after")
    def validate_window(self) -> DiscountCreate:
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        if self.discount_type == DiscountType.PERCENTAGE and self.value > 100:
            raise ValueError("Percentage discount cannot exceed 100")
        return self


class DiscountResponse(BaseModel):
    id: UUID
    name: str
    discount_type: DiscountType
    value: Decimal
    branch: Branch | None
    start_date: datetime
    end_date: datetime
    status: DiscountStatus

    model_config = ConfigDict(from_attributes=True)


# ---------------------------------------------------------------------------
# Gift certificates
# ---------------------------------------------------------------------------


class GiftCertificateCreate(BaseModel):
    customer_id: UUID | None = None
    customer_name: str | None = Field(default=None, max_length=255)
    customer_email: str | None = Field(default=None, max_length=255)
    expires_on: date | None = None

    services: list[ServiceLine] = Field(default_factory=list)
    service_sets: list[ServiceSetLine] = Field(default_factory=list)

    @field_validator("customer_name", "customer_email", mode="after")
    @classmethod
    def blank_to_none(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        return v or None

    @model_validator(mode="after")
    def validate_contents(self) -> GiftCertificateCreate:
        if self.customer_id is None and not self.customer_name:
            raise ValueError("Either an existing customer or a customer name is required")
        if not self.services and not self.service_sets:
            raise ValueError("A gift certificate needs at least one service or set")
        return self


class GiftCertificateItemResponse(BaseModel):
    service_id: UUID | None
    service_set_id: UUID | None
    quantity: int

    model_config = ConfigDict(from_attributes=True)


class GiftCertificateResponse(BaseModel):
    id: UUID
    code: str
    value: Decimal
    status: VoucherStatus
    customer_id: UUID
    expires_on: date | None
    used_at: datetime | None
    booking_id: UUID | None
    items: list[GiftCertificateItemResponse] = Field(default_factory=list)


class GiftCertificateRedeem(BaseModel):
    """When and where the prepaid services are booked."""

    appointment_date: date
    appointment_time: time
    branch: Branch
    notes: str | None = Field(default=None, max_length=1000)


# ---------------------------------------------------------------------------
# Commissions
# ---------------------------------------------------------------------------


class CommissionOutcome(StrEnum):
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    PENDING_DEBOUNCE = "pending_debounce"  # all served, waiting out the window
    NOT_ELIGIBLE = "not_eligible"
    REVERTED = "reverted"


class CommissionTransactionResponse(BaseModel):
    id: UUID
    employee_id: UUID
    booking_id: UUID
    service_instance_id: UUID
    reverses_id: UUID | None
    amount: Decimal
    service_price: Decimal
    commission_rate: Decimal
    role_at_time: EmployeeRole
    transaction_type: CommissionType
    status: CommissionStatus
    applied_at: datetime | None
    reverted_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class CommissionEvaluation(BaseModel):
    booking_id: UUID
    outcome: CommissionOutcome
    transactions: list[CommissionTransactionResponse] = Field(default_factory=list)


class InstanceTransition(BaseModel):
    instance: ServiceInstanceResponse
    # filled on serve/unserve; commission failures never undo the transition
    commission: CommissionEvaluation | None = None
    commission_error: str | None = None


class CommissionSweep(BaseModel):
    checked: int
    applied: list[UUID]


# ---------------------------------------------------------------------------
# Payroll
# ---------------------------------------------------------------------------


class AttendanceMark(BaseModel):
    employee_id: UUID
    work_date: date
    is_present: bool = True


class AttendanceResponse(BaseModel):
    id: UUID
    employee_id: UUID
    work_date: date
    is_present: bool
    daily_rate_applied: Decimal

    model_config = ConfigDict(from_attributes=True)


class PayrollSummary(BaseModel):
    employee_id: UUID
    attendance_days: int
    attendance_amount: Decimal
    commission_transactions: int
    commission_amount: Decimal  # ADD minus REVERT, unreleased only
    total_amount: Decimal


class PayslipReleaseResponse(BaseModel):
    id: UUID
    employee_id: UUID
    attendance_amount: Decimal
    commission_amount: Decimal
    total_amount: Decimal
    released_by: UUID | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SalesSummary(BaseModel):
    start: date
    end: date
    branch: Branch | None
    bookings: int
    sales_total: Decimal
    commission_added: Decimal
    commission_reverted: Decimal
    commission_net: Decimal


# ---------------------------------------------------------------------------
# Appointment sessions
# ---------------------------------------------------------------------------


class SessionStart(BaseModel):
    customer_id: UUID
    service_id: UUID


class AppointmentSessionResponse(BaseModel):
    id: UUID
    customer_id: UUID
    service_id: UUID
    current_step: int
    total_steps: int | None
    status: SessionStatus
    started_at: datetime
    completed_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class SessionLinkCreate(BaseModel):
    booking_id: UUID
    step_order: int = Field(ge=1)


class SessionLinkResponse(BaseModel):
    id: UUID
    session_id: UUID
    booking_id: UUID
    step_order: int
    attended_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class AttendedRequest(BaseModel):
    booking_id: UUID


class AttendedResult(BaseModel):
    session_id: UUID
    current_step: int
    completed: bool


class AppointmentStepIn(BaseModel):
    step_order: int = Field(ge=1)
    step_service_id: UUID | None = None
    recommended_after_days: int = Field(default=0, ge=0)
    label: str | None = Field(default=None, max_length=255)


class AppointmentStepResponse(BaseModel):
    id: UUID
    service_id: UUID
    step_order: int
    step_service_id: UUID | None
    recommended_after_days: int
    label: str | None

    model_config = ConfigDict(from_attributes=True)


class NextRecommendation(BaseModel):
    session_id: UUID
    next_step: int
    label: str | None = None
    recommended_date: date | None


class UpcomingSession(BaseModel):
    session: AppointmentSessionResponse
    recommendation: NextRecommendation


# ---------------------------------------------------------------------------
# Realtime
# ---------------------------------------------------------------------------


class ChangeNotification(BaseModel):
    """Row-level change event published on the booking change channel."""

    table: Literal["bookings", "service_instances"]
    event_type: Literal["INSERT", "UPDATE", "DELETE"]
    new: dict | None = None
    old: dict | None = None


class DayView(BaseModel):
    day: date
    bookings: list[BookingDetail]
