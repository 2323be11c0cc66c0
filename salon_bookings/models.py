from decimal import Decimal
from enum import StrEnum

from tortoise import fields
from tortoise.models import Model


class Branch(StrEnum):
    NAILS = "nails"
    SKIN = "skin"
    LASHES = "lashes"
    MASSAGE = "massage"


class BookingStatus(StrEnum):
    PENDING = "pending"  # just created, nobody has started on it
    CONFIRMED = "confirmed"  # customer confirmed the appointment
    IN_PROGRESS = "in_progress"  # at least one service is being worked on
    COMPLETED = "completed"  # every service delivered
    PAID = "paid"  # settled at the counter
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"  # customer didn't show up


class InstanceStatus(StrEnum):
    UNCLAIMED = "unclaimed"
    CLAIMED = "claimed"  # a staff member took the unit
    SERVED = "served"


class VoucherStatus(StrEnum):
    ACTIVE = "active"
    USED = "used"
    EXPIRED = "expired"


class DiscountType(StrEnum):
    PERCENTAGE = "percentage"
    ABSOLUTE = "absolute"


class DiscountStatus(StrEnum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class EmployeeRole(StrEnum):
    OWNER = "owner"
    CASHIER = "cashier"
    WORKER = "worker"
    MASSEUSE = "masseuse"


class CommissionType(StrEnum):
    ADD = "add"
    REVERT = "revert"


class CommissionStatus(StrEnum):
    PENDING = "pending"
    APPLIED = "applied"
    REVERTED = "reverted"  # ADD row cancelled out by a paired REVERT row


class SessionStatus(StrEnum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class TimestampedModel(Model):
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:  # type: ignore
        abstract = True


# ---------------------------------------------------------------------------
# Catalogue
# ---------------------------------------------------------------------------


class Service(TimestampedModel):
    id = fields.UUIDField(primary_key=True)
    name = fields.CharField(max_length=255)
    branch = fields.CharEnumField(Branch)

    price = fields.DecimalField(max_digits=10, decimal_places=2)
    duration = fields.IntField()  # minutes
    is_active = fields.BooleanField(default=True)

    # multi-visit treatments walk through ServiceAppointmentStep templates
    requires_appointments = fields.BooleanField(default=False)
    total_appointments = fields.IntField(null=True)  # None = open-ended

    class Meta:  # type: ignore
        table = "services"
        ordering = ["name"]


class ServiceSet(TimestampedModel):
    id = fields.UUIDField(primary_key=True)
    name = fields.CharField(max_length=255)
    branch = fields.CharEnumField(Branch)
    price = fields.DecimalField(max_digits=10, decimal_places=2)
    is_active = fields.BooleanField(default=True)

    items: fields.ReverseRelation["ServiceSetItem"]

    class Meta:  # type: ignore
        table = "service_sets"
        ordering = ["name"]


class ServiceSetItem(TimestampedModel):
    id = fields.UUIDField(primary_key=True)
    service_set: fields.ForeignKeyRelation[ServiceSet] = fields.ForeignKeyField(
        "models.ServiceSet", related_name="items", on_delete=fields.CASCADE
    )
    service: fields.ForeignKeyRelation[Service] = fields.ForeignKeyField(
        "models.Service", related_name="set_items", on_delete=fields.RESTRICT
    )
    # commission base for this member; falls back to an even split of the set price
    adjusted_price = fields.DecimalField(max_digits=10, decimal_places=2, null=True)

    class Meta:  # type: ignore
        table = "service_set_items"
        unique_together = (("service_set", "service"),)


# ---------------------------------------------------------------------------
# Customers, vouchers, discounts
# ---------------------------------------------------------------------------


def capitalize_words(name: str) -> str:
    """'maria  DELA cruz' → 'Maria Dela Cruz'."""
    return " ".join(word[:1].upper() + word[1:].lower() for word in name.split())


class Customer(TimestampedModel):
    id = fields.UUIDField(primary_key=True)
    name = fields.CharField(max_length=255)
    email = fields.CharField(max_length=255, null=True)
    phone = fields.CharField(max_length=32, null=True)

    spent = fields.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0"))
    last_transaction = fields.DatetimeField(null=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:  # type: ignore
        table = "customers"
        ordering = ["name"]


class Voucher(TimestampedModel):
    id = fields.UUIDField(primary_key=True)
    code = fields.CharField(max_length=6, unique=True)  # BF + 4 of [A-Z0-9]
    value = fields.DecimalField(max_digits=10, decimal_places=2)
    status = fields.CharEnumField(VoucherStatus, default=VoucherStatus.ACTIVE)

    customer: fields.ForeignKeyNullableRelation[Customer] = fields.ForeignKeyField(
        "models.Customer", related_name="vouchers", null=True, on_delete=fields.SET_NULL
    )
    expires_on = fields.DateField(null=True)
    used_at = fields.DatetimeField(null=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:  # type: ignore
        table = "vouchers"
        ordering = ["-created_at"]


class Discount(TimestampedModel):
    id = fields.UUIDField(primary_key=True)
    name = fields.CharField(max_length=255)
    discount_type = fields.CharEnumField(DiscountType)
    value = fields.DecimalField(max_digits=10, decimal_places=2)

    branch = fields.CharEnumField(Branch, null=True)  # None = every branch
    services: fields.ManyToManyRelation[Service] = fields.ManyToManyField(
        "models.Service", related_name="discounts", through="discount_services"
    )  # empty = every service

    start_date = fields.DatetimeField()
    end_date = fields.DatetimeField()
    status = fields.CharEnumField(DiscountStatus, default=DiscountStatus.ACTIVE)

    # set to a constant while ACTIVE, NULL otherwise: at most one ACTIVE row
    active_slot = fields.CharField(max_length=16, null=True, unique=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:  # type: ignore
        table = "discounts"
        ordering = ["-created_at"]


class GiftCertificate(TimestampedModel):
    """Prepaid services; redeeming one books them for its customer."""

    id = fields.UUIDField(primary_key=True)
    code = fields.CharField(max_length=6, unique=True)  # GC + 4 of [A-Z0-9]
    value = fields.DecimalField(max_digits=10, decimal_places=2)  # face value at issue
    status = fields.CharEnumField(VoucherStatus, default=VoucherStatus.ACTIVE)

    customer: fields.ForeignKeyRelation[Customer] = fields.ForeignKeyField(
        "models.Customer", related_name="gift_certificates", on_delete=fields.RESTRICT
    )
    expires_on = fields.DateField(null=True)
    used_at = fields.DatetimeField(null=True)
    booking: fields.ForeignKeyNullableRelation["Booking"] = fields.ForeignKeyField(
        "models.Booking",
        related_name="gift_certificates",
        null=True,
        on_delete=fields.SET_NULL,
    )
    updated_at = fields.DatetimeField(auto_now=True)

    items: fields.ReverseRelation["GiftCertificateItem"]

    class Meta:  # type: ignore
        table = "gift_certificates"
        ordering = ["-created_at"]


class GiftCertificateItem(TimestampedModel):
    """Exactly one of ``service`` / ``service_set`` is set."""

    id = fields.UUIDField(primary_key=True)
    gift_certificate: fields.ForeignKeyRelation[GiftCertificate] = fields.ForeignKeyField(
        "models.GiftCertificate", related_name="items", on_delete=fields.CASCADE
    )
    service: fields.ForeignKeyNullableRelation[Service] = fields.ForeignKeyField(
        "models.Service", related_name="gift_items", null=True, on_delete=fields.RESTRICT
    )
    service_set: fields.ForeignKeyNullableRelation[ServiceSet] = fields.ForeignKeyField(
        "models.ServiceSet",
        related_name="gift_items",
        null=True,
        on_delete=fields.RESTRICT,
    )
    quantity = fields.IntField(default=1)

    class Meta:  # type: ignore
        table = "gift_certificate_items"


# ---------------------------------------------------------------------------
# Bookings and service instances
# ---------------------------------------------------------------------------


class Booking(TimestampedModel):
    id = fields.UUIDField(primary_key=True)

    customer: fields.ForeignKeyRelation[Customer] = fields.ForeignKeyField(
        "models.Customer", related_name="bookings", on_delete=fields.RESTRICT
    )

    appointment_date = fields.DateField()
    appointment_time = fields.CharField(max_length=5)  # "HH:MM", salon-local
    duration = fields.IntField()  # minutes, computed
    branch = fields.CharEnumField(Branch)

    grand_total = fields.DecimalField(max_digits=10, decimal_places=2)  # computed
    grand_discount = fields.DecimalField(
        max_digits=10, decimal_places=2, default=Decimal("0")
    )
    status = fields.CharEnumField(BookingStatus, default=BookingStatus.PENDING)

    voucher: fields.ForeignKeyNullableRelation[Voucher] = fields.ForeignKeyField(
        "models.Voucher", related_name="bookings", null=True, on_delete=fields.SET_NULL
    )
    discount: fields.ForeignKeyNullableRelation[Discount] = fields.ForeignKeyField(
        "models.Discount", related_name="bookings", null=True, on_delete=fields.SET_NULL
    )
    notes = fields.TextField(null=True)

    confirmed_at = fields.DatetimeField(null=True)
    started_at = fields.DatetimeField(null=True)
    completed_at = fields.DatetimeField(null=True)
    paid_at = fields.DatetimeField(null=True)
    cancelled_at = fields.DatetimeField(null=True)
    # non-null while the booking's commissions are applied
    commission_processed_at = fields.DatetimeField(null=True)
    updated_at = fields.DatetimeField(auto_now=True)

    instances: fields.ReverseRelation["ServiceInstance"]

    class Meta:  # type: ignore
        table = "bookings"
        ordering = ["appointment_date", "appointment_time"]


class ServiceInstance(TimestampedModel):
    id = fields.UUIDField(primary_key=True)

    booking: fields.ForeignKeyRelation[Booking] = fields.ForeignKeyField(
        "models.Booking", related_name="instances", on_delete=fields.CASCADE
    )
    service: fields.ForeignKeyRelation[Service] = fields.ForeignKeyField(
        "models.Service", related_name="instances", on_delete=fields.RESTRICT
    )
    service_set: fields.ForeignKeyNullableRelation[ServiceSet] = fields.ForeignKeyField(
        "models.ServiceSet",
        related_name="instances",
        null=True,
        on_delete=fields.SET_NULL,
    )

    # snapshot at booking time; keeps the fractional even-split share of a set
    price_at_booking = fields.DecimalField(max_digits=14, decimal_places=6)
    sequence_order = fields.IntField()

    status = fields.CharEnumField(InstanceStatus, default=InstanceStatus.UNCLAIMED)
    claimed_by = fields.UUIDField(null=True)
    claimed_at = fields.DatetimeField(null=True)
    served_by = fields.UUIDField(null=True)
    served_at = fields.DatetimeField(null=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:  # type: ignore
        table = "service_instances"
        ordering = ["sequence_order"]
        unique_together = (("booking", "sequence_order"),)


# ---------------------------------------------------------------------------
# Staff, commissions, payroll
# ---------------------------------------------------------------------------


class Employee(TimestampedModel):
    id = fields.UUIDField(primary_key=True)
    user_id = fields.UUIDField(unique=True)  # identity injected by the gateway
    name = fields.CharField(max_length=255)
    role = fields.CharEnumField(EmployeeRole)

    commission_rate = fields.DecimalField(
        max_digits=5, decimal_places=2, null=True
    )  # percent; None = role default
    daily_rate = fields.DecimalField(
        max_digits=10, decimal_places=2, default=Decimal("0")
    )
    is_active = fields.BooleanField(default=True)

    class Meta:  # type: ignore
        table = "employees"
        ordering = ["name"]


class Attendance(TimestampedModel):
    id = fields.UUIDField(primary_key=True)
    employee: fields.ForeignKeyRelation[Employee] = fields.ForeignKeyField(
        "models.Employee", related_name="attendance", on_delete=fields.CASCADE
    )
    work_date = fields.DateField()
    is_present = fields.BooleanField(default=True)
    daily_rate_applied = fields.DecimalField(
        max_digits=10, decimal_places=2, default=Decimal("0")
    )  # snapshot at marking time
    payslip_release: fields.ForeignKeyNullableRelation["PayslipRelease"] = (
        fields.ForeignKeyField(
            "models.PayslipRelease",
            related_name="attendance",
            null=True,
            on_delete=fields.SET_NULL,
        )
    )  # set once paid out
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:  # type: ignore
        table = "attendance"
        ordering = ["-work_date"]
        unique_together = (("employee", "work_date"),)


class CommissionTransaction(TimestampedModel):
    id = fields.UUIDField(primary_key=True)

    employee: fields.ForeignKeyRelation[Employee] = fields.ForeignKeyField(
        "models.Employee", related_name="commissions", on_delete=fields.RESTRICT
    )
    booking: fields.ForeignKeyRelation[Booking] = fields.ForeignKeyField(
        "models.Booking", related_name="commissions", on_delete=fields.CASCADE
    )
    service_instance: fields.ForeignKeyRelation[ServiceInstance] = (
        fields.ForeignKeyField(
            "models.ServiceInstance",
            related_name="commissions",
            on_delete=fields.CASCADE,
        )
    )
    reverses: fields.ForeignKeyNullableRelation["CommissionTransaction"] = (
        fields.ForeignKeyField(
            "models.CommissionTransaction",
            related_name="reversals",
            null=True,
            on_delete=fields.SET_NULL,
        )
    )  # REVERT rows point at the ADD they cancel

    amount = fields.DecimalField(max_digits=10, decimal_places=2)
    service_price = fields.DecimalField(max_digits=14, decimal_places=6)  # snapshot
    commission_rate = fields.DecimalField(max_digits=5, decimal_places=2)  # snapshot
    role_at_time = fields.CharEnumField(EmployeeRole)

    transaction_type = fields.CharEnumField(CommissionType)
    status = fields.CharEnumField(CommissionStatus, default=CommissionStatus.PENDING)
    # instance id while an ADD is APPLIED, NULL otherwise: one live ADD per instance
    live_key = fields.CharField(max_length=64, null=True, unique=True)

    applied_at = fields.DatetimeField(null=True)
    reverted_at = fields.DatetimeField(null=True)
    notes = fields.TextField(null=True)
    payslip_release: fields.ForeignKeyNullableRelation["PayslipRelease"] = (
        fields.ForeignKeyField(
            "models.PayslipRelease",
            related_name="commissions",
            null=True,
            on_delete=fields.SET_NULL,
        )
    )  # set once paid out

    class Meta:  # type: ignore
        table = "commission_transactions"
        ordering = ["created_at"]


class PayslipRelease(TimestampedModel):
    id = fields.UUIDField(primary_key=True)
    employee: fields.ForeignKeyRelation[Employee] = fields.ForeignKeyField(
        "models.Employee", related_name="payslip_releases", on_delete=fields.RESTRICT
    )
    attendance_amount = fields.DecimalField(max_digits=12, decimal_places=2)
    commission_amount = fields.DecimalField(max_digits=12, decimal_places=2)
    total_amount = fields.DecimalField(max_digits=12, decimal_places=2)
    released_by = fields.UUIDField(null=True)

    class Meta:  # type: ignore
        table = "payslip_releases"
        ordering = ["-created_at"]


# ---------------------------------------------------------------------------
# Appointment continuity sessions
# ---------------------------------------------------------------------------


class ServiceAppointmentStep(TimestampedModel):
    id = fields.UUIDField(primary_key=True)
    service: fields.ForeignKeyRelation[Service] = fields.ForeignKeyField(
        "models.Service", related_name="appointment_steps", on_delete=fields.CASCADE
    )
    step_order = fields.IntField()
    step_service: fields.ForeignKeyNullableRelation[Service] = fields.ForeignKeyField(
        "models.Service",
        related_name="step_usages",
        null=True,
        on_delete=fields.SET_NULL,
    )  # service to book at this step
    recommended_after_days = fields.IntField(default=0)
    label = fields.CharField(max_length=255, null=True)

    class Meta:  # type: ignore
        table = "service_appointment_steps"
        ordering = ["step_order"]
        unique_together = (("service", "step_order"),)


class AppointmentSession(TimestampedModel):
    id = fields.UUIDField(primary_key=True)
    customer: fields.ForeignKeyRelation[Customer] = fields.ForeignKeyField(
        "models.Customer", related_name="appointment_sessions", on_delete=fields.CASCADE
    )
    service: fields.ForeignKeyRelation[Service] = fields.ForeignKeyField(
        "models.Service", related_name="appointment_sessions", on_delete=fields.RESTRICT
    )

    current_step = fields.IntField(default=1)  # 1-based, next step to attend
    total_steps = fields.IntField(null=True)  # None = open-ended
    status = fields.CharEnumField(SessionStatus, default=SessionStatus.IN_PROGRESS)

    # "customer:service" while IN_PROGRESS, NULL once completed
    active_key = fields.CharField(max_length=80, null=True, unique=True)

    started_at = fields.DatetimeField(auto_now_add=True)
    completed_at = fields.DatetimeField(null=True)
    updated_at = fields.DatetimeField(auto_now=True)

    links: fields.ReverseRelation["AppointmentSessionBooking"]

    class Meta:  # type: ignore
        table = "appointment_sessions"
        ordering = ["-started_at"]


class AppointmentSessionBooking(TimestampedModel):
    id = fields.UUIDField(primary_key=True)
    session: fields.ForeignKeyRelation[AppointmentSession] = fields.ForeignKeyField(
        "models.AppointmentSession", related_name="links", on_delete=fields.CASCADE
    )
    booking: fields.ForeignKeyRelation[Booking] = fields.ForeignKeyField(
        "models.Booking", related_name="session_links", on_delete=fields.CASCADE
    )
    step_order = fields.IntField()
    attended_at = fields.DatetimeField(null=True)

    class Meta:  # type: ignore
        table = "appointment_session_bookings"
        ordering = ["step_order"]
        unique_together = (("session", "step_order"),)


def active_session_key(customer_id: object, service_id: object) -> str:
    return f"{customer_id}:{service_id}"


ACTIVE_DISCOUNT_SLOT = "active"
