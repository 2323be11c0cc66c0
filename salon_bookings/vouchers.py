from __future__ import annotations

import re
import secrets
import string
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from loguru import logger
from tortoise.exceptions import IntegrityError, OperationalError
from tortoise.transactions import in_transaction

from salon_bookings.errors import (
    ConflictError,
    ExpiredError,
    InvalidVoucherError,
    NotFoundError,
    ValidationError,
)
from salon_bookings.models import (
    ACTIVE_DISCOUNT_SLOT,
    Branch,
    Customer,
    Discount,
    DiscountStatus,
    DiscountType,
    Service,
    Voucher,
    VoucherStatus,
)
from salon_bookings.result import service_operation
from salon_bookings.schemas import (
    DiscountCreate,
    DiscountResponse,
    PriceQuote,
    VoucherCreate,
    VoucherResponse,
)
from salon_bookings.timeutils import salon_today, utcnow

CENT = Decimal("0.01")

VOUCHER_CODE_PREFIX = "BF"
VOUCHER_CODE_ALPHABET = string.ascii_uppercase + string.digits
VOUCHER_CODE_RE = re.compile(r"^BF[A-Z0-9]{4}$")
MAX_CODE_ATTEMPTS = 10


def generate_voucher_code() -> str:
    return VOUCHER_CODE_PREFIX + "".join(
        secrets.choice(VOUCHER_CODE_ALPHABET) for _ in range(4)
    )


def is_valid_voucher_code(code: str) -> bool:
    return bool(VOUCHER_CODE_RE.match(code))


@dataclass
class Redemption:
    """What a booking is allowed to take off its grand total."""

    amount: Decimal = Decimal("0")
    voucher: Voucher | None = None
    discount: Discount | None = None


# ---------------------------------------------------------------------------
# Lazy expiry sweeps
# ---------------------------------------------------------------------------


async def expire_stale_vouchers(today: date | None = None) -> int:
    """ACTIVE vouchers whose expiry date has passed become EXPIRED."""
    today = today or salon_today()
    try:
        expired = await Voucher.filter(
            status=VoucherStatus.ACTIVE, expires_on__lt=today
        ).update(status=VoucherStatus.EXPIRED)
    except OperationalError:
        # the per-voucher expiry check still catches anything missed here
        logger.warning("Voucher expiry sweep failed", exc_info=True)
        return 0
    if expired:
        logger.info("Expired {} stale voucher(s)", expired)
    return expired


async def expire_stale_discounts() -> int:
    try:
        expired = await Discount.filter(
            status=DiscountStatus.ACTIVE, end_date__lt=utcnow()
        ).update(status=DiscountStatus.EXPIRED, active_slot=None)
    except OperationalError:
        logger.warning("Discount expiry sweep failed", exc_info=True)
        return 0
    if expired:
        logger.info("Expired {} stale discount(s)", expired)
    return expired


# ---------------------------------------------------------------------------
# Vouchers
# ---------------------------------------------------------------------------


async def load_redeemable_voucher(
    voucher_id: UUID | None = None,
    code: str | None = None,
    customer_id: UUID | None = None,
) -> Voucher:
    await expire_stale_vouchers()

    if voucher_id is not None:
        voucher = await Voucher.get_or_none(id=voucher_id)
        if voucher is None:
            raise InvalidVoucherError("Voucher not found")
    else:
        code = (code or "").strip().upper()
        if not is_valid_voucher_code(code):
            raise InvalidVoucherError(f"Invalid voucher code format: {code!r}")
        voucher = await Voucher.get_or_none(code=code)
        if voucher is None:
            raise InvalidVoucherError("Voucher code not found")

    if voucher.status == VoucherStatus.USED:
        raise InvalidVoucherError("This voucher code has already been used")
    if voucher.status == VoucherStatus.EXPIRED or (
        voucher.expires_on is not None and voucher.expires_on < salon_today()
    ):
        await Voucher.filter(id=voucher.id, status=VoucherStatus.ACTIVE).update(
            status=VoucherStatus.EXPIRED
        )
        raise ExpiredError("This voucher has expired")

    # a bound voucher only redeems for its owner, never for a new walk-in
    if voucher.customer_id is not None and voucher.customer_id != customer_id:
        raise InvalidVoucherError("Voucher belongs to another customer")

    return voucher


async def validate_voucher(
    grand_total: Decimal,
    voucher_id: UUID | None = None,
    code: str | None = None,
    customer_id: UUID | None = None,
) -> Redemption:
    voucher = await load_redeemable_voucher(voucher_id, code, customer_id)
    return Redemption(amount=min(voucher.value, grand_total), voucher=voucher)


async def consume_voucher(voucher_id: UUID) -> None:
    """ACTIVE → USED as one conditional write; losing the race is an error."""
    updated = await Voucher.filter(id=voucher_id, status=VoucherStatus.ACTIVE).update(
        status=VoucherStatus.USED, used_at=utcnow()
    )
    if not updated:
        raise InvalidVoucherError("Voucher has already been used")


@service_operation("check voucher")
async def check_voucher(code: str, customer_id: UUID | None = None) -> VoucherResponse:
    voucher = await load_redeemable_voucher(code=code, customer_id=customer_id)
    return VoucherResponse.model_validate(voucher, from_attributes=True)


@service_operation("issue voucher")
async def issue_voucher(payload: VoucherCreate) -> VoucherResponse:
    if payload.customer_id is not None and not await Customer.exists(
        id=payload.customer_id
    ):
        raise NotFoundError.for_entity("Customer", payload.customer_id)

    for attempt in range(1, MAX_CODE_ATTEMPTS + 1):
        code = generate_voucher_code()
        if await Voucher.exists(code=code):
            continue
        try:
            voucher = await Voucher.create(
                code=code,
                value=payload.value,
                customer_id=payload.customer_id,
                expires_on=payload.expires_on,
            )
        except IntegrityError:
            logger.debug("Voucher code {} taken on attempt {}", code, attempt)
            continue
        logger.info("Issued voucher {} worth {}", voucher.code, voucher.value)
        return VoucherResponse.model_validate(voucher, from_attributes=True)

    raise ConflictError("Could not generate a unique voucher code")


# ---------------------------------------------------------------------------
# Discounts
# ---------------------------------------------------------------------------


async def find_active_discount() -> Discount | None:
    await expire_stale_discounts()
    return await Discount.filter(
        status=DiscountStatus.ACTIVE, start_date__lte=utcnow()
    ).first()


async def discount_amount(
    discount: Discount, quote: PriceQuote, branch: Branch
) -> Decimal:
    """
    Amount the discount takes off ``quote``.

    Branch-scoped discounts give nothing outside their branch. A service
    scope limits a percentage discount to the units of those services (set
    members count with their commission share).
    """
    if discount.branch is not None and discount.branch != branch:
        return Decimal("0")

    scoped_ids = {s.id for s in await discount.services.all()}
    if scoped_ids:
        eligible = sum(
            (u.price_at_booking for u in quote.units if u.service_id in scoped_ids),
            Decimal("0"),
        )
    else:
        eligible = quote.grand_total
    if eligible <= 0:
        return Decimal("0")

    if discount.discount_type == DiscountType.PERCENTAGE:
        amount = eligible * discount.value / 100
    else:
        amount = discount.value
    return min(amount, quote.grand_total).quantize(CENT)


async def resolve_redemption(
    quote: PriceQuote,
    branch: Branch,
    voucher_id: UUID | None = None,
    voucher_code: str | None = None,
    apply_discount: bool = False,
    customer_id: UUID | None = None,
) -> Redemption:
    """A voucher or the active discount, never both."""
    wants_voucher = voucher_id is not None or voucher_code is not None
    if wants_voucher and apply_discount:
        raise ValidationError("Apply either a voucher or the active discount, not both")

    if wants_voucher:
        return await validate_voucher(
            quote.grand_total, voucher_id, voucher_code, customer_id
        )

    if apply_discount:
        discount = await find_active_discount()
        if discount is None:
            raise ValidationError("There is no active discount to apply")
        amount = await discount_amount(discount, quote, branch)
        return Redemption(amount=amount, discount=discount)

    return Redemption()


@service_operation("get active discount")
async def get_active_discount() -> DiscountResponse | None:
    discount = await find_active_discount()
    if discount is None:
        return None
    return DiscountResponse.model_validate(discount, from_attributes=True)


@service_operation("create discount")
async def create_discount(payload: DiscountCreate) -> DiscountResponse:
    await expire_stale_discounts()
    if await Discount.exists(status=DiscountStatus.ACTIVE):
        raise ConflictError("Another discount is already active")

    services = []
    if payload.service_ids:
        services = await Service.filter(id__in=payload.service_ids)
        missing = set(payload.service_ids) - {s.id for s in services}
        if missing:
            raise NotFoundError.for_entity("Service", sorted(map(str, missing))[0])

    try:
        async with in_transaction():
            discount = await Discount.create(
                name=payload.name,
                discount_type=payload.discount_type,
                value=payload.value,
                branch=payload.branch,
                start_date=payload.start_date,
                end_date=payload.end_date,
                active_slot=ACTIVE_DISCOUNT_SLOT,
            )
            if services:
                await discount.services.add(*services)
    except IntegrityError:
        raise ConflictError("Another discount is already active") from None

    logger.info("Discount {} ({}) is now active", discount.id, discount.name)
    return DiscountResponse.model_validate(discount, from_attributes=True)


@service_operation("cancel discount")
async def cancel_discount(discount_id: UUID) -> DiscountResponse:
    discount = await Discount.get_or_none(id=discount_id)
    if discount is None:
        raise NotFoundError.for_entity("Discount", discount_id)

    updated = await Discount.filter(id=discount_id, status=DiscountStatus.ACTIVE).update(
        status=DiscountStatus.CANCELLED, active_slot=None
    )
    if not updated:
        raise ConflictError(f"Discount is {discount.status}, not active")

    await discount.refresh_from_db()
    logger.info("Discount {} cancelled", discount_id)
    return DiscountResponse.model_validate(discount, from_attributes=True)
