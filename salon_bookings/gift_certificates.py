"""
Gift certificates: prepaid services bought for a customer.

A certificate lists services and sets with quantities. Redeeming it books
exactly those services for its customer (see ``BookingCRUD``) and marks it
USED in the same transaction, so a code can never be booked twice.
"""

from __future__ import annotations

import re
import secrets
import string
from datetime import date
from uuid import UUID

from loguru import logger
from tortoise.exceptions import IntegrityError
from tortoise.transactions import in_transaction

from salon_bookings.errors import (
    ConflictError,
    ExpiredError,
    InvalidVoucherError,
    NotFoundError,
    ValidationError,
)
from salon_bookings.models import (
    Customer,
    GiftCertificate,
    GiftCertificateItem,
    VoucherStatus,
    capitalize_words,
)
from salon_bookings.pricing import build_quote
from salon_bookings.result import service_operation
from salon_bookings.schemas import (
    GiftCertificateCreate,
    GiftCertificateItemResponse,
    GiftCertificateResponse,
    ServiceLine,
    ServiceSetLine,
)
from salon_bookings.timeutils import salon_today, utcnow

GIFT_CODE_PREFIX = "GC"
GIFT_CODE_ALPHABET = string.ascii_uppercase + string.digits
GIFT_CODE_RE = re.compile(r"^GC[A-Z0-9]{4}$")
MAX_CODE_ATTEMPTS = 10


def generate_gift_certificate_code() -> str:
    return GIFT_CODE_PREFIX + "".join(
        secrets.choice(GIFT_CODE_ALPHABET) for _ in range(4)
    )


def is_valid_gift_certificate_code(code: str) -> bool:
    return bool(GIFT_CODE_RE.match(code))


async def expire_stale_gift_certificates(today: date | None = None) -> int:
    expired = await GiftCertificate.filter(
        status=VoucherStatus.ACTIVE, expires_on__lt=today or salon_today()
    ).update(status=VoucherStatus.EXPIRED)
    if expired:
        logger.info("Expired {} stale gift certificate(s)", expired)
    return expired


async def gift_certificate_response(
    certificate: GiftCertificate,
) -> GiftCertificateResponse:
    items = await GiftCertificateItem.filter(gift_certificate_id=certificate.id)
    return GiftCertificateResponse(
        id=certificate.id,
        code=certificate.code,
        value=certificate.value,
        status=certificate.status,
        customer_id=certificate.customer_id,
        expires_on=certificate.expires_on,
        used_at=certificate.used_at,
        booking_id=certificate.booking_id,
        items=[
            GiftCertificateItemResponse.model_validate(i, from_attributes=True)
            for i in items
        ],
    )


async def certificate_lines(
    certificate: GiftCertificate,
) -> tuple[list[ServiceLine], list[ServiceSetLine]]:
    """The booking lines a certificate pays for."""
    items = await GiftCertificateItem.filter(gift_certificate_id=certificate.id)
    services = [
        ServiceLine(service_id=i.service_id, quantity=i.quantity)
        for i in items
        if i.service_id is not None
    ]
    sets = [
        ServiceSetLine(service_set_id=i.service_set_id, quantity=i.quantity)
        for i in items
        if i.service_set_id is not None
    ]
    return services, sets


async def load_redeemable_gift_certificate(code: str) -> GiftCertificate:
    await expire_stale_gift_certificates()

    code = (code or "").strip().upper()
    if not is_valid_gift_certificate_code(code):
        raise InvalidVoucherError(f"Invalid gift certificate code format: {code!r}")
    certificate = await GiftCertificate.get_or_none(code=code)
    if certificate is None:
        raise InvalidVoucherError("Gift certificate code not found")
    if certificate.status == VoucherStatus.USED:
        raise InvalidVoucherError("This gift certificate has already been used")
    if certificate.status == VoucherStatus.EXPIRED or (
        certificate.expires_on is not None and certificate.expires_on < salon_today()
    ):
        await GiftCertificate.filter(
            id=certificate.id, status=VoucherStatus.ACTIVE
        ).update(status=VoucherStatus.EXPIRED)
        raise ExpiredError("This gift certificate has expired")
    if not await GiftCertificateItem.exists(gift_certificate_id=certificate.id):
        raise ValidationError("This gift certificate has no services or service sets")
    return certificate


async def consume_gift_certificate(certificate_id: UUID, booking_id: UUID) -> None:
    """ACTIVE → USED as one conditional write; losing the race is an error."""
    updated = await GiftCertificate.filter(
        id=certificate_id, status=VoucherStatus.ACTIVE
    ).update(status=VoucherStatus.USED, used_at=utcnow(), booking_id=booking_id)
    if not updated:
        raise InvalidVoucherError("This gift certificate has already been used")


@service_operation("check gift certificate")
async def check_gift_certificate(code: str) -> GiftCertificateResponse:
    certificate = await load_redeemable_gift_certificate(code)
    return await gift_certificate_response(certificate)


@service_operation("issue gift certificate")
async def issue_gift_certificate(payload: GiftCertificateCreate) -> GiftCertificateResponse:
    """
    Price the listed services at today's prices and store the certificate.

    A named recipient who is not yet a customer is created alongside it.
    Spend is not touched here; it grows when the certificate is redeemed.
    """
    if payload.customer_id is not None and not await Customer.exists(
        id=payload.customer_id
    ):
        raise NotFoundError.for_entity("Customer", payload.customer_id)

    quote = await build_quote(payload.services, payload.service_sets)

    code = None
    for _ in range(MAX_CODE_ATTEMPTS):
        candidate = generate_gift_certificate_code()
        if not await GiftCertificate.exists(code=candidate):
            code = candidate
            break
    if code is None:
        raise ConflictError("Could not generate a unique gift certificate code")

    try:
        async with in_transaction():
            customer_id = payload.customer_id
            if customer_id is None:
                customer = await Customer.create(
                    name=capitalize_words(payload.customer_name or ""),
                    email=payload.customer_email,
                )
                customer_id = customer.id

            certificate = await GiftCertificate.create(
                code=code,
                value=quote.grand_total,
                customer_id=customer_id,
                expires_on=payload.expires_on,
            )
            await GiftCertificateItem.bulk_create(
                [
                    GiftCertificateItem(
                        gift_certificate_id=certificate.id,
                        service_id=line.service_id,
                        quantity=line.quantity,
                    )
                    for line in payload.services
                ]
                + [
                    GiftCertificateItem(
                        gift_certificate_id=certificate.id,
                        service_set_id=line.service_set_id,
                        quantity=line.quantity,
                    )
                    for line in payload.service_sets
                ]
            )
    except IntegrityError:
        raise ConflictError("Gift certificate code was taken, try again") from None

    logger.info(
        "Issued gift certificate {} worth {} to customer {}",
        certificate.code,
        certificate.value,
        customer_id,
    )
    return await gift_certificate_response(certificate)
