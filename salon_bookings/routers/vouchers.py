from uuid import UUID

from fastapi import APIRouter, Depends, status

from salon_bookings import gift_certificates, vouchers
from salon_bookings.deps import (
    can_manage_discounts,
    can_manage_vouchers,
    can_read_booking,
    can_write_booking,
    unwrap,
)
from salon_bookings.schemas import (
    DiscountCreate,
    DiscountResponse,
    GiftCertificateCreate,
    GiftCertificateResponse,
    VoucherCreate,
    VoucherResponse,
)

router = APIRouter(tags=["vouchers & discounts"])


@router.post(
    "/vouchers",
    response_model=VoucherResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(can_manage_vouchers)],
)
async def issue_voucher(payload: VoucherCreate) -> VoucherResponse:
    return unwrap(await vouchers.issue_voucher(payload))


@router.get(
    "/vouchers/check/{code}",
    response_model=VoucherResponse,
    dependencies=[Depends(can_write_booking)],
)
async def check_voucher(code: str, customer_id: UUID | None = None) -> VoucherResponse:
    """Front desk check before the code is applied to a booking."""
    return unwrap(await vouchers.check_voucher(code, customer_id))


@router.get(
    "/discounts/active",
    response_model=DiscountResponse | None,
    dependencies=[Depends(can_read_booking)],
)
async def get_active_discount() -> DiscountResponse | None:
    return unwrap(await vouchers.get_active_discount())


@router.post(
    "/discounts",
    response_model=DiscountResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(can_manage_discounts)],
)
async def create_discount(payload: DiscountCreate) -> DiscountResponse:
    return unwrap(await vouchers.create_discount(payload))


@router.post(
    "/discounts/{discount_id}/cancel",
    response_model=DiscountResponse,
    dependencies=[Depends(can_manage_discounts)],
)
async def cancel_discount(discount_id: UUID) -> DiscountResponse:
    return unwrap(await vouchers.cancel_discount(discount_id))


@router.post(
    "/gift-certificates",
    response_model=GiftCertificateResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(can_manage_vouchers)],
)
async def issue_gift_certificate(payload: GiftCertificateCreate) -> GiftCertificateResponse:
    return unwrap(await gift_certificates.issue_gift_certificate(payload))


@router.get(
    "/gift-certificates/check/{code}",
    response_model=GiftCertificateResponse,
    dependencies=[Depends(can_write_booking)],
)
async def check_gift_certificate(code: str) -> GiftCertificateResponse:
    return unwrap(await gift_certificates.check_gift_certificate(code))
