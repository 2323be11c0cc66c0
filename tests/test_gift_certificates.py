"""Gift certificates: issuing, checking and redeeming them as bookings."""

from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from salon_bookings import gift_certificates
from salon_bookings.crud import booking_crud
from salon_bookings.errors import ErrorCode
from salon_bookings.gift_certificates import (
    generate_gift_certificate_code,
    is_valid_gift_certificate_code,
)
from salon_bookings.models import (
    Booking,
    Branch,
    Customer,
    GiftCertificate,
    VoucherStatus,
)
from salon_bookings.schemas import (
    GiftCertificateCreate,
    GiftCertificateRedeem,
    ServiceLine,
    ServiceSetLine,
)

from .factories import (
    FAR_FUTURE,
    booking_instances,
    create_customer,
    create_service,
    create_service_set,
)


def _redeem_details() -> GiftCertificateRedeem:
    return GiftCertificateRedeem(
        appointment_date=FAR_FUTURE, appointment_time="15:00", branch=Branch.NAILS
    )


async def _issue(services, sets=(), **overrides):
    payload = GiftCertificateCreate(
        **{
            "customer_name": "lucia  santos",
            "services": [ServiceLine(service_id=s.id, quantity=q) for s, q in services],
            "service_sets": [
                ServiceSetLine(service_set_id=s.id, quantity=q) for s, q in sets
            ],
            **overrides,
        }
    )
    return await gift_certificates.issue_gift_certificate(payload)


class TestGiftCertificateCodes:
    def test_generated_codes_are_valid(self):
        for _ in range(50):
            assert is_valid_gift_certificate_code(generate_gift_certificate_code())

    @pytest.mark.parametrize("code", ["GC12", "BFA1B2", "gca1b2", "GCA1B23", "GC-A1B"])
    def test_rejects_malformed(self, code):
        assert not is_valid_gift_certificate_code(code)


class TestIssueGiftCertificate:
    def test_new_recipient_is_created_and_value_is_priced(self, db):
        async def scenario():
            gel = await create_service(price="1000.00")
            mani = await create_service("Manicure", "1000.00")
            pedi = await create_service("Pedicure", "800.00")
            combo = await create_service_set([(mani, None), (pedi, None)])
            result = await _issue([(gel, 2)], [(combo, 1)])
            return result, await Customer.get(id=result.data.customer_id)

        result, customer = db.call(scenario)

        assert result.is_success, result.error
        certificate = result.data
        assert is_valid_gift_certificate_code(certificate.code)
        assert certificate.value == Decimal("3500.00")
        assert certificate.status == VoucherStatus.ACTIVE
        assert len(certificate.items) == 2
        assert customer.name == "Lucia Santos"
        assert customer.spent == Decimal("0")

    def test_existing_customer_is_reused(self, db):
        async def scenario():
            gel = await create_service()
            customer = await create_customer()
            result = await _issue(
                [(gel, 1)], customer_id=customer.id, customer_name=None
            )
            return result, customer, await Customer.all().count()

        result, customer, customers = db.call(scenario)

        assert result.data.customer_id == customer.id
        assert customers == 1

    def test_unknown_customer_writes_nothing(self, db):
        async def scenario():
            gel = await create_service()
            result = await _issue([(gel, 1)], customer_id=uuid4(), customer_name=None)
            return result, await GiftCertificate.all().count()

        result, certificates = db.call(scenario)

        assert result.code == ErrorCode.NOT_FOUND
        assert certificates == 0

    def test_requires_a_service(self):
        with pytest.raises(ValueError):
            GiftCertificateCreate(customer_name="Lucia Santos")


class TestCheckGiftCertificate:
    def test_lowercase_code_is_accepted(self, db):
        async def scenario():
            gel = await create_service()
            issued = await _issue([(gel, 1)])
            return issued, await gift_certificates.check_gift_certificate(
                issued.data.code.lower()
            )

        issued, checked = db.call(scenario)

        assert checked.is_success
        assert checked.data.id == issued.data.id

    def test_unknown_code(self, db):
        async def scenario():
            return await gift_certificates.check_gift_certificate("GCZZZZ")

        result = db.call(scenario)
        assert result.code == ErrorCode.INVALID_VOUCHER

    def test_past_expiry_reports_expired_and_marks_it(self, db):
        async def scenario():
            gel = await create_service()
            issued = await _issue(
                [(gel, 1)], expires_on=date.today() - timedelta(days=2)
            )
            result = await gift_certificates.check_gift_certificate(issued.data.code)
            return result, await GiftCertificate.get(id=issued.data.id)

        result, certificate = db.call(scenario)

        assert result.code == ErrorCode.EXPIRED
        assert result.error.message == "This gift certificate has expired"
        assert certificate.status == VoucherStatus.EXPIRED


class TestRedeemGiftCertificate:
    def test_books_the_prepaid_services_and_uses_the_certificate(self, db):
        async def scenario():
            gel = await create_service(price="1000.00")
            issued = await _issue([(gel, 2)])
            result = await booking_crud.redeem_gift_certificate(
                issued.data.code, _redeem_details()
            )
            certificate = await GiftCertificate.get(id=issued.data.id)
            customer = await Customer.get(id=issued.data.customer_id)
            units = await booking_instances(result.data.id) if result.is_success else []
            return result, certificate, customer, units

        result, certificate, customer, units = db.call(scenario)

        assert result.is_success, result.error
        booking = result.data
        assert booking.customer_id == customer.id
        assert booking.grand_total == Decimal("2000.00")
        assert booking.notes == f"Gift certificate {certificate.code} redeemed"
        assert len(units) == 2
        assert certificate.status == VoucherStatus.USED
        assert certificate.used_at is not None
        assert certificate.booking_id == booking.id
        assert customer.spent == Decimal("2000.00")

    def test_second_redemption_is_refused(self, db):
        async def scenario():
            gel = await create_service()
            issued = await _issue([(gel, 1)])
            first = await booking_crud.redeem_gift_certificate(
                issued.data.code, _redeem_details()
            )
            second = await booking_crud.redeem_gift_certificate(
                issued.data.code, _redeem_details()
            )
            return first, second, await Booking.all().count()

        first, second, bookings = db.call(scenario)

        assert first.is_success
        assert second.code == ErrorCode.INVALID_VOUCHER
        assert "already been used" in second.error.message
        assert bookings == 1

    def test_expired_certificate_books_nothing(self, db):
        async def scenario():
            gel = await create_service()
            issued = await _issue(
                [(gel, 1)], expires_on=date.today() - timedelta(days=1)
            )
            result = await booking_crud.redeem_gift_certificate(
                issued.data.code, _redeem_details()
            )
            return result, await Booking.all().count()

        result, bookings = db.call(scenario)

        assert result.code == ErrorCode.EXPIRED
        assert bookings == 0
