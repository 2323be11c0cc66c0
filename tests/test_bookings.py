"""
Full endpoint test suite for /bookings.

Testing strategy:
  - Auth/scope deps are overridden via conftest.build_app()
  - booking_crud is patched per-test with AsyncMock (no DB)
  - change announcements are captured by the ``announce`` fixture
  - Redis is the autouse ``fake_redis`` mock
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock, patch

from fastapi.testclient import TestClient

from salon_bookings.deps import get_current_user
from salon_bookings.errors import ErrorCode
from salon_bookings.schemas import BookingDetail, BookingResponse, DayView, PriceQuote
from salon_bookings.scopes import BookingScope

from .factories import (
    BOOKING_ID,
    DAY,
    SERVICE_ID,
    booking_create_payload,
    booking_detail_response,
    booking_response,
    fail,
    make_front_desk,
    make_stylist,
    ok,
)

CRUD_PATH = "salon_bookings.routers.booking.booking_crud"


def booking_model(**overrides) -> BookingResponse:
    return BookingResponse(**booking_response(**overrides))


def detail_model(**overrides) -> BookingDetail:
    return BookingDetail(**booking_detail_response(**overrides))


# ---------------------------------------------------------------------------
# POST /bookings/quote
# ---------------------------------------------------------------------------


class TestQuote:
    def test_returns_priced_units(self, front_desk_client):
        quote = PriceQuote(grand_total="1000.00", duration=60, units=[])
        with patch(
            "salon_bookings.routers.booking.quote", AsyncMock(return_value=ok(quote))
        ):
            resp = front_desk_client.post(
                "/bookings/quote", json={"services": [{"service_id": str(SERVICE_ID)}]}
            )
        assert resp.status_code == 200
        assert resp.json()["grand_total"] == "1000.00"

    def test_inactive_service_returns_422(self, front_desk_client):
        with patch(
            "salon_bookings.routers.booking.quote",
            AsyncMock(return_value=fail(ErrorCode.INACTIVE_ENTITY, "Service is inactive")),
        ):
            resp = front_desk_client.post("/bookings/quote", json={})
        assert resp.status_code == 422
        assert resp.json()["detail"] == {
            "code": "INACTIVE_ENTITY",
            "message": "Service is inactive",
        }


# ---------------------------------------------------------------------------
# GET /bookings
# ---------------------------------------------------------------------------


class TestListBookings:
    def test_lists_bookings(self, stylist_client):
        with patch(CRUD_PATH) as mock_crud:
            mock_crud.list_bookings = AsyncMock(return_value=ok([booking_model()]))
            resp = stylist_client.get("/bookings/")
        assert resp.status_code == 200
        data = resp.json()
        assert len(data) == 1
        assert data[0]["id"] == str(BOOKING_ID)

    def test_filters_forwarded(self, stylist_client):
        with patch(CRUD_PATH) as mock_crud:
            mock_crud.list_bookings = AsyncMock(return_value=ok([]))
            resp = stylist_client.get(
                "/bookings/", params={"status": "pending", "branch": "nails"}
            )
        assert resp.status_code == 200
        filters = mock_crud.list_bookings.call_args.kwargs["filters"]
        assert filters.status == "pending"
        assert filters.branch == "nails"

    def test_missing_auth_headers_returns_422(self, anon_app):
        with TestClient(anon_app) as c:
            resp = c.get("/bookings/")
        assert resp.status_code == 422

    def test_no_relevant_scope_returns_403(self, anon_app):
        async def _no_scope_user():
            return make_stylist(scopes=["payroll:manage"])

        anon_app.dependency_overrides[get_current_user] = _no_scope_user
        with TestClient(anon_app) as c:
            resp = c.get("/bookings/")
        assert resp.status_code == 403


# ---------------------------------------------------------------------------
# POST /bookings
# ---------------------------------------------------------------------------


class TestCreateBooking:
    def test_success_returns_201_and_announces(self, front_desk_client, announce):
        with patch(CRUD_PATH) as mock_crud:
            mock_crud.create_booking = AsyncMock(return_value=ok(detail_model()))
            resp = front_desk_client.post("/bookings/", json=booking_create_payload())

        assert resp.status_code == 201
        assert resp.json()["instances"][0]["status"] == "unclaimed"
        announce.assert_awaited_once_with(
            "bookings",
            "INSERT",
            {"id": str(BOOKING_ID), "appointment_date": DAY.isoformat(), "status": "pending"},
            DAY,
        )

    def test_notifier_is_passed_to_crud(self, client_factory):
        notifier = MagicMock()
        client = client_factory(make_front_desk(), notifications_client=notifier)
        with patch(CRUD_PATH) as mock_crud:
            mock_crud.create_booking = AsyncMock(return_value=ok(detail_model()))
            client.post("/bookings/", json=booking_create_payload())
        assert mock_crud.create_booking.call_args.kwargs["notifier"] is notifier

    def test_used_voucher_returns_422(self, front_desk_client, announce):
        with patch(CRUD_PATH) as mock_crud:
            mock_crud.create_booking = AsyncMock(
                return_value=fail(ErrorCode.INVALID_VOUCHER, "already been used")
            )
            resp = front_desk_client.post(
                "/bookings/", json=booking_create_payload(voucher_code="BFA1B2")
            )
        assert resp.status_code == 422
        assert resp.json()["detail"]["code"] == "INVALID_VOUCHER"
        announce.assert_not_awaited()

    def test_unknown_customer_returns_404(self, front_desk_client):
        with patch(CRUD_PATH) as mock_crud:
            mock_crud.create_booking = AsyncMock(return_value=fail(ErrorCode.NOT_FOUND))
            resp = front_desk_client.post("/bookings/", json=booking_create_payload())
        assert resp.status_code == 404

    def test_store_failure_returns_500(self, front_desk_client):
        with patch(CRUD_PATH) as mock_crud:
            mock_crud.create_booking = AsyncMock(
                return_value=fail(ErrorCode.PERSISTENCE_ERROR)
            )
            resp = front_desk_client.post("/bookings/", json=booking_create_payload())
        assert resp.status_code == 500

    def test_invalid_payload_returns_422(self, front_desk_client):
        resp = front_desk_client.post(
            "/bookings/", json=booking_create_payload(branch="barber")
        )
        assert resp.status_code == 422

    def test_quantity_over_limit_returns_422(self, front_desk_client):
        resp = front_desk_client.post(
            "/bookings/",
            json=booking_create_payload(
                services=[{"service_id": str(SERVICE_ID), "quantity": 11}]
            ),
        )
        assert resp.status_code == 422

    def test_missing_write_scope_returns_403(self, anon_app):
        async def _read_only():
            return make_stylist(scopes=[BookingScope.READ])

        anon_app.dependency_overrides[get_current_user] = _read_only
        with TestClient(anon_app) as c:
            resp = c.post("/bookings/", json=booking_create_payload())
        assert resp.status_code == 403


# ---------------------------------------------------------------------------
# POST /bookings/gift-certificates/{code}
# ---------------------------------------------------------------------------


class TestRedeemGiftCertificate:
    def _payload(self) -> dict:
        return {
            "appointment_date": DAY.isoformat(),
            "appointment_time": "14:00",
            "branch": "nails",
        }

    def test_success_returns_201_and_announces(self, front_desk_client, announce):
        with patch(CRUD_PATH) as mock_crud:
            mock_crud.redeem_gift_certificate = AsyncMock(return_value=ok(detail_model()))
            resp = front_desk_client.post(
                "/bookings/gift-certificates/GCA1B2", json=self._payload()
            )

        assert resp.status_code == 201
        code, details = mock_crud.redeem_gift_certificate.call_args.args
        assert code == "GCA1B2"
        assert details.branch == "nails"
        announce.assert_awaited_once()

    def test_expired_certificate_returns_422(self, front_desk_client, announce):
        with patch(CRUD_PATH) as mock_crud:
            mock_crud.redeem_gift_certificate = AsyncMock(
                return_value=fail(ErrorCode.EXPIRED, "This gift certificate has expired")
            )
            resp = front_desk_client.post(
                "/bookings/gift-certificates/GCA1B2", json=self._payload()
            )
        assert resp.status_code == 422
        assert resp.json()["detail"]["code"] == "EXPIRED"
        announce.assert_not_awaited()

    def test_missing_write_scope_returns_403(self, anon_app):
        async def _read_only():
            return make_stylist(scopes=[BookingScope.READ])

        anon_app.dependency_overrides[get_current_user] = _read_only
        with TestClient(anon_app) as c:
            resp = c.post("/bookings/gift-certificates/GCA1B2", json=self._payload())
        assert resp.status_code == 403


# ---------------------------------------------------------------------------
# GET /bookings/day/{day}
# ---------------------------------------------------------------------------


class TestDayView:
    def test_cache_hit_skips_database(self, stylist_client, fake_redis):
        cached = {"day": DAY.isoformat(), "bookings": [booking_detail_response()]}
        fake_redis.get = AsyncMock(return_value=json.dumps(cached))
        with patch("salon_bookings.routers.booking.build_day_view") as build:
            resp = stylist_client.get(f"/bookings/day/{DAY.isoformat()}")
        assert resp.status_code == 200
        assert resp.json()["bookings"][0]["id"] == str(BOOKING_ID)
        build.assert_not_called()

    def test_cache_miss_builds_and_stores(self, stylist_client, fake_redis):
        view = DayView(day=DAY, bookings=[detail_model()])
        with patch(
            "salon_bookings.routers.booking.build_day_view",
            AsyncMock(return_value=view),
        ):
            resp = stylist_client.get(f"/bookings/day/{DAY.isoformat()}")
        assert resp.status_code == 200
        key, ttl, raw = fake_redis.setex.await_args.args
        assert key == f"bookings:day:{DAY.isoformat()}"
        assert json.loads(raw)["bookings"][0]["id"] == str(BOOKING_ID)

    def test_redis_down_still_serves(self, stylist_client, fake_redis):
        fake_redis.get = AsyncMock(side_effect=ConnectionError("redis down"))
        fake_redis.setex = AsyncMock(side_effect=ConnectionError("redis down"))
        view = DayView(day=DAY, bookings=[])
        with patch(
            "salon_bookings.routers.booking.build_day_view",
            AsyncMock(return_value=view),
        ):
            resp = stylist_client.get(f"/bookings/day/{DAY.isoformat()}")
        assert resp.status_code == 200
        assert resp.json()["bookings"] == []


# ---------------------------------------------------------------------------
# GET /bookings/{id}
# ---------------------------------------------------------------------------


class TestGetBooking:
    def test_returns_detail(self, stylist_client):
        with patch(CRUD_PATH) as mock_crud:
            mock_crud.get_booking = AsyncMock(return_value=ok(detail_model()))
            resp = stylist_client.get(f"/bookings/{BOOKING_ID}")
        assert resp.status_code == 200
        assert len(resp.json()["instances"]) == 1

    def test_not_found_returns_404(self, stylist_client):
        with patch(CRUD_PATH) as mock_crud:
            mock_crud.get_booking = AsyncMock(return_value=fail(ErrorCode.NOT_FOUND))
            resp = stylist_client.get(f"/bookings/{BOOKING_ID}")
        assert resp.status_code == 404


# ---------------------------------------------------------------------------
# PATCH /bookings/{id}/status
# ---------------------------------------------------------------------------


class TestUpdateBookingStatus:
    def test_front_desk_confirms(self, front_desk_client, announce):
        with patch(CRUD_PATH) as mock_crud:
            mock_crud.update_booking_status = AsyncMock(
                return_value=ok(booking_model(status="confirmed"))
            )
            resp = front_desk_client.patch(
                f"/bookings/{BOOKING_ID}/status", json={"status": "confirmed"}
            )
        assert resp.status_code == 200
        assert resp.json()["status"] == "confirmed"
        args = announce.await_args.args
        assert args[:2] == ("bookings", "UPDATE")
        assert args[2]["status"] == "confirmed"

    def test_invalid_transition_returns_409(self, front_desk_client):
        with patch(CRUD_PATH) as mock_crud:
            mock_crud.update_booking_status = AsyncMock(
                return_value=fail(ErrorCode.CONFLICT, "Cannot transition")
            )
            resp = front_desk_client.patch(
                f"/bookings/{BOOKING_ID}/status", json={"status": "pending"}
            )
        assert resp.status_code == 409

    def test_unknown_status_returns_422(self, front_desk_client):
        resp = front_desk_client.patch(
            f"/bookings/{BOOKING_ID}/status", json={"status": "refunded"}
        )
        assert resp.status_code == 422

    def test_stylist_cannot_change_status_returns_403(self, anon_app):
        async def _stylist():
            return make_stylist()

        anon_app.dependency_overrides[get_current_user] = _stylist
        with TestClient(anon_app) as c:
            resp = c.patch(f"/bookings/{BOOKING_ID}/status", json={"status": "confirmed"})
        assert resp.status_code == 403


# ---------------------------------------------------------------------------
# DELETE /bookings/{id}
# ---------------------------------------------------------------------------


class TestDeleteBooking:
    def test_admin_deletes(self, admin_client, announce):
        with patch(CRUD_PATH) as mock_crud:
            mock_crud.delete_booking = AsyncMock(return_value=ok(booking_model()))
            resp = admin_client.delete(f"/bookings/{BOOKING_ID}")
        assert resp.status_code == 204
        assert announce.await_args.args[:2] == ("bookings", "DELETE")

    def test_released_commissions_return_409(self, admin_client):
        with patch(CRUD_PATH) as mock_crud:
            mock_crud.delete_booking = AsyncMock(return_value=fail(ErrorCode.CONFLICT))
            resp = admin_client.delete(f"/bookings/{BOOKING_ID}")
        assert resp.status_code == 409

    def test_front_desk_cannot_delete_returns_403(self, anon_app):
        async def _desk():
            return make_front_desk()

        anon_app.dependency_overrides[get_current_user] = _desk
        with TestClient(anon_app) as c:
            resp = c.delete(f"/bookings/{BOOKING_ID}")
        assert resp.status_code == 403
