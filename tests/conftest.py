"""
Shared pytest fixtures available to every test file automatically.
No imports needed in test files — pytest discovers this by convention.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from salon_bookings import settings
from salon_bookings.deps import (
    can_admin_delete_booking,
    can_manage_booking,
    can_manage_commissions,
    can_manage_discounts,
    can_manage_payroll,
    can_manage_vouchers,
    can_read_booking,
    can_read_commissions,
    can_read_sessions,
    can_work_services,
    can_write_booking,
    can_write_sessions,
    get_current_user,
    get_notifications_client,
)
from salon_bookings.main import create_app
from salon_bookings.routers import booking, commissions, service_instances, sessions
from salon_bookings.routers import vouchers as vouchers_router

from .factories import make_admin, make_front_desk, make_stylist

SCOPE_DEPS = (
    can_admin_delete_booking,
    can_manage_booking,
    can_manage_commissions,
    can_manage_discounts,
    can_manage_payroll,
    can_manage_vouchers,
    can_read_booking,
    can_read_commissions,
    can_read_sessions,
    can_work_services,
    can_write_booking,
    can_write_sessions,
    get_current_user,
)

ROUTERS = (
    booking.router,
    service_instances.router,
    commissions.router,
    sessions.router,
    vouchers_router.router,
)

# ---------------------------------------------------------------------------
# Redis — never talk to a real server in tests
# ---------------------------------------------------------------------------


def _fake_redis() -> MagicMock:
    mock = MagicMock()
    mock.get = AsyncMock(return_value=None)
    mock.setex = AsyncMock(return_value=True)
    mock.delete = AsyncMock(return_value=1)
    mock.publish = AsyncMock(return_value=0)
    mock.aclose = AsyncMock()
    return mock


@pytest.fixture(autouse=True)
def fake_redis():
    redis = _fake_redis()
    with patch("salon_bookings.cache.get_redis", return_value=redis):
        yield redis


def _noop_notifications_client():
    mock = MagicMock()
    mock.send_booking_confirmation = AsyncMock(return_value=True)
    return mock


# ---------------------------------------------------------------------------
# App builder — used by all router client fixtures
# ---------------------------------------------------------------------------


def build_app(current_user, notifications_client=None) -> FastAPI:
    """
    Fresh FastAPI app (no database) with auth/scope dependencies overridden
    to return `current_user` unconditionally. Core singletons are patched
    per-test with AsyncMock.
    """
    app = FastAPI()
    for router in ROUTERS:
        app.include_router(router)

    async def _user():
        return current_user

    for dep in SCOPE_DEPS:
        app.dependency_overrides[dep] = _user

    nc = (
        notifications_client
        if notifications_client is not None
        else _noop_notifications_client()
    )
    app.dependency_overrides[get_notifications_client] = lambda: nc
    return app


@pytest.fixture()
def announce():
    """Change announcements from the routers, captured instead of published."""
    mock = AsyncMock()
    with (
        patch("salon_bookings.routers.booking.announce_change", mock),
        patch("salon_bookings.routers.service_instances.announce_change", mock),
    ):
        yield mock


@pytest.fixture()
def front_desk_client(announce):
    return TestClient(build_app(make_front_desk()), raise_server_exceptions=True)


@pytest.fixture()
def stylist_client(announce):
    return TestClient(build_app(make_stylist()), raise_server_exceptions=True)


@pytest.fixture()
def admin_client(announce):
    return TestClient(build_app(make_admin()), raise_server_exceptions=True)


@pytest.fixture()
def anon_app():
    """
    Bare app with NO dependency overrides.
    Use this when you want real scope/auth deps to run so you can assert 401/403/422.
    """
    app = FastAPI()
    for router in ROUTERS:
        app.include_router(router)
    return app


@pytest.fixture()
def client_factory(announce):
    def _make(current_user, notifications_client=None) -> TestClient:
        return TestClient(
            build_app(current_user, notifications_client=notifications_client),
            raise_server_exceptions=True,
        )

    return _make


# ---------------------------------------------------------------------------
# Database — real Tortoise on in-memory SQLite through the app lifespan
# ---------------------------------------------------------------------------


@pytest.fixture()
def db(monkeypatch):
    """
    Portal into the running app's event loop with a fresh schema.

    Tests write an ``async def scenario()`` and run it with ``db.call(scenario)``.
    """
    monkeypatch.setattr(settings, "db_url", "sqlite://:memory:")
    monkeypatch.setattr(settings, "GENERATE_SCHEMAS", True)
    monkeypatch.setattr(settings, "COMMISSION_DEBOUNCE_SECONDS", 60)
    with TestClient(create_app()) as client:
        yield client.portal
