"""Multi-visit appointment sessions against the in-memory database."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from uuid import uuid4

from salon_bookings.crud import booking_crud
from salon_bookings.errors import ErrorCode
from salon_bookings.models import AppointmentSession, SessionStatus
from salon_bookings.schemas import AppointmentStepIn
from salon_bookings.sessions import session_manager

from .factories import FAR_FUTURE, booking_create, create_customer, create_service


async def _treatment(total: int | None = 3):
    return await create_service(
        "Lash Lift Course",
        price="900.00",
        requires_appointments=True,
        total_appointments=total,
    )


async def _booking_for(service, customer):
    result = await booking_crud.create_booking(
        booking_create(services=[(service, 1)], customer_id=customer.id)
    )
    return result.data.id


class TestFindOrCreate:
    def test_second_call_returns_same_session(self, db):
        async def scenario():
            service = await _treatment()
            customer = await create_customer()
            first = await session_manager.find_or_create_session(customer.id, service.id)
            second = await session_manager.find_or_create_session(customer.id, service.id)
            return first, second, await AppointmentSession.all().count()

        first, second, count = db.call(scenario)

        assert first.data.id == second.data.id
        assert first.data.current_step == 1
        assert first.data.total_steps == 3
        assert count == 1

    def test_concurrent_calls_share_one_session(self, db):
        async def scenario():
            service = await _treatment()
            customer = await create_customer()
            first, second = await asyncio.gather(
                session_manager.find_or_create_session(customer.id, service.id),
                session_manager.find_or_create_session(customer.id, service.id),
            )
            return first, second, await AppointmentSession.all().count()

        first, second, count = db.call(scenario)

        assert first.is_success and second.is_success
        assert first.data.id == second.data.id
        assert count == 1

    def test_single_visit_service_has_no_session(self, db):
        async def scenario():
            service = await create_service()
            customer = await create_customer()
            return await session_manager.find_or_create_session(customer.id, service.id)

        result = db.call(scenario)
        assert result.is_success
        assert result.data is None

    def test_unknown_customer(self, db):
        async def scenario():
            service = await _treatment()
            return await session_manager.find_or_create_session(uuid4(), service.id)

        assert db.call(scenario).code == ErrorCode.NOT_FOUND


class TestLinkBooking:
    def test_relinking_same_booking_is_idempotent(self, db):
        async def scenario():
            service = await _treatment()
            customer = await create_customer()
            session = await session_manager.find_or_create_session(customer.id, service.id)
            booking_id = await _booking_for(service, customer)
            first = await session_manager.link_booking_to_session(
                session.data.id, booking_id, 1
            )
            again = await session_manager.link_booking_to_session(
                session.data.id, booking_id, 1
            )
            return first, again

        first, again = db.call(scenario)
        assert again.is_success
        assert again.data.id == first.data.id

    def test_step_taken_by_other_booking_conflicts(self, db):
        async def scenario():
            service = await _treatment()
            customer = await create_customer()
            session = await session_manager.find_or_create_session(customer.id, service.id)
            one = await _booking_for(service, customer)
            two = await _booking_for(service, customer)
            await session_manager.link_booking_to_session(session.data.id, one, 1)
            return await session_manager.link_booking_to_session(session.data.id, two, 1)

        assert db.call(scenario).code == ErrorCode.CONFLICT

    def test_step_beyond_total_is_rejected(self, db):
        async def scenario():
            service = await _treatment(total=2)
            customer = await create_customer()
            session = await session_manager.find_or_create_session(customer.id, service.id)
            booking_id = await _booking_for(service, customer)
            return await session_manager.link_booking_to_session(
                session.data.id, booking_id, 3
            )

        result = db.call(scenario)
        assert result.code == ErrorCode.VALIDATION_ERROR
        assert result.error.field == "step_order"


class TestMarkAttended:
    def test_attending_current_step_advances_once(self, db):
        async def scenario():
            service = await _treatment()
            customer = await create_customer()
            session = await session_manager.find_or_create_session(customer.id, service.id)
            booking_id = await _booking_for(service, customer)
            await session_manager.link_booking_to_session(session.data.id, booking_id, 1)
            first = await session_manager.mark_attended(session.data.id, booking_id)
            retried = await session_manager.mark_attended(session.data.id, booking_id)
            return first, retried

        first, retried = db.call(scenario)
        assert first.data.current_step == 2
        assert retried.data.current_step == 2
        assert not retried.data.completed

    def test_last_step_completes_and_frees_the_slot(self, db):
        async def scenario():
            service = await _treatment(total=1)
            customer = await create_customer()
            session = await session_manager.find_or_create_session(customer.id, service.id)
            booking_id = await _booking_for(service, customer)
            await session_manager.link_booking_to_session(session.data.id, booking_id, 1)
            attended = await session_manager.mark_attended(session.data.id, booking_id)
            stored = await AppointmentSession.get(id=session.data.id)
            fresh = await session_manager.find_or_create_session(customer.id, service.id)
            return session, attended, stored, fresh

        session, attended, stored, fresh = db.call(scenario)

        assert attended.data.completed
        assert stored.status == SessionStatus.COMPLETED
        assert stored.active_key is None
        assert stored.completed_at is not None
        assert fresh.data.id != session.data.id

    def test_out_of_order_visits_complete_the_session(self, db):
        async def scenario():
            service = await _treatment(total=2)
            customer = await create_customer()
            session = await session_manager.find_or_create_session(customer.id, service.id)
            later = await _booking_for(service, customer)
            earlier = await _booking_for(service, customer)
            await session_manager.link_booking_to_session(session.data.id, later, 2)
            await session_manager.link_booking_to_session(session.data.id, earlier, 1)
            skipped = await session_manager.mark_attended(session.data.id, later)
            caught_up = await session_manager.mark_attended(session.data.id, earlier)
            return skipped, caught_up

        skipped, caught_up = db.call(scenario)
        assert skipped.data.current_step == 1
        assert not skipped.data.completed
        assert caught_up.data.completed

    def test_unlinked_booking_is_not_found(self, db):
        async def scenario():
            service = await _treatment()
            customer = await create_customer()
            session = await session_manager.find_or_create_session(customer.id, service.id)
            booking_id = await _booking_for(service, customer)
            return await session_manager.mark_attended(session.data.id, booking_id)

        assert db.call(scenario).code == ErrorCode.NOT_FOUND


class TestRecommendations:
    def test_next_date_counts_from_last_visit(self, db):
        async def scenario():
            service = await _treatment()
            customer = await create_customer()
            await session_manager.set_steps(
                service.id,
                [
                    AppointmentStepIn(step_order=1, label="Lift"),
                    AppointmentStepIn(
                        step_order=2, recommended_after_days=14, label="Tint"
                    ),
                ],
            )
            session = await session_manager.find_or_create_session(customer.id, service.id)
            booking_id = await _booking_for(service, customer)
            await session_manager.link_booking_to_session(session.data.id, booking_id, 1)
            await session_manager.mark_attended(session.data.id, booking_id)
            return await session_manager.next_recommended_date(session.data.id)

        recommendation = db.call(scenario).data
        assert recommendation.next_step == 2
        assert recommendation.label == "Tint"
        assert recommendation.recommended_date == FAR_FUTURE + timedelta(days=14)

    def test_no_template_means_no_recommendation(self, db):
        async def scenario():
            service = await _treatment()
            customer = await create_customer()
            session = await session_manager.find_or_create_session(customer.id, service.id)
            return await session_manager.next_recommended_date(session.data.id)

        result = db.call(scenario)
        assert result.is_success
        assert result.data is None

    def test_upcoming_lists_open_sessions(self, db):
        async def scenario():
            service = await _treatment()
            customer = await create_customer()
            session = await session_manager.find_or_create_session(customer.id, service.id)
            return session, await session_manager.upcoming_sessions(customer.id)

        session, upcoming = db.call(scenario)
        (entry,) = upcoming.data
        assert entry.session.id == session.data.id
        assert entry.recommendation.recommended_date is None


class TestSteps:
    def test_set_steps_replaces_template(self, db):
        async def scenario():
            service = await _treatment()
            await session_manager.set_steps(
                service.id, [AppointmentStepIn(step_order=n) for n in (1, 2, 3)]
            )
            await session_manager.set_steps(
                service.id,
                [AppointmentStepIn(step_order=2), AppointmentStepIn(step_order=1)],
            )
            return await session_manager.list_steps(service.id)

        steps = db.call(scenario).data
        assert [s.step_order for s in steps] == [1, 2]

    def test_duplicate_step_orders_are_rejected(self, db):
        async def scenario():
            service = await _treatment()
            return await session_manager.set_steps(
                service.id,
                [AppointmentStepIn(step_order=1), AppointmentStepIn(step_order=1)],
            )

        assert db.call(scenario).code == ErrorCode.VALIDATION_ERROR
