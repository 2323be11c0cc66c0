"""
Appointment continuity sessions.

A service flagged ``requires_appointments`` is delivered over several
visits. A customer walks through it in an AppointmentSession; each visit's
booking is linked to one step, and attending the current step moves the
session forward until the last step completes it.
"""

from __future__ import annotations

from datetime import date, timedelta
from uuid import UUID

from loguru import logger
from tortoise.exceptions import IntegrityError
from tortoise.transactions import in_transaction

from salon_bookings.errors import ConflictError, NotFoundError, ValidationError
from salon_bookings.models import (
    AppointmentSession,
    AppointmentSessionBooking,
    Booking,
    Customer,
    Service,
    ServiceAppointmentStep,
    SessionStatus,
    active_session_key,
)
from salon_bookings.result import service_operation
from salon_bookings.schemas import (
    AppointmentSessionResponse,
    AppointmentStepIn,
    AppointmentStepResponse,
    AttendedResult,
    NextRecommendation,
    SessionLinkResponse,
    UpcomingSession,
)
from salon_bookings.timeutils import salon_tz, utcnow


def _session_response(session: AppointmentSession) -> AppointmentSessionResponse:
    return AppointmentSessionResponse.model_validate(session, from_attributes=True)


def _link_response(link: AppointmentSessionBooking) -> SessionLinkResponse:
    return SessionLinkResponse.model_validate(link, from_attributes=True)


class SessionManager:
    async def _get_session(self, session_id: UUID) -> AppointmentSession:
        session = await AppointmentSession.get_or_none(id=session_id)
        if session is None:
            raise NotFoundError.for_entity("Appointment session", session_id)
        return session

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @service_operation("find or create session")
    async def find_or_create_session(
        self, customer_id: UUID, service_id: UUID
    ) -> AppointmentSessionResponse | None:
        """
        The customer's IN_PROGRESS session for this service, created at step 1
        if there is none. ``None`` for single-visit services.
        """
        service = await Service.get_or_none(id=service_id)
        if service is None:
            raise NotFoundError.for_entity("Service", service_id)
        if not service.requires_appointments:
            return None
        if not await Customer.exists(id=customer_id):
            raise NotFoundError.for_entity("Customer", customer_id)

        key = active_session_key(customer_id, service_id)
        session = await AppointmentSession.get_or_none(active_key=key)
        if session is not None:
            return _session_response(session)

        try:
            session = await AppointmentSession.create(
                customer_id=customer_id,
                service_id=service_id,
                current_step=1,
                total_steps=service.total_appointments,
                active_key=key,
            )
        except IntegrityError:
            # a concurrent request created it first
            session = await AppointmentSession.get_or_none(active_key=key)
            if session is None:
                raise
            logger.debug("Reusing concurrently created session {}", session.id)
            return _session_response(session)

        logger.info(
            "Started appointment session {} for customer {} on service {}",
            session.id,
            customer_id,
            service_id,
        )
        return _session_response(session)

    @service_operation("get session")
    async def get_session(self, session_id: UUID) -> AppointmentSessionResponse:
        return _session_response(await self._get_session(session_id))

    # ------------------------------------------------------------------
    # Step links
    # ------------------------------------------------------------------

    @staticmethod
    def _same_booking_or_conflict(
        link: AppointmentSessionBooking, booking_id: UUID
    ) -> SessionLinkResponse:
        if link.booking_id != booking_id:
            raise ConflictError(
                f"Step {link.step_order} is already linked to another booking"
            )
        return _link_response(link)

    @service_operation("link booking to session")
    async def link_booking_to_session(
        self, session_id: UUID, booking_id: UUID, step_order: int
    ) -> SessionLinkResponse:
        session = await self._get_session(session_id)
        if not await Booking.exists(id=booking_id):
            raise NotFoundError.for_entity("Booking", booking_id)

        existing = await AppointmentSessionBooking.get_or_none(
            session_id=session_id, step_order=step_order
        )
        if existing is not None:
            return self._same_booking_or_conflict(existing, booking_id)

        if session.status != SessionStatus.IN_PROGRESS:
            raise ConflictError("Session is already completed")
        if session.total_steps is not None and step_order > session.total_steps:
            raise ValidationError(
                f"Step {step_order} is beyond the session's {session.total_steps} steps",
                field="step_order",
            )

        try:
            link = await AppointmentSessionBooking.create(
                session_id=session_id, booking_id=booking_id, step_order=step_order
            )
        except IntegrityError:
            existing = await AppointmentSessionBooking.get_or_none(
                session_id=session_id, step_order=step_order
            )
            if existing is None:
                raise
            return self._same_booking_or_conflict(existing, booking_id)

        logger.info(
            "Linked booking {} to step {} of session {}", booking_id, step_order, session_id
        )
        return _link_response(link)

    @service_operation("mark attended")
    async def mark_attended(self, session_id: UUID, booking_id: UUID) -> AttendedResult:
        """
        Record attendance of a linked booking. Only the link for the current
        step advances the session, so a retried call never skips a step.
        """
        now = utcnow()
        async with in_transaction():
            session = (
                await AppointmentSession.filter(id=session_id).select_for_update().first()
            )
            if session is None:
                raise NotFoundError.for_entity("Appointment session", session_id)
            if session.status != SessionStatus.IN_PROGRESS:
                raise ConflictError("Session is not in progress")

            links = await AppointmentSessionBooking.filter(
                session_id=session_id, booking_id=booking_id
            )
            if not links:
                raise NotFoundError(
                    f"Booking {booking_id} is not linked to session {session_id}"
                )
            link = next(
                (row for row in links if row.step_order == session.current_step), links[0]
            )

            if link.attended_at is None:
                link.attended_at = now
                await link.save(update_fields=["attended_at"])

            advances = link.step_order == session.current_step
            attended_steps = set(
                await AppointmentSessionBooking.filter(
                    session_id=session_id, attended_at__isnull=False
                ).values_list("step_order", flat=True)
            )
            # out-of-order visits still finish the session once every step is in
            all_attended = (
                session.total_steps is not None
                and len(attended_steps) >= session.total_steps
            )

            if advances or all_attended:
                next_step = session.current_step + 1 if advances else session.current_step
                if all_attended or (
                    session.total_steps is not None and next_step > session.total_steps
                ):
                    session.status = SessionStatus.COMPLETED
                    session.completed_at = now
                    session.active_key = None
                else:
                    session.current_step = next_step
                await session.save(
                    update_fields=[
                        "current_step",
                        "status",
                        "completed_at",
                        "active_key",
                        "updated_at",
                    ]
                )

        completed = session.status == SessionStatus.COMPLETED
        logger.info(
            "Session {} attended step {} (now step {}, completed={})",
            session_id,
            link.step_order,
            session.current_step,
            completed,
        )
        return AttendedResult(
            session_id=session_id, current_step=session.current_step, completed=completed
        )

    # ------------------------------------------------------------------
    # Recommendations
    # ------------------------------------------------------------------

    async def _recommendation(self, session: AppointmentSession) -> NextRecommendation | None:
        if session.status == SessionStatus.COMPLETED:
            return None
        if session.total_steps is not None and session.current_step > session.total_steps:
            return None

        template = await ServiceAppointmentStep.get_or_none(
            service_id=session.service_id, step_order=session.current_step
        )
        if template is None:
            return None

        attended = await AppointmentSessionBooking.filter(
            session_id=session.id, attended_at__isnull=False
        ).select_related("booking")
        if attended:
            last_visit: date = max(row.booking.appointment_date for row in attended)
        else:
            last_visit = session.started_at.astimezone(salon_tz()).date()

        return NextRecommendation(
            session_id=session.id,
            next_step=session.current_step,
            label=template.label,
            recommended_date=last_visit + timedelta(days=template.recommended_after_days),
        )

    @service_operation("next recommended date")
    async def next_recommended_date(self, session_id: UUID) -> NextRecommendation | None:
        return await self._recommendation(await self._get_session(session_id))

    @service_operation("list upcoming sessions")
    async def upcoming_sessions(self, customer_id: UUID) -> list[UpcomingSession]:
        sessions = await AppointmentSession.filter(
            customer_id=customer_id, status=SessionStatus.IN_PROGRESS
        ).order_by("started_at")
        upcoming = []
        for session in sessions:
            recommendation = await self._recommendation(session) or NextRecommendation(
                session_id=session.id,
                next_step=session.current_step,
                recommended_date=None,
            )
            upcoming.append(
                UpcomingSession(
                    session=_session_response(session), recommendation=recommendation
                )
            )
        return upcoming

    # ------------------------------------------------------------------
    # Step templates
    # ------------------------------------------------------------------

    @service_operation("set appointment steps")
    async def set_steps(
        self, service_id: UUID, steps: list[AppointmentStepIn]
    ) -> list[AppointmentStepResponse]:
        if not await Service.exists(id=service_id):
            raise NotFoundError.for_entity("Service", service_id)

        orders = [s.step_order for s in steps]
        if len(set(orders)) != len(orders):
            raise ValidationError("Step orders must be unique", field="steps")

        step_service_ids = {s.step_service_id for s in steps if s.step_service_id}
        if step_service_ids:
            found = set(
                await Service.filter(id__in=list(step_service_ids)).values_list(
                    "id", flat=True
                )
            )
            missing = step_service_ids - found
            if missing:
                raise NotFoundError.for_entity("Service", sorted(map(str, missing))[0])

        async with in_transaction():
            await ServiceAppointmentStep.filter(service_id=service_id).delete()
            for step in sorted(steps, key=lambda s: s.step_order):
                await ServiceAppointmentStep.create(
                    service_id=service_id,
                    step_order=step.step_order,
                    step_service_id=step.step_service_id,
                    recommended_after_days=step.recommended_after_days,
                    label=step.label,
                )

        logger.info("Service {} now has {} appointment step(s)", service_id, len(steps))
        return await self._steps(service_id)

    async def _steps(self, service_id: UUID) -> list[AppointmentStepResponse]:
        rows = await ServiceAppointmentStep.filter(service_id=service_id).order_by(
            "step_order"
        )
        return [
            AppointmentStepResponse.model_validate(r, from_attributes=True) for r in rows
        ]

    @service_operation("list appointment steps")
    async def list_steps(self, service_id: UUID) -> list[AppointmentStepResponse]:
        if not await Service.exists(id=service_id):
            raise NotFoundError.for_entity("Service", service_id)
        return await self._steps(service_id)


session_manager = SessionManager()
