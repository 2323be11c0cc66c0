from uuid import UUID

from fastapi import APIRouter, Depends, status

from salon_bookings.deps import can_read_sessions, can_write_sessions, unwrap
from salon_bookings.schemas import (
    AppointmentSessionResponse,
    AppointmentStepIn,
    AppointmentStepResponse,
    AttendedRequest,
    AttendedResult,
    NextRecommendation,
    SessionLinkCreate,
    SessionLinkResponse,
    SessionStart,
    UpcomingSession,
)
from salon_bookings.sessions import session_manager

router = APIRouter(prefix="/sessions", tags=["appointment sessions"])


@router.post(
    "/",
    response_model=AppointmentSessionResponse | None,
    dependencies=[Depends(can_write_sessions)],
)
async def find_or_create_session(
    payload: SessionStart,
) -> AppointmentSessionResponse | None:
    """``null`` when the service is a single visit."""
    return unwrap(
        await session_manager.find_or_create_session(
            payload.customer_id, payload.service_id
        )
    )


@router.get(
    "/customers/{customer_id}/upcoming",
    response_model=list[UpcomingSession],
    dependencies=[Depends(can_read_sessions)],
)
async def upcoming_sessions(customer_id: UUID) -> list[UpcomingSession]:
    return unwrap(await session_manager.upcoming_sessions(customer_id))


@router.get(
    "/services/{service_id}/steps",
    response_model=list[AppointmentStepResponse],
    dependencies=[Depends(can_read_sessions)],
)
async def list_steps(service_id: UUID) -> list[AppointmentStepResponse]:
    return unwrap(await session_manager.list_steps(service_id))


@router.put(
    "/services/{service_id}/steps",
    response_model=list[AppointmentStepResponse],
    dependencies=[Depends(can_write_sessions)],
)
async def set_steps(
    service_id: UUID, payload: list[AppointmentStepIn]
) -> list[AppointmentStepResponse]:
    return unwrap(await session_manager.set_steps(service_id, payload))


@router.get(
    "/{session_id}",
    response_model=AppointmentSessionResponse,
    dependencies=[Depends(can_read_sessions)],
)
async def get_session(session_id: UUID) -> AppointmentSessionResponse:
    return unwrap(await session_manager.get_session(session_id))


@router.post(
    "/{session_id}/bookings",
    response_model=SessionLinkResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(can_write_sessions)],
)
async def link_booking(session_id: UUID, payload: SessionLinkCreate) -> SessionLinkResponse:
    return unwrap(
        await session_manager.link_booking_to_session(
            session_id, payload.booking_id, payload.step_order
        )
    )


@router.post(
    "/{session_id}/attended",
    response_model=AttendedResult,
    dependencies=[Depends(can_write_sessions)],
)
async def mark_attended(session_id: UUID, payload: AttendedRequest) -> AttendedResult:
    return unwrap(await session_manager.mark_attended(session_id, payload.booking_id))


@router.get(
    "/{session_id}/next",
    response_model=NextRecommendation | None,
    dependencies=[Depends(can_read_sessions)],
)
async def next_recommended_date(session_id: UUID) -> NextRecommendation | None:
    return unwrap(await session_manager.next_recommended_date(session_id))
