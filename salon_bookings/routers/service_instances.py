from uuid import UUID

from fastapi import APIRouter, Depends

from salon_bookings.deps import CurrentUser, can_work_services, unwrap
from salon_bookings.instances import service_instances
from salon_bookings.projection import announce_change
from salon_bookings.schemas import InstanceTransition
from salon_bookings.scopes import BookingScope

router = APIRouter(prefix="/service-instances", tags=["service instances"])


async def _announce(transition: InstanceTransition) -> InstanceTransition:
    instance = transition.instance
    await announce_change(
        "service_instances",
        "UPDATE",
        {
            "id": str(instance.id),
            "booking_id": str(instance.booking_id),
            "status": instance.status.value,
        },
    )
    return transition


def _can_override(user: CurrentUser) -> bool:
    """Supervisors may act on units another staff member holds."""
    return user.has(BookingScope.SERVE_ANY)


@router.post("/{instance_id}/claim", response_model=InstanceTransition)
async def claim_instance(
    instance_id: UUID,
    current_user: CurrentUser = Depends(can_work_services),
) -> InstanceTransition:
    return await _announce(
        unwrap(await service_instances.claim(instance_id, current_user.id))
    )


@router.post("/{instance_id}/serve", response_model=InstanceTransition)
async def serve_instance(
    instance_id: UUID,
    current_user: CurrentUser = Depends(can_work_services),
) -> InstanceTransition:
    result = await service_instances.serve(
        instance_id, current_user.id, override=_can_override(current_user)
    )
    return await _announce(unwrap(result))


@router.post("/{instance_id}/unserve", response_model=InstanceTransition)
async def unserve_instance(
    instance_id: UUID,
    current_user: CurrentUser = Depends(can_work_services),
) -> InstanceTransition:
    result = await service_instances.unserve(
        instance_id, current_user.id, override=_can_override(current_user)
    )
    return await _announce(unwrap(result))


@router.post("/{instance_id}/unclaim", response_model=InstanceTransition)
async def unclaim_instance(
    instance_id: UUID,
    current_user: CurrentUser = Depends(can_work_services),
) -> InstanceTransition:
    result = await service_instances.unclaim(
        instance_id, current_user.id, override=_can_override(current_user)
    )
    return await _announce(unwrap(result))
