from __future__ import annotations

from uuid import UUID

from loguru import logger
from tortoise.expressions import Q

from salon_bookings.commissions import CommissionEngine, commission_engine
from salon_bookings.errors import ConflictError, NotFoundError
from salon_bookings.models import InstanceStatus, ServiceInstance
from salon_bookings.result import service_operation
from salon_bookings.schemas import (
    CommissionOutcome,
    InstanceTransition,
    ServiceInstanceResponse,
)
from salon_bookings.timeutils import utcnow


class ServiceInstanceLifecycle:
    """
    UNCLAIMED → CLAIMED → SERVED, and back.

    Every transition is a single ``UPDATE ... WHERE status = <expected>``;
    the row is only re-read afterwards to report what happened. Two staff
    tapping the same unit at once therefore get exactly one winner.
    """

    def __init__(self, engine: CommissionEngine) -> None:
        self.engine = engine

    async def _get(self, instance_id: UUID) -> ServiceInstance:
        instance = await ServiceInstance.get_or_none(id=instance_id)
        if instance is None:
            raise NotFoundError.for_entity("Service instance", instance_id)
        return instance

    @staticmethod
    def _transition(instance: ServiceInstance) -> InstanceTransition:
        return InstanceTransition(
            instance=ServiceInstanceResponse.model_validate(instance, from_attributes=True)
        )

    async def _reevaluate(
        self, transition: InstanceTransition, booking_id: UUID, served: bool
    ) -> None:
        """Commission failures are reported on the transition, never raised."""
        try:
            result = await self.engine.check_booking(booking_id)
        except Exception:
            logger.exception("Commission evaluation crashed for booking {}", booking_id)
            transition.commission_error = "Commission evaluation failed"
            return

        if not result.is_success:
            message = result.error.message if result.error else "unknown error"
            logger.warning(
                "Commission evaluation failed for booking {}: {}", booking_id, message
            )
            transition.commission_error = message
            return

        transition.commission = result.data
        if not served:
            self.engine.cancel_scheduled(booking_id)
        elif result.data and result.data.outcome == CommissionOutcome.PENDING_DEBOUNCE:
            self.engine.schedule_evaluation(booking_id)

    # ------------------------------------------------------------------

    @service_operation("claim service")
    async def claim(self, instance_id: UUID, actor_id: UUID) -> InstanceTransition:
        updated = await ServiceInstance.filter(
            id=instance_id, status=InstanceStatus.UNCLAIMED
        ).update(status=InstanceStatus.CLAIMED, claimed_by=actor_id, claimed_at=utcnow())
        instance = await self._get(instance_id)

        if not updated:
            if instance.status == InstanceStatus.CLAIMED and instance.claimed_by == actor_id:
                return self._transition(instance)  # retried tap
            if instance.status == InstanceStatus.SERVED:
                raise ConflictError("Service has already been served")
            raise ConflictError("Service has already been claimed by another staff member")

        logger.info("Instance {} claimed by {}", instance_id, actor_id)
        return self._transition(instance)

    @service_operation("serve service")
    async def serve(
        self, instance_id: UUID, actor_id: UUID, override: bool = False
    ) -> InstanceTransition:
        qs = ServiceInstance.filter(id=instance_id, status=InstanceStatus.CLAIMED)
        if not override:
            qs = qs.filter(claimed_by=actor_id)
        updated = await qs.update(
            status=InstanceStatus.SERVED, served_at=utcnow(), served_by=actor_id
        )
        instance = await self._get(instance_id)

        if not updated:
            if instance.status == InstanceStatus.SERVED:
                raise ConflictError("Service has already been served")
            if instance.status == InstanceStatus.UNCLAIMED:
                raise ConflictError("Service must be claimed before it can be served")
            raise ConflictError("Only the staff member who claimed this service can serve it")

        logger.info("Instance {} served by {}", instance_id, actor_id)
        transition = self._transition(instance)
        await self._reevaluate(transition, instance.booking_id, served=True)
        return transition

    @service_operation("unclaim service")
    async def unclaim(
        self, instance_id: UUID, actor_id: UUID, override: bool = False
    ) -> InstanceTransition:
        qs = ServiceInstance.filter(id=instance_id, status=InstanceStatus.CLAIMED)
        if not override:
            qs = qs.filter(claimed_by=actor_id)
        updated = await qs.update(
            status=InstanceStatus.UNCLAIMED, claimed_by=None, claimed_at=None
        )
        instance = await self._get(instance_id)

        if not updated:
            if instance.status == InstanceStatus.SERVED:
                raise ConflictError("Served services must be unserved before unclaiming")
            if instance.status == InstanceStatus.UNCLAIMED:
                raise ConflictError("Service is not claimed")
            raise ConflictError("Only the staff member who claimed this service can unclaim it")

        logger.info("Instance {} unclaimed by {}", instance_id, actor_id)
        return self._transition(instance)

    @service_operation("unserve service")
    async def unserve(
        self, instance_id: UUID, actor_id: UUID, override: bool = False
    ) -> InstanceTransition:
        qs = ServiceInstance.filter(id=instance_id, status=InstanceStatus.SERVED)
        if not override:
            qs = qs.filter(Q(served_by=actor_id) | Q(claimed_by=actor_id))
        updated = await qs.update(
            status=InstanceStatus.CLAIMED, served_at=None, served_by=None
        )
        instance = await self._get(instance_id)

        if not updated:
            if instance.status != InstanceStatus.SERVED:
                raise ConflictError("Service has not been served")
            raise ConflictError("Only the staff member who served this service can unserve it")

        logger.info("Instance {} unserved by {}", instance_id, actor_id)
        transition = self._transition(instance)
        await self._reevaluate(transition, instance.booking_id, served=False)
        return transition


service_instances = ServiceInstanceLifecycle(commission_engine)
