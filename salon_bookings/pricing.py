"""
Pricing calculator.

``price_selection`` is pure arithmetic over catalogue rows that have already
been resolved; ``resolve_selection`` performs the store reads and rejects
missing or inactive entities before any booking write happens.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from uuid import UUID

from salon_bookings.errors import InactiveEntityError, NotFoundError, ValidationError
from salon_bookings.models import Service, ServiceSet, ServiceSetItem
from salon_bookings.result import service_operation
from salon_bookings.schemas import (
    PricedUnit,
    PriceQuote,
    QuoteRequest,
    ServiceLine,
    ServiceSetLine,
)

CENT = Decimal("0.01")
# precision of ServiceInstance.price_at_booking
SHARE_PRECISION = Decimal("0.000001")


@dataclass
class ResolvedSet:
    service_set: ServiceSet
    items: list[ServiceSetItem] = field(default_factory=list)


@dataclass
class Selection:
    services: dict[UUID, Service] = field(default_factory=dict)
    sets: dict[UUID, ResolvedSet] = field(default_factory=dict)


def member_prices(resolved: ResolvedSet) -> list[tuple[Service, Decimal]]:
    """
    Commission base of every member of a set, in membership order.

    An explicit adjusted price wins; otherwise the set price is split evenly
    across all members, whatever their individual list prices are.
    """
    count = len(resolved.items)
    even_share = (resolved.service_set.price / count).quantize(SHARE_PRECISION)
    prices = []
    for item in resolved.items:
        if item.adjusted_price is not None and item.adjusted_price > 0:
            prices.append((item.service, item.adjusted_price))
        else:
            prices.append((item.service, even_share))
    return prices


def price_selection(
    service_lines: list[ServiceLine],
    set_lines: list[ServiceSetLine],
    selection: Selection,
) -> PriceQuote:
    """
    Grand total, duration and the ordered per-unit expansion of a selection.

    Units come out in declaration order: individual services first, then
    sets, one unit per quantity (and per member for sets).
    """
    grand_total = Decimal("0")
    duration = 0
    units: list[PricedUnit] = []

    for line in service_lines:
        service = selection.services[line.service_id]
        grand_total += service.price * line.quantity
        duration += service.duration * line.quantity
        units.extend(
            PricedUnit(service_id=service.id, price_at_booking=service.price)
            for _ in range(line.quantity)
        )

    for set_line in set_lines:
        resolved = selection.sets[set_line.service_set_id]
        grand_total += resolved.service_set.price * set_line.quantity
        shares = member_prices(resolved)
        for _ in range(set_line.quantity):
            for service, price in shares:
                duration += service.duration
                units.append(
                    PricedUnit(
                        service_id=service.id,
                        service_set_id=resolved.service_set.id,
                        price_at_booking=price,
                    )
                )

    return PriceQuote(grand_total=grand_total.quantize(CENT), duration=duration, units=units)


async def resolve_selection(
    service_lines: list[ServiceLine],
    set_lines: list[ServiceSetLine],
) -> Selection:
    selection = Selection()

    service_ids = {line.service_id for line in service_lines}
    if service_ids:
        services = await Service.filter(id__in=list(service_ids))
        selection.services = {s.id: s for s in services}
        missing = service_ids - selection.services.keys()
        if missing:
            raise NotFoundError.for_entity("Service", sorted(map(str, missing))[0])
        for service in services:
            if not service.is_active:
                raise InactiveEntityError(f"Service '{service.name}' is not active")

    set_ids = {line.service_set_id for line in set_lines}
    if set_ids:
        sets = await ServiceSet.filter(id__in=list(set_ids))
        found = {s.id: s for s in sets}
        missing = set_ids - found.keys()
        if missing:
            raise NotFoundError.for_entity("Service set", sorted(map(str, missing))[0])

        items_by_set: dict[UUID, list[ServiceSetItem]] = defaultdict(list)
        items = (
            await ServiceSetItem.filter(service_set_id__in=list(set_ids))
            .select_related("service")
            .order_by("created_at", "id")
        )
        for item in items:
            items_by_set[item.service_set_id].append(item)

        for set_id, service_set in found.items():
            if not service_set.is_active:
                raise InactiveEntityError(
                    f"Service set '{service_set.name}' is not active"
                )
            members = items_by_set[set_id]
            if not members:
                raise ValidationError(
                    f"Service set '{service_set.name}' has no services"
                )
            for item in members:
                if not item.service.is_active:
                    raise InactiveEntityError(
                        f"Service '{item.service.name}' in set "
                        f"'{service_set.name}' is not active"
                    )
            selection.sets[set_id] = ResolvedSet(service_set=service_set, items=members)

    return selection


async def build_quote(
    service_lines: list[ServiceLine],
    set_lines: list[ServiceSetLine],
) -> PriceQuote:
    if not service_lines and not set_lines:
        raise ValidationError("At least one service or service set is required")
    selection = await resolve_selection(service_lines, set_lines)
    return price_selection(service_lines, set_lines, selection)


@service_operation("price selection")
async def quote(request: QuoteRequest) -> PriceQuote:
    return await build_quote(request.services, request.service_sets)
