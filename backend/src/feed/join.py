"""
Join the four TransLoc record sets into the served views.

Vehicles join positions to capacities best-effort: a vehicle with no capacity row
still gets a view with zero seats. Routes join arrival times to route maps and
their stops strictly: any unmatched key returns a JoinFault instead of a list.
Duplicate keys resolve to the first occurrence in feed order.
"""
import enum
import logging
from collections.abc import Callable, Hashable, Iterable
from dataclasses import dataclass
from typing import TypeVar

from src.feed.models import (
    Polygon,
    RouteView,
    ScheduleEntryView,
    Seats,
    StopSign,
    StopView,
    VehicleRef,
    VehicleView,
)
from src.transloc.client import FeedBundle
from src.transloc.models import (
    ArrivalEntry,
    ArrivalTime,
    RouteMap,
    RouteStop,
    VehicleCapacity,
    VehiclePosition,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
K = TypeVar("K", bound=Hashable)


class JoinFaultKind(str, enum.Enum):
    ROUTE_MAP_NOT_FOUND = "RouteMapNotFound"
    STOP_NOT_FOUND = "StopNotFound"


@dataclass(frozen=True)
class JoinFault:
    """Referential-integrity miss that invalidates the whole route join for a cycle."""

    kind: JoinFaultKind
    route_id: int
    stop_id: int

    def __str__(self) -> str:
        return f"{self.kind.value} route_id={self.route_id} stop_id={self.stop_id}"


def first_by_key(items: Iterable[T], key: Callable[[T], K]) -> tuple[dict[K, T], int]:
    """Index items by key keeping the first occurrence. Returns (index, duplicates_seen)."""
    index: dict[K, T] = {}
    duplicates = 0
    for item in items:
        k = key(item)
        if k in index:
            duplicates += 1
            continue
        index[k] = item
    return index, duplicates


def _seats(capacity: VehicleCapacity | None) -> Seats:
    if capacity is None:
        return Seats(available=0, occupied=0, capacity=0, percentage=0.0)
    return Seats(
        available=max(0, capacity.capacity - capacity.occupied),
        occupied=capacity.occupied,
        capacity=capacity.capacity,
        percentage=capacity.percentage,
    )


def grab_vehicles(
    positions: list[VehiclePosition],
    capacities: list[VehicleCapacity],
) -> list[VehicleView]:
    """One VehicleView per position, in feed order. Never fails."""
    by_vehicle, duplicates = first_by_key(capacities, lambda c: c.vehicle_id)
    if duplicates:
        logger.debug("telemetry join_duplicate_capacities count=%s", duplicates)
    views: list[VehicleView] = []
    missing = 0
    for point in positions:
        capacity = by_vehicle.get(point.vehicle_id)
        if capacity is None:
            missing += 1
        views.append(
            VehicleView(
                id=point.vehicle_id,
                name=point.name,
                route=point.route_id,
                position=point.position,
                speed=point.ground_speed,
                direction=point.heading,
                elapsed=point.seconds,
                delayed=point.delayed,
                on_route=point.on_route,
                timestamp=point.timestamp,
                seats=_seats(capacity),
            )
        )
    if missing:
        logger.info("telemetry join_capacity_missing count=%s", missing)
    return views


def _schedule_entry(entry: ArrivalEntry) -> ScheduleEntryView:
    return ScheduleEntryView(
        arriving=entry.is_arriving,
        arrival=entry.scheduled_arrival,
        departed=entry.is_departed,
        departure=entry.scheduled_departure,
        elapsed=entry.seconds,
        estimated=entry.estimate_time,
        scheduled=entry.scheduled_time,
        status=entry.on_time_status,
        time=entry.time,
        text=entry.text,
        vehicle=VehicleRef(id=entry.vehicle_id),
    )


def _stop_view(arrival: ArrivalTime, stop: RouteStop) -> StopView:
    return StopView(
        id=arrival.stop_id,
        description=arrival.stop_description or stop.description,
        position=stop.position,
        heading=stop.heading,
        order=stop.order,
        stalled=stop.seconds_at_stop,
        duration=stop.seconds_to_next_stop,
        sign=StopSign(
            lines=stop.sign_lines,
            verbiage=stop.sign_verbiage,
            texting_key=stop.texting_key,
        ),
    )


def _route_view(arrival: ArrivalTime, route_map: RouteMap, stop: RouteStop) -> RouteView:
    return RouteView(
        id=arrival.route_id,
        description=arrival.route_description,
        color=arrival.color,
        eta=route_map.eta_type_id,
        gtfs=route_map.gtfs_id,
        info=route_map.info_text,
        order=route_map.order,
        running=route_map.is_running,
        visible=route_map.is_visible_on_map,
        polygon=Polygon(color=route_map.color, shape=route_map.polyline),
        position=route_map.position,
        zoom=route_map.zoom,
        stop=_stop_view(arrival, stop),
        schedule=[_schedule_entry(t) for t in arrival.times],
    )


def grab_routes(
    arrivals: list[ArrivalTime],
    route_maps: list[RouteMap],
) -> list[RouteView] | JoinFault:
    """
    One RouteView per arrival-time record, in feed order.
    Returns a JoinFault on the first arrival whose route map or route stop is missing;
    no partial list is produced in that case.
    """
    maps_by_route, duplicates = first_by_key(route_maps, lambda m: m.route_id)
    if duplicates:
        logger.debug("telemetry join_duplicate_route_maps count=%s", duplicates)
    stops_by_route: dict[int, dict[int, RouteStop]] = {}

    views: list[RouteView] = []
    for arrival in arrivals:
        route_map = maps_by_route.get(arrival.route_id)
        if route_map is None:
            return JoinFault(JoinFaultKind.ROUTE_MAP_NOT_FOUND, arrival.route_id, arrival.stop_id)
        stops = stops_by_route.get(route_map.route_id)
        if stops is None:
            stops, _ = first_by_key(route_map.stops, lambda s: s.stop_id)
            stops_by_route[route_map.route_id] = stops
        stop = stops.get(arrival.stop_id)
        if stop is None:
            return JoinFault(JoinFaultKind.STOP_NOT_FOUND, arrival.route_id, arrival.stop_id)
        views.append(_route_view(arrival, route_map, stop))
    return views


def build_views(bundle: FeedBundle) -> tuple[list[VehicleView], list[RouteView]] | JoinFault:
    """Both joins over one fetched bundle. A route fault fails the pair."""
    routes = grab_routes(bundle.arrivals, bundle.route_maps)
    if isinstance(routes, JoinFault):
        return routes
    return grab_vehicles(bundle.positions, bundle.capacities), routes
