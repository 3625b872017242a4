"""Pydantic models for normalized TransLoc feed records (internal schema, not served directly)."""

from pydantic import BaseModel

# Sentinel for a timestamp or vehicle reference the feed reported as null.
NO_TIME = -1
NO_VEHICLE = -1


class VehiclePosition(BaseModel):
    vehicle_id: int
    route_id: int
    name: str
    position: tuple[float, float]
    ground_speed: float
    heading: float
    seconds: int
    on_route: bool
    delayed: bool
    timestamp: int


class VehicleCapacity(BaseModel):
    vehicle_id: int
    capacity: int
    occupied: int
    percentage: float


class ArrivalEntry(BaseModel):
    """One vehicle's predicted/scheduled visit to a route stop."""

    vehicle_id: int
    is_arriving: bool
    scheduled_arrival: int
    is_departed: bool
    scheduled_departure: int
    estimate_time: int
    scheduled_time: int
    time: int
    on_time_status: int
    seconds: int
    text: str


class ArrivalTime(BaseModel):
    """Schedule for one (route, route stop) pair. Keyed by (route_id, stop_id)."""

    route_id: int
    stop_id: int
    color: str
    route_description: str
    stop_description: str
    stop_location_id: int | None = None  # StopId, the physical stop shared across routes
    show_defaulted_on_map: bool
    show_estimates_on_map: bool
    times: list[ArrivalEntry]


class RouteStop(BaseModel):
    route_id: int
    stop_id: int  # RouteStopID, the key arrival times refer to
    address_id: int | None = None
    description: str
    route_description: str
    position: tuple[float, float]
    heading: float
    order: int
    seconds_at_stop: int
    seconds_to_next_stop: int
    sign_lines: tuple[str, str]
    sign_verbiage: str
    texting_key: str
    city: str
    state: str
    zip: str
    gtfs_id: str
    max_zoom: int
    show_defaulted_on_map: bool
    show_estimates_on_map: bool


class RouteMap(BaseModel):
    route_id: int
    description: str
    color: str
    polyline: str
    position: tuple[float, float]
    zoom: int
    order: int
    info_text: str
    eta_type_id: int
    gtfs_id: str
    vehicle_icon: str
    is_running: bool
    is_visible_on_map: bool
    is_checked_on_map: bool
    is_check_line_only_on_map: bool = False
    hide_route_line: bool
    show_polygon: bool
    show_route_arrows: bool
    stops: list[RouteStop]
