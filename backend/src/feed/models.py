"""Pydantic models for the served vehicle and route views."""

from pydantic import BaseModel, ConfigDict, Field


class Seats(BaseModel):
    available: int
    occupied: int
    capacity: int
    percentage: float = 0.0


class VehicleView(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int
    name: str
    route: int
    position: tuple[float, float]
    speed: float
    direction: float
    elapsed: int
    delayed: bool
    on_route: bool = Field(alias="onRoute")
    timestamp: int  # epoch ms, -1 when the feed omitted it
    seats: Seats


class Polygon(BaseModel):
    color: str
    shape: str  # Google encoded polyline


class StopSign(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    lines: tuple[str, str]
    verbiage: str
    texting_key: str = Field(alias="textingKey")


class StopView(BaseModel):
    id: int
    description: str
    position: tuple[float, float]
    heading: float
    order: int
    stalled: int  # seconds at stop
    duration: int  # seconds to next stop
    sign: StopSign


class VehicleRef(BaseModel):
    id: int


class ScheduleEntryView(BaseModel):
    arriving: bool
    arrival: int
    departed: bool
    departure: int
    elapsed: int
    estimated: int
    scheduled: int
    status: int
    time: int
    text: str
    vehicle: VehicleRef


class RouteView(BaseModel):
    id: int
    description: str
    color: str
    eta: int
    gtfs: str
    info: str
    order: int
    running: bool
    visible: bool
    polygon: Polygon
    position: tuple[float, float]
    zoom: int
    stop: StopView
    schedule: list[ScheduleEntryView]
