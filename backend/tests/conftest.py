"""Pytest configuration and fixtures."""
import copy
import json
import sys
from pathlib import Path

import httpx
import pytest

# Ensure backend root is on path when running pytest from repo root or backend
backend = Path(__file__).resolve().parent.parent
if str(backend) not in sys.path:
    sys.path.insert(0, str(backend))

from src.transloc.models import (  # noqa: E402
    ArrivalEntry,
    ArrivalTime,
    RouteMap,
    RouteStop,
    VehicleCapacity,
    VehiclePosition,
)

# --- Raw upstream rows, shaped like the TransLoc JSONP relay ---

RAW_VEHICLE_POINT = {
    "GroundSpeed": 12.0,
    "Heading": 90,
    "IsDelayed": False,
    "IsOnRoute": True,
    "Latitude": 42.35,
    "Longitude": -71.10,
    "Name": "1201",
    "RouteID": 4,
    "Seconds": 3,
    "TimeStamp": "/Date(1700000000000-0500)/",
    "VehicleID": 7,
}

RAW_CAPACITY = {
    "Capacity": 20,
    "CurrentOccupation": 15,
    "Percentage": 75.0,
    "VehicleID": 7,
}

RAW_ARRIVAL_ENTRY = {
    "EstimateTime": "/Date(1700000060000-0500)/",
    "IsArriving": False,
    "IsDeparted": False,
    "OnTimeStatus": 0,
    "ScheduledArrivalTime": None,
    "ScheduledDepartureTime": None,
    "ScheduledTime": "/Date(1700000000000-0500)/",
    "Seconds": 60,
    "Text": None,
    "Time": "/Date(1700000060000-0500)/",
    "VehicleID": 7,
}

RAW_ARRIVAL = {
    "Color": "#CC0000",
    "RouteDescription": "Comm Ave",
    "RouteId": 4,
    "RouteStopId": 9,
    "ShowDefaultedOnMap": False,
    "ShowEstimatesOnMap": True,
    "StopDescription": "Kenmore",
    "StopId": 100,
    "Times": [RAW_ARRIVAL_ENTRY],
}

RAW_STOP = {
    "AddressID": 1,
    "City": "Boston",
    "Description": "Kenmore Sq",
    "GtfsId": "s-9",
    "Heading": 180,
    "Latitude": 42.349,
    "Longitude": -71.095,
    "Line1": "Kenmore",
    "Line2": "Outbound",
    "MapPoints": [],
    "MaxZoomLevel": 1,
    "Order": 0,
    "RouteDescription": "Comm Ave",
    "RouteID": 4,
    "RouteStopID": 9,
    "SecondsAtStop": 30,
    "SecondsToNextStop": 120,
    "ShowDefaultedOnMap": False,
    "ShowEstimatesOnMap": True,
    "SignVerbiage": "Kenmore Square",
    "State": "MA",
    "TextingKey": "KEN",
    "Zip": "02215",
}

RAW_ROUTE_MAP = {
    "Description": "Comm Ave",
    "EncodedPolyline": "_p~iF~ps|U_ulLnnqC",
    "ETATypeID": 2,
    "GtfsId": "r-4",
    "HideRouteLine": False,
    "InfoText": "Weekdays",
    "IsCheckedOnMap": True,
    "IsCheckLineOnlyOnMap": False,
    "IsRunning": True,
    "IsVisibleOnMap": True,
    "Landmarks": [],
    "MapLatitude": 42.35,
    "MapLineColor": "#CC0000",
    "MapLongitude": -71.10,
    "MapZoom": 15,
    "Order": 1,
    "RouteID": 4,
    "RouteVehicleIcon": "bus",
    "ShowPolygon": False,
    "ShowRouteArrows": True,
    "Stops": [RAW_STOP],
}


@pytest.fixture
def transloc_payloads():
    """Per-test copy of the four feeds, keyed by relay method name. Values may be a status code or raw text."""
    return {
        "GetMapVehiclePoints": [copy.deepcopy(RAW_VEHICLE_POINT)],
        "GetVehicleCapacities": [copy.deepcopy(RAW_CAPACITY)],
        "GetStopArrivalTimes": [copy.deepcopy(RAW_ARRIVAL)],
        "GetRoutesForMapWithScheduleWithEncodedLine": [copy.deepcopy(RAW_ROUTE_MAP)],
    }


def transloc_transport(payloads: dict, requests: list | None = None) -> httpx.MockTransport:
    """MockTransport serving `payloads` by the last path segment of the request URL."""

    def handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        resource = request.url.path.rsplit("/", 1)[-1]
        if resource not in payloads:
            return httpx.Response(404)
        body = payloads[resource]
        if isinstance(body, int):
            return httpx.Response(body)
        if isinstance(body, str):
            return httpx.Response(200, text=body)
        return httpx.Response(200, content=json.dumps(body), headers={"Content-Type": "application/json"})

    return httpx.MockTransport(handler)


@pytest.fixture
def make_transport():
    return transloc_transport


# --- Normalized records for join/refresher tests ---


def _vehicle_position(vehicle_id: int = 7, route_id: int = 4, **overrides) -> VehiclePosition:
    fields = dict(
        vehicle_id=vehicle_id,
        route_id=route_id,
        name=str(vehicle_id),
        position=(42.35, -71.10),
        ground_speed=12.0,
        heading=90.0,
        seconds=3,
        on_route=True,
        delayed=False,
        timestamp=1700000000000,
    )
    fields.update(overrides)
    return VehiclePosition(**fields)


def _vehicle_capacity(vehicle_id: int = 7, capacity: int = 20, occupied: int = 15) -> VehicleCapacity:
    percentage = (occupied / capacity * 100) if capacity else 0.0
    return VehicleCapacity(vehicle_id=vehicle_id, capacity=capacity, occupied=occupied, percentage=percentage)


def _arrival_entry(vehicle_id: int = 7, time_ms: int = 1700000060000, **overrides) -> ArrivalEntry:
    fields = dict(
        vehicle_id=vehicle_id,
        is_arriving=False,
        scheduled_arrival=-1,
        is_departed=False,
        scheduled_departure=-1,
        estimate_time=time_ms,
        scheduled_time=1700000000000,
        time=time_ms,
        on_time_status=0,
        seconds=60,
        text="",
    )
    fields.update(overrides)
    return ArrivalEntry(**fields)


def _arrival_time(route_id: int = 4, stop_id: int = 9, times: list[ArrivalEntry] | None = None) -> ArrivalTime:
    return ArrivalTime(
        route_id=route_id,
        stop_id=stop_id,
        color="#CC0000",
        route_description=f"Route {route_id}",
        stop_description=f"Stop {stop_id}",
        show_defaulted_on_map=False,
        show_estimates_on_map=True,
        times=times if times is not None else [_arrival_entry()],
    )


def _route_stop(route_id: int = 4, stop_id: int = 9, **overrides) -> RouteStop:
    fields = dict(
        route_id=route_id,
        stop_id=stop_id,
        address_id=None,
        description=f"Stop {stop_id}",
        route_description=f"Route {route_id}",
        position=(42.349, -71.095),
        heading=180.0,
        order=0,
        seconds_at_stop=30,
        seconds_to_next_stop=120,
        sign_lines=("", ""),
        sign_verbiage="",
        texting_key="",
        city="Boston",
        state="MA",
        zip="02215",
        gtfs_id="",
        max_zoom=1,
        show_defaulted_on_map=False,
        show_estimates_on_map=True,
    )
    fields.update(overrides)
    return RouteStop(**fields)


def _route_map(route_id: int = 4, stops: list[RouteStop] | None = None, **overrides) -> RouteMap:
    fields = dict(
        route_id=route_id,
        description=f"Route {route_id}",
        color="#CC0000",
        polyline="_p~iF~ps|U",
        position=(42.35, -71.10),
        zoom=15,
        order=1,
        info_text="",
        eta_type_id=2,
        gtfs_id=f"r-{route_id}",
        vehicle_icon="bus",
        is_running=True,
        is_visible_on_map=True,
        is_checked_on_map=True,
        hide_route_line=False,
        show_polygon=False,
        show_route_arrows=True,
        stops=stops if stops is not None else [_route_stop(route_id=route_id)],
    )
    fields.update(overrides)
    return RouteMap(**fields)


@pytest.fixture
def vehicle_position():
    return _vehicle_position


@pytest.fixture
def vehicle_capacity():
    return _vehicle_capacity


@pytest.fixture
def arrival_entry():
    return _arrival_entry


@pytest.fixture
def arrival_time():
    return _arrival_time


@pytest.fixture
def route_stop():
    return _route_stop


@pytest.fixture
def route_map():
    return _route_map
