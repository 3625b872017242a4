"""
TransLoc JSONP relay client: fetches the four feeds the map needs and normalizes them
to the internal record schema in src.transloc.models.
Includes timeouts, retry with exponential backoff, and the /Date(ms)/ timestamp decoder.
"""
import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

import httpx

from src.transloc.models import (
    NO_TIME,
    NO_VEHICLE,
    ArrivalEntry,
    ArrivalTime,
    RouteMap,
    RouteStop,
    VehicleCapacity,
    VehiclePosition,
)

logger = logging.getLogger(__name__)

TRANSLOC_BASE = "https://bu.transloc.com/Services/JSONPRelay.svc"
TRANSLOC_REQUEST_TIMEOUT_SECONDS = 10.0
TRANSLOC_RETRY_ATTEMPTS = 2
TRANSLOC_RETRY_BASE_DELAY_SECONDS = 0.5
TRANSLOC_RETRY_MAX_DELAY_SECONDS = 4.0

# Offset suffix is informational only; the captured value is already UTC milliseconds.
TRANSLOC_DATE_PATTERN = re.compile(r"/Date\((\d+)(?:-\d+)?\)/")

T = TypeVar("T")


class TransLocError(Exception):
    """Base class for feed fetch/decoding faults."""


class UpstreamFetchFailed(TransLocError):
    """Network, HTTP status, JSON or schema failure for one feed."""

    def __init__(self, resource: str, message: str):
        super().__init__(f"{resource}: {message}")
        self.resource = resource


class BadTimestamp(TransLocError):
    """Timestamp text did not match /Date(<ms>[-offset])/."""

    def __init__(self, raw: Any):
        super().__init__(f"invalid TransLoc timestamp {raw!r}")
        self.raw = raw


def parse_transloc_time(raw: str | None) -> int:
    """
    Decode TransLoc's "/Date(1700000000000-0400)/" into epoch milliseconds.
    Null/absent maps to NO_TIME (-1); anything else that does not match raises BadTimestamp.
    """
    if raw is None:
        return NO_TIME
    if not isinstance(raw, str):
        raise BadTimestamp(raw)
    match = TRANSLOC_DATE_PATTERN.search(raw)
    if match is None:
        raise BadTimestamp(raw)
    return int(match.group(1))


def _pick(raw: dict[str, Any], *names: str) -> Any:
    """Return the first present key among upstream spellings; KeyError if none."""
    for name in names:
        if name in raw:
            return raw[name]
    raise KeyError(names[0])


def _text(raw: dict[str, Any], *names: str) -> str:
    for name in names:
        value = raw.get(name)
        if value is not None:
            return str(value)
    return ""


def _flag(raw: dict[str, Any], name: str) -> bool:
    return bool(raw.get(name) or False)


def _optional_int(value: Any) -> int | None:
    return int(value) if value is not None else None


def _nested(raw: dict[str, Any], name: str) -> list[dict[str, Any]]:
    """Nested record list (Times, Stops). Null means empty; any other non-list or non-object row is a schema fault."""
    rows = raw.get(name) or []
    if not isinstance(rows, list):
        raise TypeError(f"{name}: expected a list, got {type(rows).__name__}")
    for row in rows:
        if not isinstance(row, dict):
            raise TypeError(f"{name}: expected objects, got {type(row).__name__}")
    return rows


def _normalize_vehicle_point(raw: dict[str, Any]) -> VehiclePosition:
    return VehiclePosition(
        vehicle_id=int(_pick(raw, "VehicleID", "VehicleId")),
        route_id=int(_pick(raw, "RouteID", "RouteId")),
        name=_text(raw, "Name"),
        position=(float(raw["Latitude"]), float(raw["Longitude"])),
        ground_speed=float(raw.get("GroundSpeed") or 0),
        heading=float(raw.get("Heading") or 0),
        seconds=int(raw.get("Seconds") or 0),
        on_route=_flag(raw, "IsOnRoute"),
        delayed=_flag(raw, "IsDelayed"),
        timestamp=parse_transloc_time(raw.get("TimeStamp")),
    )


def _normalize_vehicle_capacity(raw: dict[str, Any]) -> VehicleCapacity:
    return VehicleCapacity(
        vehicle_id=int(_pick(raw, "VehicleID", "VehicleId")),
        capacity=int(raw.get("Capacity") or 0),
        occupied=int(raw.get("CurrentOccupation") or 0),
        percentage=float(raw.get("Percentage") or 0),
    )


def _normalize_arrival_entry(raw: dict[str, Any]) -> ArrivalEntry:
    vehicle_id = raw.get("VehicleID", raw.get("VehicleId"))
    return ArrivalEntry(
        vehicle_id=int(vehicle_id) if vehicle_id is not None else NO_VEHICLE,
        is_arriving=_flag(raw, "IsArriving"),
        scheduled_arrival=parse_transloc_time(raw.get("ScheduledArrivalTime")),
        is_departed=_flag(raw, "IsDeparted"),
        scheduled_departure=parse_transloc_time(raw.get("ScheduledDepartureTime")),
        estimate_time=parse_transloc_time(raw.get("EstimateTime")),
        scheduled_time=parse_transloc_time(raw.get("ScheduledTime")),
        time=parse_transloc_time(raw.get("Time")),
        on_time_status=int(raw.get("OnTimeStatus") or 0),
        seconds=int(raw.get("Seconds") or 0),
        text=_text(raw, "Text"),
    )


def _normalize_arrival_time(raw: dict[str, Any]) -> ArrivalTime:
    return ArrivalTime(
        route_id=int(_pick(raw, "RouteId", "RouteID")),
        stop_id=int(_pick(raw, "RouteStopId", "RouteStopID")),
        color=_text(raw, "Color"),
        # Upstream has shipped both spellings.
        route_description=_text(raw, "RouteDescription", "RouteDescrpition"),
        stop_description=_text(raw, "StopDescription"),
        stop_location_id=_optional_int(raw.get("StopId", raw.get("StopID"))),
        show_defaulted_on_map=_flag(raw, "ShowDefaultedOnMap") or _flag(raw, "ShowDefaultedOnmap"),
        show_estimates_on_map=_flag(raw, "ShowEstimatesOnMap"),
        times=[_normalize_arrival_entry(t) for t in _nested(raw, "Times")],
    )


def _normalize_route_stop(raw: dict[str, Any]) -> RouteStop:
    return RouteStop(
        route_id=int(_pick(raw, "RouteID", "RouteId")),
        stop_id=int(_pick(raw, "RouteStopID", "RouteStopId")),
        address_id=_optional_int(raw.get("AddressID")),
        description=_text(raw, "Description"),
        route_description=_text(raw, "RouteDescription"),
        position=(float(raw["Latitude"]), float(raw["Longitude"])),
        heading=float(raw.get("Heading") or 0),
        order=int(raw.get("Order") or 0),
        seconds_at_stop=int(raw.get("SecondsAtStop") or 0),
        seconds_to_next_stop=int(raw.get("SecondsToNextStop") or 0),
        sign_lines=(_text(raw, "Line1"), _text(raw, "Line2")),
        sign_verbiage=_text(raw, "SignVerbiage"),
        texting_key=_text(raw, "TextingKey", "Textingkey"),
        city=_text(raw, "City"),
        state=_text(raw, "State"),
        zip=_text(raw, "Zip"),
        gtfs_id=_text(raw, "GtfsId"),
        max_zoom=int(raw.get("MaxZoomLevel", raw.get("MaxZoomlevel")) or 0),
        show_defaulted_on_map=_flag(raw, "ShowDefaultedOnMap"),
        show_estimates_on_map=_flag(raw, "ShowEstimatesOnMap"),
    )


def _normalize_route_map(raw: dict[str, Any]) -> RouteMap:
    return RouteMap(
        route_id=int(_pick(raw, "RouteID", "RouteId")),
        description=_text(raw, "Description"),
        color=_text(raw, "MapLineColor"),
        polyline=_text(raw, "EncodedPolyline"),
        position=(float(raw.get("MapLatitude") or 0), float(raw.get("MapLongitude") or 0)),
        zoom=int(raw.get("MapZoom") or 0),
        order=int(raw.get("Order") or 0),
        info_text=_text(raw, "InfoText"),
        eta_type_id=int(raw.get("ETATypeID") or 0),
        gtfs_id=_text(raw, "GtfsId"),
        vehicle_icon=_text(raw, "RouteVehicleIcon"),
        is_running=_flag(raw, "IsRunning"),
        is_visible_on_map=_flag(raw, "IsVisibleOnMap"),
        is_checked_on_map=_flag(raw, "IsCheckedOnMap"),
        is_check_line_only_on_map=_flag(raw, "IsCheckLineOnlyOnMap"),
        hide_route_line=_flag(raw, "HideRouteLine"),
        show_polygon=_flag(raw, "ShowPolygon"),
        show_route_arrows=_flag(raw, "ShowRouteArrows"),
        stops=[_normalize_route_stop(s) for s in _nested(raw, "Stops")],
    )


def _unwrap_rows(resource: str, data: Any) -> list[dict[str, Any]]:
    """Accept a bare JSON array or the ASP.NET {"d": [...]} wrapper."""
    if isinstance(data, dict):
        data = data.get("d")
    if not isinstance(data, list):
        raise UpstreamFetchFailed(resource, f"expected a JSON array, got {type(data).__name__}")
    for row in data:
        if not isinstance(row, dict):
            raise UpstreamFetchFailed(resource, f"expected JSON objects, got {type(row).__name__}")
    return data


@dataclass(frozen=True)
class FeedBundle:
    """The four record sets from one fetch round."""

    positions: list[VehiclePosition]
    capacities: list[VehicleCapacity]
    arrivals: list[ArrivalTime]
    route_maps: list[RouteMap]


class TransLocClient:
    """Async client for the TransLoc JSONP relay. One GET per feed, no caching (the refresher owns the cache)."""

    def __init__(
        self,
        api_key: str,
        base_url: str = TRANSLOC_BASE,
        timeout_seconds: float = TRANSLOC_REQUEST_TIMEOUT_SECONDS,
        retry_attempts: int = TRANSLOC_RETRY_ATTEMPTS,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._api_key = api_key
        self._base = base_url.rstrip("/")
        self._retry_attempts = max(1, retry_attempts)
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout_seconds)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def _get_rows(self, resource: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        url = f"{self._base}/{resource}"
        last_error: Exception | None = None
        for attempt in range(self._retry_attempts):
            try:
                resp = await self._http.get(url, params=params)
                resp.raise_for_status()
                return _unwrap_rows(resource, resp.json())
            except httpx.TimeoutException as e:
                last_error = e
                logger.warning(
                    "telemetry transloc_timeout attempt=%s resource=%s",
                    attempt + 1,
                    resource,
                    extra={"attempt": attempt + 1, "resource": resource},
                )
            except (httpx.HTTPError, ValueError) as e:
                last_error = e
                logger.warning(
                    "telemetry transloc_api_error attempt=%s resource=%s error=%s",
                    attempt + 1,
                    resource,
                    str(e),
                    extra={"attempt": attempt + 1, "resource": resource, "error": str(e)},
                )
            if attempt < self._retry_attempts - 1:
                delay = min(
                    TRANSLOC_RETRY_BASE_DELAY_SECONDS * (2**attempt),
                    TRANSLOC_RETRY_MAX_DELAY_SECONDS,
                )
                await asyncio.sleep(delay)
        raise UpstreamFetchFailed(resource, f"unavailable after {self._retry_attempts} attempt(s): {last_error}") from last_error

    async def _fetch(
        self,
        resource: str,
        params: dict[str, Any],
        normalize: Callable[[dict[str, Any]], T],
    ) -> list[T]:
        rows = await self._get_rows(resource, params)
        try:
            records = [normalize(row) for row in rows]
        except BadTimestamp as e:
            logger.warning("telemetry transloc_bad_timestamp resource=%s raw=%r", resource, e.raw)
            raise
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise UpstreamFetchFailed(resource, f"unexpected record shape: {e!r}") from e
        logger.info(
            "telemetry transloc_fetched resource=%s count=%s",
            resource,
            len(records),
            extra={"resource": resource, "count": len(records)},
        )
        return records

    async def fetch_vehicle_points(self) -> list[VehiclePosition]:
        params = {"apiKey": self._api_key, "isPublicMap": "true"}
        return await self._fetch("GetMapVehiclePoints", params, _normalize_vehicle_point)

    async def fetch_vehicle_capacities(self) -> list[VehicleCapacity]:
        # The only feed served without an API key.
        return await self._fetch("GetVehicleCapacities", {}, _normalize_vehicle_capacity)

    async def fetch_arrival_times(self) -> list[ArrivalTime]:
        params = {"apiKey": self._api_key, "version": "2"}
        return await self._fetch("GetStopArrivalTimes", params, _normalize_arrival_time)

    async def fetch_route_maps(self) -> list[RouteMap]:
        params = {"apiKey": self._api_key, "isDispatch": "false"}
        return await self._fetch("GetRoutesForMapWithScheduleWithEncodedLine", params, _normalize_route_map)

    async def fetch_all(self) -> FeedBundle:
        """
        Fetch the four feeds concurrently. Any failure fails the whole bundle and
        cancels the fetches still in flight before the error propagates.
        """
        tasks = [
            asyncio.create_task(self.fetch_vehicle_points()),
            asyncio.create_task(self.fetch_vehicle_capacities()),
            asyncio.create_task(self.fetch_arrival_times()),
            asyncio.create_task(self.fetch_route_maps()),
        ]
        try:
            positions, capacities, arrivals, route_maps = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        return FeedBundle(
            positions=positions,
            capacities=capacities,
            arrivals=arrivals,
            route_maps=route_maps,
        )
