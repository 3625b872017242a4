"""
Process-wide feed cache: fetches the four TransLoc feeds on an interval, joins them,
and publishes the result as one immutable Snapshot.

Readers take `refresher.snapshot` once per request and work from that reference; a
refresh publishes by rebinding the attribute, so a reader sees either the previous
snapshot or the new one in full. Only one refresh cycle runs at a time.
"""
import asyncio
import enum
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from src.feed.join import JoinFault, build_views
from src.feed.models import RouteView, VehicleView
from src.monitoring import record_refresh
from src.transloc.client import FeedBundle, TransLocError
from src.transloc.models import ArrivalTime, RouteMap, VehicleCapacity, VehiclePosition

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_INTERVAL_SECONDS = 10.0
DEFAULT_STALE_AFTER_SECONDS = 60.0


class RefreshState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    REFRESHING = "refreshing"
    DEGRADED = "degraded"


class RefreshOutcome(str, enum.Enum):
    SWAPPED = "swapped"
    FAILED = "failed"
    SKIPPED = "skipped"


class BootstrapError(RuntimeError):
    """The first fetch-and-join failed; the service must not start with an empty cache."""


@dataclass(frozen=True)
class Snapshot:
    positions: list[VehiclePosition]
    capacities: list[VehicleCapacity]
    arrivals: list[ArrivalTime]
    route_maps: list[RouteMap]
    vehicles: list[VehicleView]
    routes: list[RouteView]
    refreshed_at_ms: int
    cycle: int

    def find_vehicle(self, vehicle_id: int) -> VehicleView | None:
        return next((v for v in self.vehicles if v.id == vehicle_id), None)

    def find_route(self, route_id: int) -> RouteView | None:
        """First route view for route_id; a route appears once per stop."""
        return next((r for r in self.routes if r.id == route_id), None)


@dataclass(frozen=True)
class RefreshFailure:
    kind: str  # UpstreamFetchFailed, BadTimestamp, RouteMapNotFound, StopNotFound, or an unexpected error class
    message: str
    at_ms: int


class FeedRefresher:
    """Owns the published Snapshot and the refresh state machine."""

    def __init__(
        self,
        fetch: Callable[[], Awaitable[FeedBundle]],
        interval_seconds: float = DEFAULT_REFRESH_INTERVAL_SECONDS,
        stale_after_seconds: float = DEFAULT_STALE_AFTER_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._fetch = fetch
        self._interval = interval_seconds
        self._stale_after = stale_after_seconds
        self._clock = clock
        self._lock = asyncio.Lock()
        self._state = RefreshState.UNINITIALIZED
        self._snapshot: Snapshot | None = None
        self._cycle = 0
        self._last_failure: RefreshFailure | None = None
        self._consecutive_failures = 0

    @property
    def state(self) -> RefreshState:
        return self._state

    @property
    def snapshot(self) -> Snapshot:
        if self._snapshot is None:
            raise RuntimeError("Feed cache read before bootstrap completed.")
        return self._snapshot

    @property
    def last_failure(self) -> RefreshFailure | None:
        return self._last_failure

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def _attempt(self, cycle: int) -> Snapshot | RefreshFailure:
        try:
            bundle = await self._fetch()
            views = build_views(bundle)
        except TransLocError as e:
            return RefreshFailure(kind=type(e).__name__, message=str(e), at_ms=self._now_ms())
        except Exception as e:
            logger.exception("telemetry feed_cycle_unexpected_error cycle=%s", cycle)
            return RefreshFailure(kind=type(e).__name__, message=str(e), at_ms=self._now_ms())
        if isinstance(views, JoinFault):
            return RefreshFailure(kind=views.kind.value, message=str(views), at_ms=self._now_ms())
        vehicles, routes = views
        return Snapshot(
            positions=bundle.positions,
            capacities=bundle.capacities,
            arrivals=bundle.arrivals,
            route_maps=bundle.route_maps,
            vehicles=vehicles,
            routes=routes,
            refreshed_at_ms=self._now_ms(),
            cycle=cycle,
        )

    async def bootstrap(self) -> Snapshot:
        """Blocking first load. Raises BootstrapError rather than leaving an empty cache."""
        async with self._lock:
            self._state = RefreshState.INITIALIZING
            start = time.perf_counter()
            try:
                result = await self._attempt(cycle=1)
            except asyncio.CancelledError:
                self._state = RefreshState.UNINITIALIZED
                raise
            duration_ms = (time.perf_counter() - start) * 1000
            if isinstance(result, RefreshFailure):
                self._state = RefreshState.UNINITIALIZED
                self._last_failure = result
                logger.error(
                    "telemetry feed_bootstrap_failed kind=%s error=%s",
                    result.kind,
                    result.message,
                    extra={"kind": result.kind, "error": result.message},
                )
                raise BootstrapError(f"{result.kind}: {result.message}")
            self._cycle = 1
            self._snapshot = result
            self._state = RefreshState.READY
            record_refresh(RefreshOutcome.SWAPPED.value, duration_ms)
            logger.info(
                "telemetry feed_bootstrapped vehicles=%s routes=%s duration_ms=%.1f",
                len(result.vehicles),
                len(result.routes),
                duration_ms,
            )
            return result

    async def refresh_once(self) -> RefreshOutcome:
        """
        One fetch-join-swap cycle. Skipped if a cycle is already running.
        On failure the previous snapshot stays published and the state is DEGRADED
        until the next successful cycle. DEGRADED is a reporting state only: the next
        tick runs exactly as it would from READY, with no backoff.
        """
        if self._snapshot is None:
            raise RuntimeError("refresh_once called before bootstrap.")
        if self._lock.locked():
            record_refresh(RefreshOutcome.SKIPPED.value)
            logger.info("telemetry feed_refresh_skipped reason=in_flight")
            return RefreshOutcome.SKIPPED

        async with self._lock:
            previous_state = self._state
            self._state = RefreshState.REFRESHING
            start = time.perf_counter()
            try:
                result = await self._attempt(cycle=self._cycle + 1)
            except asyncio.CancelledError:
                self._state = previous_state
                raise
            duration_ms = (time.perf_counter() - start) * 1000

            if isinstance(result, RefreshFailure):
                self._last_failure = result
                self._consecutive_failures += 1
                self._state = RefreshState.DEGRADED
                record_refresh(RefreshOutcome.FAILED.value, duration_ms)
                logger.warning(
                    "telemetry feed_refresh_failed kind=%s consecutive=%s error=%s",
                    result.kind,
                    self._consecutive_failures,
                    result.message,
                    extra={
                        "kind": result.kind,
                        "consecutive": self._consecutive_failures,
                        "error": result.message,
                    },
                )
                return RefreshOutcome.FAILED

            self._cycle = result.cycle
            self._snapshot = result
            self._consecutive_failures = 0
            self._state = RefreshState.READY
            record_refresh(RefreshOutcome.SWAPPED.value, duration_ms)
            logger.debug(
                "telemetry feed_refreshed cycle=%s vehicles=%s routes=%s duration_ms=%.1f",
                result.cycle,
                len(result.vehicles),
                len(result.routes),
                duration_ms,
            )
            return RefreshOutcome.SWAPPED

    async def run_forever(self) -> None:
        """Refresh every interval until cancelled. No backoff: each tick is an independent attempt."""
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.refresh_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("telemetry feed_refresh_crashed")

    def age_seconds(self, snapshot: Snapshot | None = None) -> float | None:
        """Age of `snapshot` (default: the published one). Pass the snapshot already read to avoid a second read."""
        snapshot = snapshot or self._snapshot
        if snapshot is None:
            return None
        return max(0.0, self._clock() - snapshot.refreshed_at_ms / 1000)

    def is_stale(self, snapshot: Snapshot | None = None) -> bool:
        age = self.age_seconds(snapshot)
        return age is None or age > self._stale_after

    def status(self) -> dict:
        snapshot = self._snapshot
        age = self.age_seconds(snapshot)
        failure = self._last_failure
        return {
            "state": self._state.value,
            "cycle": snapshot.cycle if snapshot else 0,
            "updated_at": snapshot.refreshed_at_ms if snapshot else None,
            "age_seconds": round(age, 1) if age is not None else None,
            "stale": age is None or age > self._stale_after,
            "consecutive_failures": self._consecutive_failures,
            "last_error": (
                {"kind": failure.kind, "message": failure.message, "at": failure.at_ms}
                if failure
                else None
            ),
        }
