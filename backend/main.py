import asyncio
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from settings import get_settings
from src.feed.models import RouteView, VehicleView
from src.feed.refresher import FeedRefresher, Snapshot
from src.middleware import RequestLoggingMiddleware
from src.monitoring import get_metrics
from src.transloc.client import TransLocClient

settings = get_settings()

# Structured logging: include module and level; handlers can add JSON later
logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])


def create_source() -> TransLocClient:
    """Upstream client for the feed cache. Tests replace this to serve canned feeds."""
    return TransLocClient(
        api_key=settings.transloc_api_key,
        base_url=settings.transloc_base_url,
        timeout_seconds=settings.transloc_timeout_seconds,
        retry_attempts=settings.transloc_retry_attempts,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    source = create_source()
    refresher = FeedRefresher(
        fetch=source.fetch_all,
        interval_seconds=settings.refresh_interval_seconds,
        stale_after_seconds=settings.stale_after_seconds,
    )
    try:
        # BootstrapError propagates: the server must not accept traffic with an empty cache.
        await refresher.bootstrap()
    except Exception:
        await source.aclose()
        raise
    app.state.refresher = refresher
    task = asyncio.create_task(refresher.run_forever())
    yield
    task.cancel()
    with suppress(asyncio.CancelledError):
        await task
    await source.aclose()
    app.state.refresher = None


app = FastAPI(title=settings.app_name, debug=settings.debug, lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(Exception)
def unhandled_exception_handler(request: Request, exc: Exception):
    """Return consistent JSON error for unhandled exceptions (500). Skip validation/HTTP errors."""
    from fastapi.exceptions import RequestValidationError
    if isinstance(exc, (HTTPException, RequestValidationError)):
        raise exc
    logger.exception("telemetry unhandled_exception path=%s", request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": "An unexpected error occurred. Please try again later."},
    )


# Order: last added = innermost. So RequestLogging runs first (outermost), then CORS.
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.cors_origins.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["GET"],
    allow_headers=["*"],
    expose_headers=["X-Feed-Updated-At", "X-Feed-Stale", "X-Feed-Cycle"],
)


def _refresher(request: Request) -> FeedRefresher:
    refresher: FeedRefresher | None = getattr(request.app.state, "refresher", None)
    if refresher is None:
        raise HTTPException(status_code=503, detail="Feed cache is not ready.")
    return refresher


def _current_snapshot(request: Request, response: Response) -> Snapshot:
    """Read the published snapshot once and stamp its freshness on the response."""
    refresher = _refresher(request)
    snapshot = refresher.snapshot
    response.headers["X-Feed-Updated-At"] = str(snapshot.refreshed_at_ms)
    response.headers["X-Feed-Stale"] = "true" if refresher.is_stale(snapshot) else "false"
    response.headers["X-Feed-Cycle"] = str(snapshot.cycle)
    return snapshot


@app.get("/favicon.ico", include_in_schema=False)
@limiter.exempt
def favicon(request: Request):
    """Return 204 so browser favicon requests don't log 404."""
    return Response(status_code=204)


@app.get("/health")
@limiter.exempt
def health(request: Request):
    """Feed cache status. Reports "degraded" after a failed cycle and "stale" once the snapshot ages out."""
    refresher = _refresher(request)
    status = refresher.status()
    if status["stale"]:
        overall = "stale"
    elif status["state"] == "degraded":
        overall = "degraded"
    else:
        overall = "ok"
    return {"status": overall, **status}


@app.get("/metrics")
@limiter.exempt
def metrics(request: Request):
    """Request counts, refresh outcomes and uptime."""
    return get_metrics()


# --- Live vehicles ---


@app.get("/vehicles", response_model=list[VehicleView])
@limiter.limit(settings.rate_limit)
def list_vehicles(request: Request, response: Response):
    """All vehicles in the current snapshot, in feed order."""
    snapshot = _current_snapshot(request, response)
    return snapshot.vehicles


@app.get("/vehicles/{vehicle_id}", response_model=VehicleView)
@limiter.limit(settings.rate_limit)
def get_vehicle(request: Request, response: Response, vehicle_id: int):
    snapshot = _current_snapshot(request, response)
    vehicle = snapshot.find_vehicle(vehicle_id)
    if vehicle is None:
        raise HTTPException(status_code=404, detail=f"Vehicle {vehicle_id} not found.")
    return vehicle


# --- Routes (one entry per route stop, with its arrival schedule) ---


@app.get("/routes", response_model=list[RouteView])
@limiter.limit(settings.rate_limit)
def list_routes(request: Request, response: Response, stop_id: int | None = None):
    """All route-stop entries in the current snapshot. Optional ?stop_id= filter."""
    snapshot = _current_snapshot(request, response)
    if stop_id is None:
        return snapshot.routes
    return [r for r in snapshot.routes if r.stop.id == stop_id]


@app.get("/routes/{route_id}", response_model=RouteView)
@limiter.limit(settings.rate_limit)
def get_route(request: Request, response: Response, route_id: int):
    """First route-stop entry for route_id."""
    snapshot = _current_snapshot(request, response)
    route = snapshot.find_route(route_id)
    if route is None:
        raise HTTPException(status_code=404, detail=f"Route {route_id} not found.")
    return route


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=settings.host, port=settings.port)
