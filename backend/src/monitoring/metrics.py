"""In-memory request and feed-refresh metrics for the /metrics endpoint."""
import time
from collections.abc import MutableMapping
from threading import Lock

_start_time = time.monotonic()
_counts: MutableMapping[str, int] = {}
_refresh: MutableMapping[str, float] = {}
_lock = Lock()


def record_request(status_code: int) -> None:
    if 200 <= status_code < 300:
        bucket = "2xx"
    elif 400 <= status_code < 500:
        bucket = "4xx"
    elif status_code >= 500:
        bucket = "5xx"
    else:
        bucket = "other"
    with _lock:
        _counts[bucket] = _counts.get(bucket, 0) + 1


def record_refresh(outcome: str, duration_ms: float | None = None) -> None:
    """outcome is one of "swapped", "failed", "skipped"."""
    with _lock:
        key = f"refresh_{outcome}"
        _refresh[key] = _refresh.get(key, 0) + 1
        if duration_ms is not None:
            _refresh["last_refresh_duration_ms"] = duration_ms


def get_metrics() -> dict:
    with _lock:
        counts = dict(_counts)
        refresh = dict(_refresh)
    uptime_seconds = time.monotonic() - _start_time
    return {
        "requests_total": sum(counts.values()),
        "requests_2xx": counts.get("2xx", 0),
        "requests_4xx": counts.get("4xx", 0),
        "requests_5xx": counts.get("5xx", 0),
        "refresh_swapped": int(refresh.get("refresh_swapped", 0)),
        "refresh_failed": int(refresh.get("refresh_failed", 0)),
        "refresh_skipped": int(refresh.get("refresh_skipped", 0)),
        "last_refresh_duration_ms": round(refresh.get("last_refresh_duration_ms", 0.0), 1),
        "uptime_seconds": round(uptime_seconds, 1),
    }
