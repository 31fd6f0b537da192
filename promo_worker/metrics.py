"""
In-memory metrics for the worker, served at GET /metrics.

Counter names are dotted; the first segment is the family:

  requests.*   endpoint hits
  submit.*     provider submissions that were accepted
  sweep.*      reconcile outcomes (updated / failed / timed_out / stuck / errors)
  webhook.*    callbacks by outcome
  proxy.*      streamed / refreshed / expired videos
  errors.*     anything that went wrong, plus a short list of recent errors

Nothing here survives a restart; job_logs is the durable per-job history.
"""

import time
import threading
from collections import defaultdict, deque
from typing import Deque, Dict, Tuple

MAX_SAMPLES = 100
MAX_ERRORS = 50
ERROR_RATE_WINDOW = 300

_lock = threading.Lock()
_counters: Dict[str, int] = defaultdict(int)
_gauges: Dict[str, float] = {}
_latency: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=MAX_SAMPLES))
_recent_errors: Deque[dict] = deque(maxlen=MAX_ERRORS)
# (timestamp, family) for every increment, trimmed to ERROR_RATE_WINDOW
_events: Deque[Tuple[float, str]] = deque()


def _trim_events(now: float):
    cutoff = now - ERROR_RATE_WINDOW
    while _events and _events[0][0] < cutoff:
        _events.popleft()


def inc_counter(name: str, amount: int = 1):
    """Increment a counter, e.g. ``sweep.updated`` or ``errors.did_status``."""
    now = time.time()
    family = name.split(".", 1)[0]
    with _lock:
        _counters[name] += amount
        if family in ("requests", "errors"):
            _events.append((now, family))
            _trim_events(now)


def set_gauge(name: str, value: float):
    with _lock:
        _gauges[name] = value


def record_latency(name: str, duration_ms: float):
    with _lock:
        _latency[name].append(duration_ms)


def record_error(source: str, error_type: str, message: str, job_id: str = ""):
    """Keep the error for GET /metrics; the job's own history lives in job_logs."""
    with _lock:
        _recent_errors.append({
            "timestamp": time.time(),
            "source": source,
            "error_type": error_type,
            "message": message[:300],
            "job_id": job_id,
        })


def get_counter(name: str) -> int:
    with _lock:
        return _counters.get(name, 0)


def _latency_stats(samples) -> dict:
    ordered = sorted(samples)
    n = len(ordered)
    return {
        "p50": ordered[n // 2],
        "p95": ordered[min(n - 1, int(n * 0.95))],
        "max": ordered[-1],
        "avg": round(sum(ordered) / n, 2),
        "count": n,
    }


def get_snapshot() -> dict:
    now = time.time()
    with _lock:
        _trim_events(now)
        requests = sum(1 for _, family in _events if family == "requests")
        errors = sum(1 for _, family in _events if family == "errors")

        families: Dict[str, Dict[str, int]] = defaultdict(dict)
        for name, value in _counters.items():
            family, _, rest = name.partition(".")
            families[family][rest or family] = value

        patterns: Dict[str, int] = defaultdict(int)
        for err in _recent_errors:
            patterns[f"{err['source']}:{err['error_type']}"] += 1

        return {
            "timestamp": now,
            "uptime_seconds": now - _gauges.get("start_time", now),
            "counters": dict(_counters),
            "by_family": {k: dict(v) for k, v in families.items()},
            "gauges": dict(_gauges),
            "latency": {k: _latency_stats(v) for k, v in _latency.items() if v},
            "error_rate_5m": round(errors / requests * 100, 2) if requests else 0,
            "recent_errors": list(_recent_errors)[-10:],
            "error_patterns": dict(patterns),
        }


def reset():
    with _lock:
        _counters.clear()
        _gauges.clear()
        _latency.clear()
        _recent_errors.clear()
        _events.clear()
