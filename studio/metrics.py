"""
Thread-safe in-memory metrics and error tracking for the API.

  - Counters: requests, credit charges/refunds, errors by kind
  - Latency: recent request durations per endpoint
  - Errors: the last MAX_ERRORS captured exceptions for root-cause analysis

All data is ephemeral (resets on restart). ``capture_exception`` is the
error-tracking side channel used by the routes and by compensating
actions; it never raises.
"""

import time
import logging
import threading
from collections import defaultdict
from typing import Dict, List

logger = logging.getLogger(__name__)

_lock = threading.Lock()

_counters: Dict[str, int] = defaultdict(int)

_latency_samples: Dict[str, List[float]] = defaultdict(list)
MAX_SAMPLES = 100

_gauges: Dict[str, float] = defaultdict(float)

_recent_errors: List[dict] = []
MAX_ERRORS = 50


def inc_counter(name: str, amount: int = 1):
    """Increment a counter (e.g. 'requests.create', 'errors.timed_out')."""
    with _lock:
        _counters[name] += amount


def record_latency(endpoint: str, duration_ms: float):
    with _lock:
        samples = _latency_samples[endpoint]
        samples.append(duration_ms)
        if len(samples) > MAX_SAMPLES:
            _latency_samples[endpoint] = samples[-MAX_SAMPLES:]


def set_gauge(name: str, value: float):
    with _lock:
        _gauges[name] = value


def record_error(endpoint: str, error_type: str, message: str, user_id: str = ""):
    with _lock:
        _recent_errors.append({
            "timestamp": time.time(),
            "endpoint": endpoint,
            "error_type": error_type,
            "message": message[:300],
            "user_id": user_id,
        })
        if len(_recent_errors) > MAX_ERRORS:
            _recent_errors.pop(0)


def capture_exception(exc: BaseException, endpoint: str = "", user_id: str = ""):
    """Report an exception to the error log. Fire-and-forget."""
    try:
        error_type = getattr(exc, "kind", None) or type(exc).__name__
        record_error(endpoint, error_type, str(exc), user_id or "")
        inc_counter(f"errors.{error_type}")
    except Exception as e:
        logger.error(f"capture_exception failed: {e}")


def recent_errors() -> list[dict]:
    with _lock:
        return list(_recent_errors)


def reset():
    """Clear all collected data."""
    with _lock:
        _counters.clear()
        _latency_samples.clear()
        _gauges.clear()
        _recent_errors.clear()


def get_snapshot() -> dict:
    """Complete metrics snapshot for the /metrics endpoint."""
    now = time.time()

    with _lock:
        latency_stats = {}
        for endpoint, samples in _latency_samples.items():
            if not samples:
                continue
            sorted_s = sorted(samples)
            n = len(sorted_s)
            latency_stats[endpoint] = {
                "p50": sorted_s[n // 2],
                "p95": sorted_s[int(n * 0.95)] if n >= 20 else sorted_s[-1],
                "avg": sum(sorted_s) / n,
                "count": n,
            }

        error_patterns: Dict[str, int] = defaultdict(int)
        for err in _recent_errors:
            error_patterns[f"{err['endpoint']}:{err['error_type']}"] += 1

        return {
            "timestamp": now,
            "counters": dict(_counters),
            "gauges": dict(_gauges),
            "latency": latency_stats,
            "recent_errors": list(_recent_errors[-10:]),
            "error_patterns": dict(error_patterns),
            "uptime_seconds": now - _gauges.get("start_time", now),
        }
