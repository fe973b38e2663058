"""
Thread-safe in-memory metrics for the worker.

Counters cover traffic and saga progress (callbacks.received,
saga.segments_appended, router.fallbacks, ...); the error log keeps the
last few downstream failures for root-cause analysis. Everything resets on
restart: the generation rows are the durable record.
"""

import time
import threading
from collections import defaultdict
from typing import Dict, List

_lock = threading.Lock()

_counters: Dict[str, int] = defaultdict(int)
_started_at = time.time()

# ── Error log (last 50 errors) ───────────────────────────────────────────────
_recent_errors: List[dict] = []
MAX_ERRORS = 50


def inc_counter(name: str, amount: int = 1):
    """Increment a counter (e.g. 'callbacks.received', 'errors.provider')."""
    with _lock:
        _counters[name] += amount


def record_error(component: str, error_type: str, message: str, generation_id: str = ""):
    """Record a failure for root-cause analysis."""
    with _lock:
        _counters[f"errors.{component}"] += 1
        _recent_errors.append({
            "timestamp": time.time(),
            "component": component,
            "error_type": error_type,
            "message": message[:300],
            "generation_id": generation_id,
        })
        if len(_recent_errors) > MAX_ERRORS:
            _recent_errors.pop(0)


def reset():
    global _started_at
    with _lock:
        _counters.clear()
        _recent_errors.clear()
        _started_at = time.time()


def get_snapshot() -> dict:
    """Return a metrics snapshot for the /metrics endpoint."""
    now = time.time()
    with _lock:
        patterns: Dict[str, int] = defaultdict(int)
        for err in _recent_errors:
            patterns[f"{err['component']}:{err['error_type']}"] += 1

        return {
            "timestamp": now,
            "counters": dict(_counters),
            "recent_errors": list(_recent_errors[-10:]),
            "error_patterns": dict(patterns),
            "uptime_seconds": now - _started_at,
        }
