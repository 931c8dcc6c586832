"""Process-local counters for jobs, handlers and projection writes.

Everything runs on one event loop, so plain dict updates need no lock.
"""

import time
from collections import Counter

_started = time.monotonic()

_jobs: Counter = Counter()
_handlers: dict[str, Counter] = {}
_projections: dict[str, Counter] = {}


def record_handler_invocation(handler_name: str, duration_ms: float, success: bool) -> None:
    stats = _handlers.setdefault(handler_name, Counter())
    stats["invocations"] += 1
    stats["successes" if success else "failures"] += 1
    stats["total_duration_ms"] += duration_ms


def record_projection_update(projection_type: str, rows_written: int, excluded_events: int) -> None:
    """Count projection rows written and dose events excluded as unparsable."""
    stats = _projections.setdefault(projection_type, Counter())
    stats["updates"] += 1
    stats["rows_written"] += rows_written
    stats["excluded_events"] += excluded_events


def record_job_completed() -> None:
    _jobs["processed"] += 1


def record_job_failed() -> None:
    _jobs["failed"] += 1


def record_job_dead() -> None:
    _jobs["dead"] += 1


def _snapshot(groups: dict[str, Counter], fields: tuple[str, ...]) -> dict[str, dict]:
    return {name: {field: stats[field] for field in fields} for name, stats in groups.items()}


def get_metrics() -> dict:
    return {
        "uptime_seconds": round(time.monotonic() - _started, 1),
        "jobs_processed": _jobs["processed"],
        "jobs_failed": _jobs["failed"],
        "jobs_dead": _jobs["dead"],
        "handlers": _snapshot(
            _handlers, ("invocations", "successes", "failures", "total_duration_ms")
        ),
        "projections": _snapshot(_projections, ("updates", "rows_written", "excluded_events")),
    }
