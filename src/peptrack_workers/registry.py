"""Handler registries.

Two kinds of handlers register here at import time:
- job handlers, one per background_jobs.job_type (``@register``)
- projection handlers, any number per event_type (``@projection_handler``),
  optionally describing the projection they write via ``projection_meta``
"""

import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any

import psycopg

logger = logging.getLogger(__name__)

HandlerFn = Callable[[psycopg.AsyncConnection[Any], dict[str, Any]], Awaitable[None]]

_registry: dict[str, HandlerFn] = {}
_projection_handlers: defaultdict[str, list[HandlerFn]] = defaultdict(list)
# Function name -> handler, used by projection.retry jobs
_handler_by_name: dict[str, HandlerFn] = {}
_projection_metadata: dict[str, dict[str, Any]] = {}


def register(job_type: str) -> Callable[[HandlerFn], HandlerFn]:
    def decorator(fn: HandlerFn) -> HandlerFn:
        if job_type in _registry:
            raise ValueError(f"Duplicate handler for job_type={job_type!r}")
        _registry[job_type] = fn
        logger.debug("Job handler %s registered for %s", fn.__name__, job_type)
        return fn

    return decorator


def _store_projection_meta(
    fn: HandlerFn, event_types: tuple[str, ...], projection_meta: dict[str, Any]
) -> None:
    name = projection_meta.get("name")
    if not name:
        raise ValueError(f"projection_meta must include 'name' for handler {fn.__name__}")
    if name in _projection_metadata:
        raise ValueError(f"Duplicate projection_meta name={name!r}")
    _projection_metadata[name] = {**projection_meta, "event_types": list(event_types)}


def projection_handler(
    *event_types: str,
    projection_meta: dict[str, Any] | None = None,
) -> Callable[[HandlerFn], HandlerFn]:
    """Subscribe a handler to one or more event types.

    Usage:
        @projection_handler("dose.logged", "protocol.created", projection_meta={
            "name": "adherence_calendar",
            "description": "Dose calendar grid and streaks",
        })
        async def update_adherence_calendar(conn, payload):
            ...
    """

    def decorator(fn: HandlerFn) -> HandlerFn:
        if projection_meta is not None:
            _store_projection_meta(fn, event_types, projection_meta)
        for event_type in event_types:
            _projection_handlers[event_type].append(fn)
        _handler_by_name[fn.__name__] = fn
        logger.debug("Projection handler %s subscribed to %s", fn.__name__, ", ".join(event_types))
        return fn

    return decorator


def get_handler(job_type: str) -> HandlerFn | None:
    return _registry.get(job_type)


def get_projection_handlers(event_type: str) -> list[HandlerFn]:
    return list(_projection_handlers.get(event_type, ()))


def get_projection_handler_by_name(name: str) -> HandlerFn | None:
    return _handler_by_name.get(name)


def registered_types() -> list[str]:
    return list(_registry)


def registered_event_types() -> list[str]:
    return list(_projection_handlers)


def get_projection_metadata() -> dict[str, dict[str, Any]]:
    return dict(_projection_metadata)
