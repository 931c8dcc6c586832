"""Routes projection jobs to the projection handlers registered for an event.

projection.update runs every handler for the event_type inside its own
savepoint. A handler that raises is rolled back alone and re-enqueued as a
projection.retry job naming that handler; the worker then owns backoff and
dead-lettering for it.

All projection work for one user holds pg_advisory_xact_lock on the user id
until the job's transaction ends.
"""

import logging
import time
from typing import Any

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json

from ..metrics import record_handler_invocation
from ..registry import (
    HandlerFn,
    get_projection_handler_by_name,
    get_projection_handlers,
    register,
)

logger = logging.getLogger(__name__)

RETRY_JOB_MAX_RETRIES = 3


async def _fetch_one(
    conn: psycopg.AsyncConnection[Any], sql: str, params: tuple[Any, ...]
) -> dict[str, Any] | None:
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(sql, params)
        return await cur.fetchone()


async def _resolve_retraction(
    conn: psycopg.AsyncConnection[Any], event_id: str
) -> dict[str, str] | None:
    """Map an event.retracted event to the id and type of the event it retracts.

    Deleting a dose or protocol is a retraction, and the handlers for the
    retracted type rebuild the projection without it.
    """
    row = await _fetch_one(conn, "SELECT data FROM events WHERE id = %s", (event_id,))
    data = (row or {}).get("data") or {}
    target_id = data.get("retracted_event_id")
    if not target_id:
        logger.warning("Cannot resolve retraction %s: no retracted_event_id", event_id)
        return None

    target_type = data.get("retracted_event_type")
    if not target_type:
        target = await _fetch_one(
            conn, "SELECT event_type FROM events WHERE id = %s", (target_id,)
        )
        if target is None:
            logger.warning("Retraction %s points at missing event %s", event_id, target_id)
            return None
        target_type = target["event_type"]

    return {"event_id": target_id, "event_type": target_type}


async def _acquire_user_lock(
    conn: psycopg.AsyncConnection[Any], user_id: str
) -> None:
    await conn.execute(
        "SELECT pg_advisory_xact_lock(hashtext(%s)::bigint)",
        (str(user_id),),
    )


async def _timed(
    handler: HandlerFn,
    name: str,
    conn: psycopg.AsyncConnection[Any],
    payload: dict[str, Any],
) -> None:
    started = time.monotonic()
    ok = False
    try:
        await handler(conn, payload)
        ok = True
    finally:
        record_handler_invocation(name, (time.monotonic() - started) * 1000, success=ok)


async def _enqueue_retry(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    payload: dict[str, Any],
    handler_name: str,
) -> None:
    try:
        await conn.execute(
            """
            INSERT INTO background_jobs (user_id, job_type, payload, max_retries)
            VALUES (%s, 'projection.retry', %s, %s)
            """,
            (user_id, Json({**payload, "handler_name": handler_name}), RETRY_JOB_MAX_RETRIES),
        )
    except Exception:
        logger.exception("Could not enqueue projection.retry for %s", handler_name)


@register("projection.update")
async def handle_projection_update(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
) -> None:
    event_type = payload.get("event_type", "")
    user_id = payload.get("user_id")
    if not user_id:
        raise ValueError(f"Missing user_id in projection.update payload (event_type={event_type})")

    if event_type == "event.retracted":
        target = await _resolve_retraction(conn, payload["event_id"])
        if target is None:
            return
        logger.info(
            "Retraction %s re-routed as %s for event %s",
            payload["event_id"], target["event_type"], target["event_id"],
        )
        event_type = target["event_type"]
        payload = {**payload, **target}

    handlers = get_projection_handlers(event_type)
    if not handlers:
        logger.debug("No projection handlers for %s", event_type)
        return

    await _acquire_user_lock(conn, user_id)

    for handler in handlers:
        name = handler.__name__
        try:
            async with conn.transaction():
                await _timed(handler, name, conn, payload)
        except Exception:
            logger.exception(
                "Projection handler %s failed on %s (event_id=%s); enqueueing retry",
                name, event_type, payload.get("event_id", "?"),
                extra={"peptrack_user_id": user_id, "peptrack_handler": name},
            )
            await _enqueue_retry(conn, user_id, payload, name)


@register("projection.retry")
async def handle_projection_retry(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
) -> None:
    """Re-run the one handler named in the payload; failures propagate to the worker."""
    handler_name = payload.get("handler_name", "")
    user_id = payload.get("user_id")
    if not user_id:
        raise ValueError(f"Missing user_id in projection.retry payload (handler={handler_name})")

    await _acquire_user_lock(conn, user_id)

    handler = get_projection_handler_by_name(handler_name)
    if handler is None:
        raise ValueError(f"Unknown projection handler for retry: {handler_name!r}")

    logger.info("Retrying %s for user=%s", handler_name, user_id)
    await _timed(handler, handler_name, conn, payload)
