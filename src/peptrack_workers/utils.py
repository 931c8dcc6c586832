"""Shared helpers: the user's timezone context and retracted event ids."""

import logging
from datetime import date, datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import psycopg
from psycopg.rows import dict_row

logger = logging.getLogger(__name__)

DEFAULT_ASSUMED_TIMEZONE = "UTC"
TIMEZONE_ASSUMPTION_DISCLOSURE = (
    "No timezone preference is set; calendar days are grouped in UTC "
    "until the user sets one."
)
TIMEZONE_PREFERENCE_KEYS = ("timezone", "time_zone")


def normalize_timezone_name(value: Any) -> str | None:
    """Return a valid IANA zone name, or None."""
    name = value.strip() if isinstance(value, str) else ""
    if not name:
        return None
    if name.upper() == "UTC":
        return "UTC"
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.debug("Ignoring unknown timezone %r", name)
        return None
    return name


def resolve_timezone_context(timezone_pref: Any) -> dict[str, Any]:
    name = normalize_timezone_name(timezone_pref)
    assumed = name is None
    return {
        "timezone": DEFAULT_ASSUMED_TIMEZONE if assumed else name,
        "source": "assumed_default" if assumed else "preference",
        "assumed": assumed,
        "assumption_disclosure": TIMEZONE_ASSUMPTION_DISCLOSURE if assumed else None,
    }


def to_local_datetime(ts: datetime, timezone_name: str) -> datetime:
    """Express an instant in the user's timezone. Naive values are taken as UTC."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(ZoneInfo(timezone_name))


def local_today(timezone_name: str, now: datetime | None = None) -> date:
    return to_local_datetime(now or datetime.now(timezone.utc), timezone_name).date()


async def load_timezone_preference(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    retracted_ids: set[str],
) -> str | None:
    """Latest valid, non-retracted timezone from preference.set events."""
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT id, data
            FROM events
            WHERE user_id = %s
              AND event_type = 'preference.set'
              AND data->>'key' = ANY(%s)
            ORDER BY timestamp DESC, id DESC
            LIMIT 64
            """,
            (user_id, list(TIMEZONE_PREFERENCE_KEYS)),
        )
        rows = await cur.fetchall()

    candidates = (
        normalize_timezone_name((row.get("data") or {}).get("value"))
        for row in rows
        if str(row["id"]) not in retracted_ids
    )
    return next((name for name in candidates if name), None)


async def get_retracted_event_ids(
    conn: psycopg.AsyncConnection[Any], user_id: str
) -> set[str]:
    """Ids named by the user's event.retracted events.

    A deleted dose is an event.retracted pointing at its dose.logged event, so
    every replay filters with this set.
    """
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT data->>'retracted_event_id' AS retracted_id
            FROM events
            WHERE user_id = %s
              AND event_type = 'event.retracted'
            """,
            (user_id,),
        )
        return {row["retracted_id"] for row in await cur.fetchall() if row["retracted_id"]}
