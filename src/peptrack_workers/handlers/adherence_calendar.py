"""Adherence calendar projection handler.

Reacts to dose.logged and protocol lifecycle events and recomputes, per user:
- the 53-week dose calendar grid with intensity levels
- month labels for the grid
- current/longest daily streaks and the window adherence rate
- a dose activity summary (recent doses, weekly/monthly counts, per protocol)

One projection row for all protocols (key "overview") plus one per protocol
(key "protocol:<id>"). Full recompute on every event.
"""

import json
import logging
from typing import Any

import psycopg

from ..adherence_report import build_adherence_report
from ..config import adherence_window_days
from ..dose_activity import summarize_activity
from ..dose_events import filter_by_protocol
from ..dose_log import list_dose_events, list_protocols
from ..metrics import record_projection_update
from ..registry import projection_handler
from ..utils import (
    get_retracted_event_ids,
    load_timezone_preference,
    local_today,
    resolve_timezone_context,
)

logger = logging.getLogger(__name__)

PROJECTION_TYPE = "adherence_calendar"
OVERVIEW_KEY = "overview"


def protocol_key(protocol_id: str) -> str:
    return f"protocol:{protocol_id}"


def _manifest_contribution(projection_rows: list[dict[str, Any]]) -> dict[str, Any]:
    """Summary of the overview row for profile-level listings."""
    for row in projection_rows:
        if row.get("key", OVERVIEW_KEY) != OVERVIEW_KEY:
            continue
        stats = row["data"].get("stats") or {}
        return {
            "current_streak": stats.get("current_streak"),
            "longest_streak": stats.get("longest_streak"),
            "adherence_rate_percent": stats.get("adherence_rate_percent"),
        }
    return {}


async def _delete_projections(
    conn: psycopg.AsyncConnection[Any], user_id: str, keep_keys: list[str]
) -> None:
    async with conn.cursor() as cur:
        await cur.execute(
            """
            DELETE FROM projections
            WHERE user_id = %s
              AND projection_type = %s
              AND NOT (key = ANY(%s))
            """,
            (user_id, PROJECTION_TYPE, keep_keys),
        )


async def _upsert_projection(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    key: str,
    data: dict[str, Any],
    last_event_id: str | None,
) -> None:
    async with conn.cursor() as cur:
        await cur.execute(
            """
            INSERT INTO projections (user_id, projection_type, key, data, version, last_event_id, updated_at)
            VALUES (%s, %s, %s, %s, 1, %s, NOW())
            ON CONFLICT (user_id, projection_type, key) DO UPDATE SET
                data = EXCLUDED.data,
                version = projections.version + 1,
                last_event_id = EXCLUDED.last_event_id,
                updated_at = NOW()
            """,
            (user_id, PROJECTION_TYPE, key, json.dumps(data), last_event_id),
        )


@projection_handler(
    "dose.logged",
    "protocol.created",
    "protocol.updated",
    "protocol.deleted",
    projection_meta={
        "name": PROJECTION_TYPE,
        "description": "Dose calendar heatmap, streaks and adherence rate",
        "key_structure": "overview plus one key per protocol (protocol:<id>)",
        "projection_key": OVERVIEW_KEY,
        "granularity": ["day", "week", "window"],
        "output_schema": {
            "timezone_context": {
                "timezone": "IANA timezone used for day grouping",
                "source": "preference|assumed_default",
                "assumed": "boolean",
                "assumption_disclosure": "string|null",
            },
            "protocol_id": "string|null (null for overview)",
            "window": {"from": "ISO 8601 date", "to": "ISO 8601 date", "days": "integer"},
            "grid": [{
                "date": "ISO 8601 date",
                "count": "integer >= 0",
                "level": "integer 0..4",
                "weekday": "integer 0..6 (0 = Sunday)",
            }],
            "month_labels": [{"label": "string", "start_column": "integer", "span": "integer"}],
            "stats": {
                "total_doses": "integer",
                "current_streak": "integer",
                "longest_streak": "integer",
                "adherence_rate_percent": "integer 0..100",
            },
            "excluded_events": "integer",
            "activity": {
                "recent_doses": [{
                    "id": "string",
                    "protocol_id": "string",
                    "date": "ISO 8601 date",
                    "site": "string|null",
                    "amount_mg": "number|null",
                }],
                "doses_this_week": "integer",
                "doses_this_month": "integer",
                "by_protocol": [{
                    "protocol_id": "string",
                    "name": "string",
                    "dose_count": "integer",
                    "total_amount_mg": "number",
                    "last_dose_date": "ISO 8601 date|null",
                }],
            },
            "protocols": [{"id": "string", "name": "string", "peptide_name": "string|null"}],
            "data_quality": {
                "anomalies": [{
                    "event_id": "string",
                    "field": "string",
                    "value": "any",
                    "message": "string",
                }],
            },
        },
        "manifest_contribution": _manifest_contribution,
    },
)
async def update_adherence_calendar(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
) -> None:
    user_id = payload["user_id"]
    retracted_ids = await get_retracted_event_ids(conn, user_id)
    timezone_pref = await load_timezone_preference(conn, user_id, retracted_ids)
    timezone_context = resolve_timezone_context(timezone_pref)
    timezone_name = timezone_context["timezone"]

    events, dose_anomalies = await list_dose_events(
        conn, user_id, timezone_name=timezone_name, retracted_ids=retracted_ids
    )
    protocols, protocol_anomalies = await list_protocols(
        conn, user_id, retracted_ids=retracted_ids
    )

    if not events and not protocols:
        await _delete_projections(conn, user_id, [])
        return

    today = local_today(timezone_name)
    window_days = adherence_window_days()
    protocol_ids = sorted({p.id for p in protocols} | {e.protocol_id for e in events})
    protocol_rows = [
        {"id": p.id, "name": p.name, "peptide_name": p.peptide_name} for p in protocols
    ]
    anomalies = dose_anomalies + protocol_anomalies
    last_event_id = events[-1].id if events else None

    reports = {
        protocol_id: build_adherence_report(
            events, today=today, protocol_id=protocol_id, window_days=window_days
        )
        for protocol_id in [None, *protocol_ids]
    }

    written_keys: list[str] = []
    for protocol_id, report in reports.items():
        selected = filter_by_protocol(events, protocol_id)
        projection_data = {
            "timezone_context": timezone_context,
            **report.as_dict(),
            "activity": summarize_activity(selected, protocols, today=today),
            "protocols": protocol_rows,
            "data_quality": {"anomalies": anomalies},
        }
        key = OVERVIEW_KEY if protocol_id is None else protocol_key(protocol_id)
        await _upsert_projection(conn, user_id, key, projection_data, last_event_id)
        written_keys.append(key)

    await _delete_projections(conn, user_id, written_keys)
    overview_stats = reports[None].stats
    record_projection_update(PROJECTION_TYPE, len(written_keys), reports[None].excluded_events)

    logger.info(
        "Updated adherence_calendar for user=%s (doses=%d, protocols=%d, streak=%d/%d, rate=%d%%, timezone=%s)",
        user_id,
        len(events),
        len(protocol_ids),
        overview_stats.current_streak,
        overview_stats.longest_streak,
        overview_stats.adherence_rate_percent,
        timezone_name,
        extra={"peptrack_user_id": user_id, "peptrack_projection": PROJECTION_TYPE},
    )
