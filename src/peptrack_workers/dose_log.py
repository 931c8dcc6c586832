"""Dose log source: read-only snapshots of dose and protocol events.

Rows come from the shared ``events`` table. Retracted events are dropped,
payloads are validated (invalid ones become anomalies), and parsable
timestamps are projected into the user's timezone so day truncation in the
engine yields local calendar days.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Protocol as TypingProtocol

import psycopg
from psycopg.rows import dict_row
from pydantic import ValidationError

from .dose_contracts import DoseLoggedData, ProtocolData, validation_anomalies
from .dose_events import DoseEvent, Protocol, parse_logged_at
from .utils import (
    get_retracted_event_ids,
    load_timezone_preference,
    resolve_timezone_context,
    to_local_datetime,
)

logger = logging.getLogger(__name__)

DOSE_EVENT_TYPES = ["dose.logged"]
PROTOCOL_EVENT_TYPES = ["protocol.created", "protocol.updated", "protocol.deleted"]


class DoseLogUnavailable(RuntimeError):
    """The dose log could not be read; no analytics are computed."""


class DoseLogSource(TypingProtocol):
    async def list_dose_events(self) -> list[DoseEvent]: ...

    async def list_protocols(self) -> list[Protocol]: ...


async def _fetch_events(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    event_types: list[str],
) -> list[dict[str, Any]]:
    try:
        async with conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                SELECT id, timestamp, event_type, data
                FROM events
                WHERE user_id = %s
                  AND event_type = ANY(%s)
                ORDER BY timestamp ASC, id ASC
                """,
                (user_id, event_types),
            )
            return await cur.fetchall()
    except psycopg.Error as exc:
        raise DoseLogUnavailable(
            f"Failed to read {', '.join(event_types)} events for user={user_id}"
        ) from exc


def _localize_logged_at(value: Any, timezone_name: str) -> Any:
    parsed = parse_logged_at(value)
    if isinstance(parsed, datetime) and parsed.tzinfo is not None:
        return to_local_datetime(parsed, timezone_name)
    # Naive wall-clock values and bare dates are already local; unparsable
    # values pass through so the engine can exclude and count them.
    return value


async def list_dose_events(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    *,
    timezone_name: str,
    retracted_ids: set[str],
) -> tuple[list[DoseEvent], list[dict[str, Any]]]:
    """Return (dose events, anomalies) for all non-retracted dose.logged events."""
    rows = await _fetch_events(conn, user_id, DOSE_EVENT_TYPES)

    events: list[DoseEvent] = []
    anomalies: list[dict[str, Any]] = []
    for row in rows:
        event_id = str(row["id"])
        if event_id in retracted_ids:
            continue
        data = row.get("data") if isinstance(row.get("data"), dict) else {}
        try:
            payload = DoseLoggedData.model_validate(data)
        except ValidationError as exc:
            anomalies.extend(validation_anomalies(event_id, data, exc))
            continue

        raw_logged_at = payload.logged_at if payload.logged_at is not None else row["timestamp"]
        events.append(
            DoseEvent(
                id=event_id,
                protocol_id=payload.protocol_id,
                logged_at=_localize_logged_at(raw_logged_at, timezone_name),
                site=payload.site,
                amount_mg=payload.amount_mg,
                notes=payload.notes,
            )
        )
    return events, anomalies


async def list_protocols(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    *,
    retracted_ids: set[str],
) -> tuple[list[Protocol], list[dict[str, Any]]]:
    """Return (protocols, anomalies); the latest created/updated event per id wins."""
    rows = await _fetch_events(conn, user_id, PROTOCOL_EVENT_TYPES)

    catalog: dict[str, Protocol] = {}
    anomalies: list[dict[str, Any]] = []
    for row in rows:
        event_id = str(row["id"])
        if event_id in retracted_ids:
            continue
        data = row.get("data") if isinstance(row.get("data"), dict) else {}

        if row["event_type"] == "protocol.deleted":
            protocol_id = str(data.get("protocol_id") or "").strip()
            if not protocol_id:
                anomalies.append({
                    "event_id": event_id,
                    "field": "protocol_id",
                    "value": data.get("protocol_id"),
                    "message": "protocol.deleted requires a non-empty protocol_id",
                })
                continue
            catalog.pop(protocol_id, None)
            continue

        try:
            payload = ProtocolData.model_validate(data)
        except ValidationError as exc:
            anomalies.extend(validation_anomalies(event_id, data, exc))
            continue
        catalog[payload.protocol_id] = Protocol(
            id=payload.protocol_id,
            name=payload.name,
            peptide_name=payload.peptide_name,
        )

    return sorted(catalog.values(), key=lambda p: (p.name.lower(), p.id)), anomalies


class PostgresDoseLogSource:
    """DoseLogSource over a fresh connection per fetch."""

    def __init__(self, database_url: str, user_id: str) -> None:
        self.database_url = database_url
        self.user_id = user_id
        self.timezone_context: dict[str, Any] = resolve_timezone_context(None)

    async def list_dose_events(self) -> list[DoseEvent]:
        try:
            async with await psycopg.AsyncConnection.connect(
                self.database_url, autocommit=True
            ) as conn:
                retracted_ids = await get_retracted_event_ids(conn, self.user_id)
                timezone_pref = await load_timezone_preference(conn, self.user_id, retracted_ids)
                self.timezone_context = resolve_timezone_context(timezone_pref)
                events, anomalies = await list_dose_events(
                    conn,
                    self.user_id,
                    timezone_name=self.timezone_context["timezone"],
                    retracted_ids=retracted_ids,
                )
        except psycopg.Error as exc:
            raise DoseLogUnavailable(f"Cannot read dose log for user={self.user_id}") from exc

        if anomalies:
            logger.warning(
                "Skipped %d invalid dose.logged payloads for user=%s",
                len(anomalies), self.user_id,
            )
        return events

    async def list_protocols(self) -> list[Protocol]:
        try:
            async with await psycopg.AsyncConnection.connect(
                self.database_url, autocommit=True
            ) as conn:
                retracted_ids = await get_retracted_event_ids(conn, self.user_id)
                protocols, _anomalies = await list_protocols(
                    conn, self.user_id, retracted_ids=retracted_ids
                )
        except psycopg.Error as exc:
            raise DoseLogUnavailable(f"Cannot read protocols for user={self.user_id}") from exc
        return protocols
