"""Dose events and per-day aggregation over the trailing analysis window.

A dose event's ``logged_at`` is truncated to a calendar day exactly as it is
expressed: aware datetimes keep their own offset, epoch values are read as UTC.
Projecting into the user's timezone happens before events reach this module
(see dose_log.py).
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_DAYS = 365
# Longest window whose days all fit on the 371-cell grid after rewinding
# its first day to a Sunday (up to 6 extra leading cells).
MAX_WINDOW_DAYS = 365

# Epoch values above this are milliseconds.
_EPOCH_MILLIS_THRESHOLD = 1_000_000_000_000


@dataclass(frozen=True)
class DoseEvent:
    """One logged dose. Only id, protocol_id and logged_at drive analytics."""

    id: str
    protocol_id: str
    logged_at: Any
    site: str | None = None
    amount_mg: float | None = None
    notes: str | None = None


@dataclass(frozen=True)
class Protocol:
    id: str
    name: str
    peptide_name: str | None = None


def _from_epoch(value: int | float | str) -> datetime | None:
    try:
        seconds = float(value)
        if seconds > _EPOCH_MILLIS_THRESHOLD:
            seconds /= 1000.0
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _from_ordinal_array(parts: list[Any]) -> datetime | None:
    """[year, ordinal_day, hour, minute, second, nanosecond, ...] in UTC."""
    if len(parts) < 6:
        return None
    head = parts[:6]
    if not all(isinstance(p, int) and not isinstance(p, bool) for p in head):
        return None
    year, ordinal, hour, minute, second, nanosecond = head
    try:
        base = datetime(year, 1, 1, hour, minute, second, nanosecond // 1000, tzinfo=timezone.utc)
    except ValueError:
        return None
    if not 1 <= ordinal <= 366:
        return None
    parsed = base + timedelta(days=ordinal - 1)
    if parsed.year != year:
        return None
    return parsed


def _from_iso_string(raw: str) -> datetime | date | None:
    normalized = raw.replace("Z", "+00:00")
    if len(normalized) > 10 and normalized[10] == " ":
        normalized = f"{normalized[:10]}T{normalized[11:]}"
    try:
        return datetime.fromisoformat(normalized)
    except ValueError:
        pass
    try:
        return date.fromisoformat(normalized)
    except ValueError:
        return None


def parse_logged_at(value: Any) -> datetime | date | None:
    """Parse any accepted ``logged_at`` form; None when unparsable."""
    if isinstance(value, (datetime, date)):
        return value
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return _from_epoch(value)
    if isinstance(value, Mapping):
        secs = value.get("secs_since_epoch")
        if isinstance(secs, (int, float)) and not isinstance(secs, bool):
            return _from_epoch(secs)
        return None
    if isinstance(value, (list, tuple)):
        return _from_ordinal_array(list(value))
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        if raw.replace(".", "", 1).isdigit():
            return _from_epoch(raw)
        return _from_iso_string(raw)
    return None


def truncate_to_day(value: Any) -> date | None:
    """Calendar day of a ``logged_at`` value, or None when unparsable."""
    parsed = parse_logged_at(value)
    if parsed is None:
        return None
    if isinstance(parsed, datetime):
        return parsed.date()
    return parsed


def event_day(event: DoseEvent) -> date | None:
    return truncate_to_day(event.logged_at)


def filter_by_protocol(
    events: Iterable[DoseEvent], protocol_id: str | None
) -> list[DoseEvent]:
    """Exact protocol id match; a missing or empty filter keeps everything."""
    if not protocol_id:
        return list(events)
    return [event for event in events if event.protocol_id == protocol_id]


def window_bounds(today: date, window_days: int = DEFAULT_WINDOW_DAYS) -> tuple[date, date]:
    """Return (first_day, last_day) of the trailing window ending on ``today``."""
    if not 1 <= window_days <= MAX_WINDOW_DAYS:
        raise ValueError(
            f"window_days must be between 1 and {MAX_WINDOW_DAYS}, got {window_days}"
        )
    return today - timedelta(days=window_days - 1), today


def aggregate_day_counts(
    events: Iterable[DoseEvent],
    *,
    today: date,
    window_days: int = DEFAULT_WINDOW_DAYS,
    protocol_id: str | None = None,
) -> dict[str, int]:
    """Bucket events into per-day counts over the trailing window.

    Every day of the window is present (oldest first), defaulting to 0.
    Events outside the window are ignored; unparsable timestamps are skipped.
    """
    window_start, window_end = window_bounds(today, window_days)
    counts: dict[str, int] = {
        (window_start + timedelta(days=offset)).isoformat(): 0
        for offset in range(window_days)
    }

    unparsable = 0
    for event in filter_by_protocol(events, protocol_id):
        day = event_day(event)
        if day is None:
            unparsable += 1
            continue
        if window_start <= day <= window_end:
            counts[day.isoformat()] += 1

    if unparsable:
        logger.debug("Skipped %d dose events with unparsable logged_at", unparsable)
    return counts


def count_unparsable(events: Iterable[DoseEvent]) -> int:
    return sum(1 for event in events if event_day(event) is None)
