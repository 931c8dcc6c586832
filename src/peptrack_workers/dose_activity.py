"""Dose activity summary: recent doses, weekly/monthly counts, per-protocol totals."""

from __future__ import annotations

import calendar
from collections.abc import Iterable
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

from .dose_events import DoseEvent, Protocol, event_day, parse_logged_at

RECENT_DOSES_LIMIT = 10


def _sort_instant(event: DoseEvent) -> datetime:
    parsed = parse_logged_at(event.logged_at)
    if isinstance(parsed, datetime):
        if parsed.tzinfo is not None:
            return parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed
    return datetime.combine(parsed, time.min)


def recent_doses(events: Iterable[DoseEvent], limit: int = RECENT_DOSES_LIMIT) -> list[DoseEvent]:
    """Most recent parsable events, newest first."""
    parsable = [event for event in events if event_day(event) is not None]
    parsable.sort(key=lambda event: (_sort_instant(event), event.id), reverse=True)
    return parsable[:limit]


def doses_since(events: Iterable[DoseEvent], since: date, until: date) -> list[DoseEvent]:
    """Events whose day falls in [since, until]."""
    result = []
    for event in events:
        day = event_day(event)
        if day is not None and since <= day <= until:
            result.append(event)
    return result


def one_month_before(today: date) -> date:
    year, month = (today.year, today.month - 1) if today.month > 1 else (today.year - 1, 12)
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(today.day, last_day))


def protocol_breakdown(
    events: Iterable[DoseEvent], protocols: Iterable[Protocol]
) -> list[dict[str, Any]]:
    """Per-protocol dose totals, busiest protocol first."""
    names = {protocol.id: protocol.name for protocol in protocols}
    buckets: dict[str, dict[str, Any]] = {}
    for event in events:
        day = event_day(event)
        if day is None:
            continue
        bucket = buckets.setdefault(event.protocol_id, {
            "protocol_id": event.protocol_id,
            "name": names.get(event.protocol_id, event.protocol_id),
            "dose_count": 0,
            "total_amount_mg": 0.0,
            "last_dose_date": None,
        })
        bucket["dose_count"] += 1
        if event.amount_mg is not None:
            bucket["total_amount_mg"] += float(event.amount_mg)
        if bucket["last_dose_date"] is None or day.isoformat() > bucket["last_dose_date"]:
            bucket["last_dose_date"] = day.isoformat()

    rows = sorted(buckets.values(), key=lambda row: (-row["dose_count"], row["protocol_id"]))
    for row in rows:
        row["total_amount_mg"] = round(row["total_amount_mg"], 3)
    return rows


def summarize_activity(
    events: Iterable[DoseEvent],
    protocols: Iterable[Protocol],
    *,
    today: date,
) -> dict[str, Any]:
    event_list = list(events)
    return {
        "recent_doses": [
            {
                "id": event.id,
                "protocol_id": event.protocol_id,
                "date": event_day(event).isoformat(),
                "site": event.site,
                "amount_mg": event.amount_mg,
            }
            for event in recent_doses(event_list)
        ],
        "doses_this_week": len(doses_since(event_list, today - timedelta(days=7), today)),
        "doses_this_month": len(doses_since(event_list, one_month_before(today), today)),
        "by_protocol": protocol_breakdown(event_list, protocols),
    }
