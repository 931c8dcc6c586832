"""Adherence report: one full recompute of calendar grid, month labels and stats.

Pure function of (events, protocol filter, window length, today). Callers
re-invoke it on any input change; nothing is cached here.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date
from typing import Any

from .adherence_calendar import DayCell, MonthLabel, build_calendar_grid, group_month_labels
from .adherence_stats import AdherenceStats, compute_adherence_stats
from .dose_events import (
    DEFAULT_WINDOW_DAYS,
    DoseEvent,
    aggregate_day_counts,
    count_unparsable,
    filter_by_protocol,
    window_bounds,
)


@dataclass(frozen=True)
class AdherenceReport:
    protocol_id: str | None
    window_start: date
    window_end: date
    window_days: int
    day_counts: dict[str, int]
    grid: list[DayCell]
    month_labels: list[MonthLabel]
    stats: AdherenceStats
    excluded_events: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "protocol_id": self.protocol_id,
            "window": {
                "from": self.window_start.isoformat(),
                "to": self.window_end.isoformat(),
                "days": self.window_days,
            },
            "grid": [cell.as_dict() for cell in self.grid],
            "month_labels": [label.as_dict() for label in self.month_labels],
            "stats": self.stats.as_dict(),
            "excluded_events": self.excluded_events,
        }


def build_adherence_report(
    events: Iterable[DoseEvent],
    *,
    today: date,
    protocol_id: str | None = None,
    window_days: int = DEFAULT_WINDOW_DAYS,
) -> AdherenceReport:
    window_start, window_end = window_bounds(today, window_days)
    selected = filter_by_protocol(events, protocol_id)

    day_counts = aggregate_day_counts(selected, today=today, window_days=window_days)
    grid = build_calendar_grid(day_counts, window_start)

    return AdherenceReport(
        protocol_id=protocol_id or None,
        window_start=window_start,
        window_end=window_end,
        window_days=window_days,
        day_counts=day_counts,
        grid=grid,
        month_labels=group_month_labels(grid),
        stats=compute_adherence_stats(day_counts, today=today, window_days=window_days),
        excluded_events=count_unparsable(selected),
    )
