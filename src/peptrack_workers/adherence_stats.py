"""Streak and adherence-rate statistics over the trailing analysis window."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass
from datetime import date, timedelta
from typing import Any

from .dose_events import DEFAULT_WINDOW_DAYS, window_bounds


@dataclass(frozen=True)
class StreakStats:
    current: int
    longest: int


@dataclass(frozen=True)
class AdherenceStats:
    total_doses: int
    current_streak: int
    longest_streak: int
    adherence_rate_percent: int

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def dose_days(day_counts: Mapping[str, int]) -> set[date]:
    """Distinct days with at least one dose."""
    return {date.fromisoformat(day) for day, count in day_counts.items() if count > 0}


def compute_streaks(
    days_with_doses: Iterable[date],
    *,
    today: date,
    window_days: int = DEFAULT_WINDOW_DAYS,
) -> StreakStats:
    """Walk the window from today backwards.

    ``current`` is the unbroken run ending today and freezes at the first gap,
    so it is 0 whenever today has no dose. ``longest`` is the longest run
    anywhere in the window.
    """
    window_start, _ = window_bounds(today, window_days)
    dosed = {d for d in days_with_doses if window_start <= d <= today}

    current = 0
    current_open = True
    running = 0
    longest = 0
    for offset in range(window_days):
        if today - timedelta(days=offset) in dosed:
            running += 1
            if current_open:
                current += 1
        else:
            running = 0
            current_open = False
        longest = max(longest, running)

    return StreakStats(current=current, longest=longest)


def compute_adherence_rate(distinct_dose_days: int, window_days: int = DEFAULT_WINDOW_DAYS) -> int:
    """Percent of window days with a dose, rounded half up."""
    if window_days < 1:
        raise ValueError(f"window_days must be >= 1, got {window_days}")
    days = min(max(0, distinct_dose_days), window_days)
    return (200 * days + window_days) // (2 * window_days)


def compute_adherence_stats(
    day_counts: Mapping[str, int],
    *,
    today: date,
    window_days: int = DEFAULT_WINDOW_DAYS,
) -> AdherenceStats:
    days = dose_days(day_counts)
    streaks = compute_streaks(days, today=today, window_days=window_days)
    window_start, _ = window_bounds(today, window_days)
    in_window = [d for d in days if window_start <= d <= today]
    return AdherenceStats(
        total_doses=sum(
            count
            for day, count in day_counts.items()
            if count > 0 and window_start <= date.fromisoformat(day) <= today
        ),
        current_streak=streaks.current,
        longest_streak=streaks.longest,
        adherence_rate_percent=compute_adherence_rate(len(in_window), window_days),
    )
