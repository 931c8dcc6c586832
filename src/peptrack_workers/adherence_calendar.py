"""Week-aligned adherence calendar grid and month labels.

The grid is always 53 weeks x 7 days, starting at the Sunday on or before the
window start and running column-major (one column per week, Sunday first).
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass
from datetime import date, timedelta
from typing import Any

GRID_WEEKS = 53
DAYS_PER_WEEK = 7
GRID_DAYS = GRID_WEEKS * DAYS_PER_WEEK
MAX_LEVEL = 4

_MONTH_NAMES = (
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
)


@dataclass(frozen=True)
class DayCell:
    date: str
    count: int
    level: int
    weekday: int

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class MonthLabel:
    label: str
    start_column: int
    span: int

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def sunday_weekday(d: date) -> int:
    """Weekday with 0 = Sunday ... 6 = Saturday."""
    return (d.weekday() + 1) % 7


def aligned_grid_start(window_start: date) -> date:
    return window_start - timedelta(days=sunday_weekday(window_start))


def intensity_level(count: int, max_count: int) -> int:
    """Quantize a day's count into 0..4 relative to the window maximum."""
    if count <= 0:
        return 0
    divisor = max(1, max_count)
    level = -(-count * MAX_LEVEL // divisor)
    return min(MAX_LEVEL, max(1, level))


def build_calendar_grid(
    day_counts: Mapping[str, int], window_start: date
) -> list[DayCell]:
    """Lay the window's day counts onto the fixed 371-cell grid.

    Padding days outside ``day_counts`` get count 0. Levels are relative to the
    maximum over the window itself, not over the padded grid.
    """
    max_count = max(day_counts.values(), default=0)
    start = aligned_grid_start(window_start)

    cells: list[DayCell] = []
    for index in range(GRID_DAYS):
        day = start + timedelta(days=index)
        count = day_counts.get(day.isoformat(), 0)
        cells.append(
            DayCell(
                date=day.isoformat(),
                count=count,
                level=intensity_level(count, max_count),
                weekday=sunday_weekday(day),
            )
        )
    return cells


def group_month_labels(grid: Sequence[DayCell]) -> list[MonthLabel]:
    """Derive chronological month spans over the grid's week columns.

    A month's label opens at the column holding its first day and runs until
    the next month opens, so spans partition all columns. Months are compared
    by name only: the same name a year apart yields a second entry. When a
    month opens in the column the open label started in (only possible in
    the first column), it takes that column over.
    """
    labels: list[MonthLabel] = []
    open_label: str | None = None
    open_start = 0
    previous_name: str | None = None

    for index, cell in enumerate(grid):
        name = _MONTH_NAMES[date.fromisoformat(cell.date).month - 1]
        if name == previous_name:
            continue
        previous_name = name
        column = index // DAYS_PER_WEEK + 1
        if open_label is not None and column > open_start:
            labels.append(MonthLabel(open_label, open_start, column - open_start))
        open_label = name
        open_start = column

    if open_label is not None:
        total_columns = -(-len(grid) // DAYS_PER_WEEK)
        labels.append(MonthLabel(open_label, open_start, total_columns - open_start + 1))
    return labels
