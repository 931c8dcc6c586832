"""Tests for the dose activity summary."""

from datetime import date

import pytest

from peptrack_workers.dose_activity import (
    RECENT_DOSES_LIMIT,
    one_month_before,
    protocol_breakdown,
    recent_doses,
    summarize_activity,
)
from peptrack_workers.dose_events import DoseEvent, Protocol

TODAY = date(2026, 3, 31)

PROTOCOLS = [
    Protocol(id="bpc", name="BPC-157 healing", peptide_name="BPC-157"),
    Protocol(id="tb", name="TB-500", peptide_name="Thymosin beta-4"),
]


def _dose(event_id, logged_at, protocol_id="bpc", amount_mg=None, site=None):
    return DoseEvent(
        id=event_id, protocol_id=protocol_id, logged_at=logged_at, amount_mg=amount_mg, site=site
    )


class TestOneMonthBefore:
    @pytest.mark.parametrize("today,expected", [
        (date(2026, 3, 31), date(2026, 2, 28)),
        (date(2024, 3, 30), date(2024, 2, 29)),
        (date(2026, 1, 15), date(2025, 12, 15)),
        (date(2026, 6, 1), date(2026, 5, 1)),
    ])
    def test_clamps_to_month_end(self, today, expected):
        assert one_month_before(today) == expected


class TestRecentDoses:
    def test_newest_first_and_limited(self):
        events = [_dose(f"e{i}", f"2026-03-{i + 1:02d}T08:00:00Z") for i in range(15)]
        recent = recent_doses(events)
        assert len(recent) == RECENT_DOSES_LIMIT
        assert recent[0].id == "e14"
        assert recent[-1].id == "e5"

    def test_skips_unparsable(self):
        events = [_dose("ok", "2026-03-01T08:00:00Z"), _dose("bad", "nope")]
        assert [e.id for e in recent_doses(events)] == ["ok"]

    def test_orders_across_offsets_by_instant(self):
        events = [
            _dose("late_utc", "2026-03-01T10:00:00+00:00"),
            _dose("early_utc", "2026-03-01T11:00:00+02:00"),
        ]
        assert [e.id for e in recent_doses(events)] == ["late_utc", "early_utc"]


class TestProtocolBreakdown:
    def test_totals_and_order(self):
        events = [
            _dose("1", "2026-03-01T08:00:00Z", "tb", amount_mg=2.5),
            _dose("2", "2026-03-02T08:00:00Z", "bpc", amount_mg=0.25),
            _dose("3", "2026-03-05T08:00:00Z", "bpc", amount_mg=0.25),
            _dose("4", "2026-03-04T08:00:00Z", "bpc"),
            _dose("5", "bad", "bpc", amount_mg=10),
        ]
        rows = protocol_breakdown(events, PROTOCOLS)
        assert rows == [
            {
                "protocol_id": "bpc",
                "name": "BPC-157 healing",
                "dose_count": 3,
                "total_amount_mg": 0.5,
                "last_dose_date": "2026-03-05",
            },
            {
                "protocol_id": "tb",
                "name": "TB-500",
                "dose_count": 1,
                "total_amount_mg": 2.5,
                "last_dose_date": "2026-03-01",
            },
        ]

    def test_unknown_protocol_falls_back_to_id(self):
        rows = protocol_breakdown([_dose("1", "2026-03-01", "ghost")], PROTOCOLS)
        assert rows[0]["name"] == "ghost"

    def test_ties_break_by_protocol_id(self):
        events = [_dose("1", "2026-03-01", "tb"), _dose("2", "2026-03-01", "bpc")]
        assert [row["protocol_id"] for row in protocol_breakdown(events, PROTOCOLS)] == ["bpc", "tb"]


class TestSummarizeActivity:
    def test_week_and_month_counts(self):
        events = [
            _dose("today", "2026-03-31T08:00:00Z"),
            _dose("week_edge", "2026-03-24T08:00:00Z"),
            _dose("too_old_for_week", "2026-03-23T08:00:00Z"),
            _dose("month_edge", "2026-02-28T08:00:00Z"),
            _dose("too_old_for_month", "2026-02-27T08:00:00Z"),
            _dose("future", "2026-04-02T08:00:00Z"),
        ]
        summary = summarize_activity(events, PROTOCOLS, today=TODAY)
        assert summary["doses_this_week"] == 2
        assert summary["doses_this_month"] == 4

    def test_recent_dose_rows(self):
        events = [_dose("1", "2026-03-30T08:00:00Z", "tb", amount_mg=2.0, site="abdomen")]
        summary = summarize_activity(events, PROTOCOLS, today=TODAY)
        assert summary["recent_doses"] == [{
            "id": "1",
            "protocol_id": "tb",
            "date": "2026-03-30",
            "site": "abdomen",
            "amount_mg": 2.0,
        }]
        assert summary["by_protocol"][0]["protocol_id"] == "tb"

    def test_empty(self):
        assert summarize_activity([], PROTOCOLS, today=TODAY) == {
            "recent_doses": [],
            "doses_this_week": 0,
            "doses_this_month": 0,
            "by_protocol": [],
        }
