"""Tests for the adherence_calendar projection handler."""

import json
from contextlib import contextmanager
from datetime import date
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from peptrack_workers.dose_events import DoseEvent, Protocol
from peptrack_workers.handlers.adherence_calendar import (
    OVERVIEW_KEY,
    PROJECTION_TYPE,
    _manifest_contribution,
    protocol_key,
    update_adherence_calendar,
)

_MODULE = "peptrack_workers.handlers.adherence_calendar"
TODAY = date(2026, 10, 19)


class _FakeCursor:
    def __init__(self):
        self.execute = AsyncMock()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False


def _make_mock_conn():
    conn = AsyncMock()
    cursor = _FakeCursor()
    conn.cursor = MagicMock(return_value=cursor)
    conn._fake_cursor = cursor
    return conn


@contextmanager
def _patched_inputs(events, protocols, *, timezone_pref=None, anomalies=None):
    with patch(f"{_MODULE}.get_retracted_event_ids", new_callable=AsyncMock, return_value=set()), \
         patch(f"{_MODULE}.load_timezone_preference", new_callable=AsyncMock, return_value=timezone_pref), \
         patch(f"{_MODULE}.list_dose_events", new_callable=AsyncMock,
               return_value=(events, anomalies or [])), \
         patch(f"{_MODULE}.list_protocols", new_callable=AsyncMock, return_value=(protocols, [])), \
         patch(f"{_MODULE}.local_today", return_value=TODAY), \
         patch(f"{_MODULE}.adherence_window_days", return_value=365):
        yield


def _upserts(conn) -> dict[str, dict]:
    """Map projection key -> written data for every upsert executed."""
    written = {}
    for call in conn._fake_cursor.execute.call_args_list:
        sql, params = call.args
        if "INSERT INTO projections" in sql:
            written[params[2]] = json.loads(params[3])
    return written


def _deletes(conn) -> list[tuple]:
    return [
        call.args[1]
        for call in conn._fake_cursor.execute.call_args_list
        if "DELETE FROM projections" in call.args[0]
    ]


EVENTS = [
    DoseEvent(id="e1", protocol_id="bpc", logged_at="2026-10-18T08:00:00+00:00", amount_mg=0.25),
    DoseEvent(id="e2", protocol_id="bpc", logged_at="2026-10-19T08:00:00+00:00", amount_mg=0.25),
    DoseEvent(id="e3", protocol_id="tb", logged_at="2026-10-19T09:00:00+00:00", amount_mg=2.0),
    DoseEvent(id="e4", protocol_id="tb", logged_at="not-a-date"),
]
PROTOCOLS = [
    Protocol(id="bpc", name="BPC-157"),
    Protocol(id="tb", name="TB-500"),
    Protocol(id="ghk", name="GHK-Cu"),
]


class TestUpdateAdherenceCalendar:
    @pytest.mark.asyncio
    async def test_writes_overview_and_per_protocol_rows(self):
        conn = _make_mock_conn()
        with _patched_inputs(EVENTS, PROTOCOLS):
            await update_adherence_calendar(conn, {"user_id": "user-1"})

        written = _upserts(conn)
        assert set(written) == {OVERVIEW_KEY, "protocol:bpc", "protocol:ghk", "protocol:tb"}

        overview = written[OVERVIEW_KEY]
        assert overview["protocol_id"] is None
        assert overview["window"] == {"from": "2025-10-20", "to": "2026-10-19", "days": 365}
        assert len(overview["grid"]) == 371
        assert overview["stats"] == {
            "total_doses": 3,
            "current_streak": 2,
            "longest_streak": 2,
            "adherence_rate_percent": 1,
        }
        assert overview["excluded_events"] == 1
        assert overview["timezone_context"]["assumed"] is True
        assert [p["id"] for p in overview["protocols"]] == ["bpc", "tb", "ghk"]

        tb = written["protocol:tb"]
        assert tb["stats"]["total_doses"] == 1
        assert tb["stats"]["current_streak"] == 1
        assert tb["excluded_events"] == 1
        assert tb["activity"]["by_protocol"][0]["total_amount_mg"] == 2.0

        ghk = written["protocol:ghk"]
        assert ghk["stats"]["total_doses"] == 0
        assert ghk["activity"]["recent_doses"] == []

    @pytest.mark.asyncio
    async def test_deletes_stale_keys(self):
        conn = _make_mock_conn()
        with _patched_inputs(EVENTS, PROTOCOLS):
            await update_adherence_calendar(conn, {"user_id": "user-1"})

        deletes = _deletes(conn)
        assert len(deletes) == 1
        user_id, projection_type, keep_keys = deletes[0]
        assert (user_id, projection_type) == ("user-1", PROJECTION_TYPE)
        assert sorted(keep_keys) == sorted(
            [OVERVIEW_KEY, "protocol:bpc", "protocol:ghk", "protocol:tb"]
        )

    @pytest.mark.asyncio
    async def test_empty_log_clears_projection(self):
        conn = _make_mock_conn()
        with _patched_inputs([], []):
            await update_adherence_calendar(conn, {"user_id": "user-1"})

        assert _upserts(conn) == {}
        assert _deletes(conn) == [("user-1", PROJECTION_TYPE, [])]

    @pytest.mark.asyncio
    async def test_protocols_without_doses_still_get_rows(self):
        conn = _make_mock_conn()
        with _patched_inputs([], [Protocol(id="bpc", name="BPC-157")]):
            await update_adherence_calendar(conn, {"user_id": "user-1"})

        written = _upserts(conn)
        assert set(written) == {OVERVIEW_KEY, "protocol:bpc"}
        assert written[OVERVIEW_KEY]["stats"]["adherence_rate_percent"] == 0

    @pytest.mark.asyncio
    async def test_surfaces_anomalies_and_timezone(self):
        conn = _make_mock_conn()
        anomaly = {"event_id": "bad", "field": "protocol_id", "value": "", "message": "empty"}
        with _patched_inputs(EVENTS, PROTOCOLS, timezone_pref="Europe/Berlin", anomalies=[anomaly]):
            await update_adherence_calendar(conn, {"user_id": "user-1"})

        overview = _upserts(conn)[OVERVIEW_KEY]
        assert overview["data_quality"]["anomalies"] == [anomaly]
        assert overview["timezone_context"]["timezone"] == "Europe/Berlin"
        assert overview["timezone_context"]["source"] == "preference"


class TestHelpers:
    def test_protocol_key(self):
        assert protocol_key("bpc") == "protocol:bpc"

    def test_manifest_contribution_reads_overview(self):
        rows = [
            {"key": "protocol:bpc", "data": {"stats": {"current_streak": 9}}},
            {"key": OVERVIEW_KEY, "data": {"stats": {
                "current_streak": 2, "longest_streak": 5, "adherence_rate_percent": 40,
            }}},
        ]
        assert _manifest_contribution(rows) == {
            "current_streak": 2,
            "longest_streak": 5,
            "adherence_rate_percent": 40,
        }

    def test_manifest_contribution_empty(self):
        assert _manifest_contribution([]) == {}
