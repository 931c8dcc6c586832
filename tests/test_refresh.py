"""Tests for the last-write-wins AdherenceView."""

import asyncio
from datetime import date

import pytest

from peptrack_workers.dose_events import DoseEvent, Protocol
from peptrack_workers.dose_log import DoseLogUnavailable
from peptrack_workers.refresh import AdherenceView

TODAY = date(2026, 10, 19)

EVENTS = [
    DoseEvent(id="e1", protocol_id="a", logged_at="2026-10-19T08:00:00Z"),
    DoseEvent(id="e2", protocol_id="b", logged_at="2026-10-18T08:00:00Z"),
    DoseEvent(id="e3", protocol_id="b", logged_at="2026-10-19T08:00:00Z"),
]


class _GatedSource:
    """Dose log whose fetches block until the test releases them, in call order."""

    def __init__(self, events, protocols=()):
        self.events = list(events)
        self.protocols = list(protocols)
        self.gates: list[asyncio.Event] = []
        self.fail_with: Exception | None = None
        # Call index -> error raised by that call only
        self.call_failures: dict[int, Exception] = {}

    async def list_dose_events(self):
        call = len(self.gates)
        gate = asyncio.Event()
        self.gates.append(gate)
        await gate.wait()
        if call in self.call_failures:
            raise self.call_failures[call]
        if self.fail_with is not None:
            raise self.fail_with
        return list(self.events)

    async def list_protocols(self):
        return list(self.protocols)


class _ImmediateSource(_GatedSource):
    async def list_dose_events(self):
        if self.fail_with is not None:
            raise self.fail_with
        return list(self.events)


async def _wait_for_gates(source, count):
    while len(source.gates) < count:
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_refresh_builds_and_stores_report():
    view = AdherenceView(_ImmediateSource(EVENTS, [Protocol(id="a", name="A")]))

    report = await view.refresh(today=TODAY, protocol_id="b")

    assert report is view.report
    assert report.protocol_id == "b"
    assert report.stats.total_doses == 2
    assert [p.id for p in view.protocols] == ["a"]


@pytest.mark.asyncio
async def test_stale_refresh_is_discarded():
    source = _GatedSource(EVENTS)
    view = AdherenceView(source)

    older = asyncio.create_task(view.refresh(today=TODAY, protocol_id="a"))
    await _wait_for_gates(source, 1)
    newer = asyncio.create_task(view.refresh(today=TODAY, protocol_id="b"))
    await _wait_for_gates(source, 2)

    # Newer fetch resolves first, then the older one.
    source.gates[1].set()
    newer_report = await newer
    source.gates[0].set()
    older_report = await older

    assert older_report is None
    assert newer_report is not None
    assert view.report is newer_report
    assert view.report.protocol_id == "b"


@pytest.mark.asyncio
async def test_older_refresh_resolving_last_does_not_overwrite():
    source = _GatedSource(EVENTS)
    view = AdherenceView(source)

    older = asyncio.create_task(view.refresh(today=TODAY, protocol_id="a"))
    await _wait_for_gates(source, 1)
    newer = asyncio.create_task(view.refresh(today=TODAY))
    await _wait_for_gates(source, 2)

    source.gates[0].set()
    assert await older is None
    assert view.report is None

    source.gates[1].set()
    report = await newer
    assert report.protocol_id is None
    assert report.stats.total_doses == 3


@pytest.mark.asyncio
async def test_superseded_refresh_failure_returns_none():
    source = _GatedSource(EVENTS)
    source.call_failures[0] = DoseLogUnavailable("db down")
    view = AdherenceView(source)

    older = asyncio.create_task(view.refresh(today=TODAY, protocol_id="a"))
    await _wait_for_gates(source, 1)
    newer = asyncio.create_task(view.refresh(today=TODAY, protocol_id="b"))
    await _wait_for_gates(source, 2)

    source.gates[0].set()
    assert await older is None

    source.gates[1].set()
    report = await newer
    assert report is view.report
    assert report.protocol_id == "b"


@pytest.mark.asyncio
async def test_latest_refresh_failure_propagates():
    source = _GatedSource(EVENTS)
    source.call_failures[0] = DoseLogUnavailable("db down")
    view = AdherenceView(source)

    task = asyncio.create_task(view.refresh(today=TODAY))
    await _wait_for_gates(source, 1)
    source.gates[0].set()
    with pytest.raises(DoseLogUnavailable):
        await task
    assert view.report is None


@pytest.mark.asyncio
async def test_fetch_failure_keeps_previous_report():
    source = _ImmediateSource(EVENTS)
    view = AdherenceView(source)
    first = await view.refresh(today=TODAY)

    source.fail_with = DoseLogUnavailable("db down")
    with pytest.raises(DoseLogUnavailable):
        await view.refresh(today=TODAY, protocol_id="a")

    assert view.report is first


@pytest.mark.asyncio
async def test_custom_window():
    view = AdherenceView(_ImmediateSource(EVENTS), window_days=2)
    report = await view.refresh(today=TODAY)
    assert report.stats.adherence_rate_percent == 100
    assert report.window_start == date(2026, 10, 18)
