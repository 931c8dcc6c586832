"""Last-write-wins adherence view for interactive consumers.

Each refresh awaits one snapshot of the dose log and recomputes the report.
A refresh that finishes after a newer one has started is discarded, so a
slow fetch for an old protocol filter never overwrites a newer result.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date

from .adherence_report import AdherenceReport, build_adherence_report
from .dose_events import DEFAULT_WINDOW_DAYS, Protocol
from .dose_log import DoseLogSource

logger = logging.getLogger(__name__)


class AdherenceView:
    def __init__(self, source: DoseLogSource, window_days: int = DEFAULT_WINDOW_DAYS) -> None:
        self.source = source
        self.window_days = window_days
        self.report: AdherenceReport | None = None
        self.protocols: list[Protocol] = []
        self._generation = 0

    async def refresh(self, *, today: date, protocol_id: str | None = None) -> AdherenceReport | None:
        """Fetch and recompute; None when superseded by a newer refresh.

        A superseded call returns None whether its fetch succeeded or failed.
        Fetch errors of the latest call propagate and leave the previous report
        in place.
        """
        self._generation += 1
        generation = self._generation

        try:
            events, protocols = await asyncio.gather(
                self.source.list_dose_events(),
                self.source.list_protocols(),
            )
        except Exception:
            if generation != self._generation:
                logger.debug(
                    "Ignoring failed stale adherence refresh (generation=%d, latest=%d)",
                    generation, self._generation, exc_info=True,
                )
                return None
            raise

        if generation != self._generation:
            logger.debug(
                "Discarding stale adherence refresh (generation=%d, latest=%d)",
                generation, self._generation,
            )
            return None

        report = build_adherence_report(
            events,
            today=today,
            protocol_id=protocol_id,
            window_days=self.window_days,
        )
        self.report = report
        self.protocols = protocols
        return report
