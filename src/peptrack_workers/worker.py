"""Job worker: claims background_jobs rows and dispatches them to handlers.

New dose and protocol events enqueue projection.update jobs and NOTIFY the
jobs channel. The worker wakes on NOTIFY and also polls, so a missed
notification only delays a job by one poll interval.
"""

import asyncio
import logging
import signal
from typing import Any

import psycopg
from psycopg.rows import dict_row

from .config import Config
from .metrics import record_job_completed, record_job_dead, record_job_failed
from .registry import get_handler

logger = logging.getLogger(__name__)

JOBS_CHANNEL = "peptrack_jobs"

_CLAIM_SQL = """
    UPDATE background_jobs
    SET status = 'processing', started_at = NOW(), attempt = attempt + 1
    WHERE id IN (
        SELECT id FROM background_jobs
        WHERE status = 'pending' AND scheduled_for <= NOW()
        ORDER BY scheduled_for, priority DESC, id
        LIMIT %s
        FOR UPDATE SKIP LOCKED
    )
    RETURNING id, user_id, job_type, payload, attempt, max_retries
"""

_COMPLETE_SQL = """
    UPDATE background_jobs
    SET status = 'completed', completed_at = NOW()
    WHERE id = %s
"""

_DEAD_SQL = """
    UPDATE background_jobs
    SET status = 'dead', error_message = %s, completed_at = NOW()
    WHERE id = %s
"""

_RESCHEDULE_SQL = """
    UPDATE background_jobs
    SET status = 'pending',
        error_message = %s,
        scheduled_for = NOW() + make_interval(secs => %s)
    WHERE id = %s
"""


def retry_backoff_seconds(attempt: int) -> int:
    return 2**attempt


class Worker:
    def __init__(self, config: Config) -> None:
        self.config = config
        self._shutdown = asyncio.Event()

    async def run(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._shutdown.set)

        logger.info(
            "Worker running (poll every %.1fs, up to %d jobs per batch)",
            self.config.poll_interval_seconds,
            self.config.batch_size,
        )
        async with asyncio.TaskGroup() as tg:
            tg.create_task(self._listen_loop())
            tg.create_task(self._poll_loop())
        logger.info("Worker stopped")

    async def _listen_loop(self) -> None:
        while not self._shutdown.is_set():
            try:
                async with await psycopg.AsyncConnection.connect(
                    self.config.listen_database_url, autocommit=True
                ) as conn:
                    await conn.execute(f"LISTEN {JOBS_CHANNEL}")
                    logger.info("Listening on %s", JOBS_CHANNEL)
                    while not self._shutdown.is_set():
                        notifies = conn.notifies(timeout=self.config.poll_interval_seconds)
                        async for notify in notifies:
                            logger.debug("NOTIFY %s: %s", JOBS_CHANNEL, notify.payload)
                            await self._process_batch()
                            if self._shutdown.is_set():
                                break
            except psycopg.OperationalError:
                if self._shutdown.is_set():
                    break
                logger.warning("Lost LISTEN connection, retrying in 5s")
                await asyncio.sleep(5)

    async def _poll_loop(self) -> None:
        while not self._shutdown.is_set():
            try:
                await asyncio.wait_for(
                    self._shutdown.wait(), timeout=self.config.poll_interval_seconds
                )
            except TimeoutError:
                await self._process_batch()

    async def _process_batch(self) -> None:
        try:
            async with await psycopg.AsyncConnection.connect(self.config.database_url) as conn:
                async with conn.cursor(row_factory=dict_row) as cur:
                    await cur.execute(_CLAIM_SQL, (self.config.batch_size,))
                    jobs = await cur.fetchall()
                # Commit the claims before running handlers.
                await conn.commit()
                for job in jobs:
                    await self._process_job(conn, job)
        except Exception:
            logger.exception("Batch processing failed")

    async def _process_job(
        self, conn: psycopg.AsyncConnection[Any], job: dict[str, Any]
    ) -> None:
        job_id = job["id"]
        job_type = job["job_type"]

        handler = get_handler(job_type)
        if handler is None:
            logger.warning("Job %d has unknown job_type=%s", job_id, job_type)
            await self._set_status(conn, _DEAD_SQL, (f"No handler for job_type={job_type}", job_id))
            return

        try:
            async with conn.transaction():
                await handler(conn, job["payload"])
                await conn.execute(_COMPLETE_SQL, (job_id,))
        except Exception as exc:
            logger.exception(
                "Job %d (%s) raised on attempt %d", job_id, job_type, job["attempt"],
                extra={"peptrack_job_id": job_id, "peptrack_job_type": job_type},
            )
            await self._handle_failure(conn, job, str(exc))
            return

        record_job_completed()
        logger.info("Job %d (%s) completed", job_id, job_type)

    async def _handle_failure(
        self, conn: psycopg.AsyncConnection[Any], job: dict[str, Any], error: str
    ) -> None:
        attempt = job["attempt"]
        if attempt >= min(job["max_retries"], self.config.max_retries):
            record_job_dead()
            logger.error("Job %d gave up after %d attempts: %s", job["id"], attempt, error)
            await self._set_status(conn, _DEAD_SQL, (error, job["id"]))
            return

        record_job_failed()
        delay = retry_backoff_seconds(attempt)
        logger.info("Job %d rescheduled in %ds", job["id"], delay)
        await self._set_status(conn, _RESCHEDULE_SQL, (error, float(delay), job["id"]))

    async def _set_status(
        self, conn: psycopg.AsyncConnection[Any], sql: str, params: tuple[Any, ...]
    ) -> None:
        async with conn.cursor() as cur:
            await cur.execute(sql, params)
        await conn.commit()
