import asyncio
import logging
import signal
import time
from typing import Any

import psycopg
from psycopg.rows import dict_row

from .config import Config
from .logging import log_context
from .metrics import (
    record_handler_invocation,
    record_job_completed,
    record_job_dead,
    record_job_failed,
)
from .registry import commits_own_work, get_handler
from .scheduler import ensure_recurring_jobs
from .schema import ensure_schema

logger = logging.getLogger(__name__)

LISTEN_CHANNEL = "medsched_jobs"


class Worker:
    def __init__(self, config: Config) -> None:
        self.config = config
        self._shutdown = asyncio.Event()

    async def run(self) -> None:
        """Main entry point: run listen + poll loops until shutdown."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._request_shutdown)

        logger.info(
            "Worker starting (poll_interval=%.1fs, batch_size=%d)",
            self.config.poll_interval_seconds,
            self.config.batch_size,
        )
        if self.config.listen_database_url != self.config.database_url:
            logger.info("Worker LISTEN uses dedicated database URL")

        # Schema and recurring jobs before the first claim
        async with await psycopg.AsyncConnection.connect(
            self.config.database_url
        ) as conn:
            await ensure_schema(conn)
            try:
                await ensure_recurring_jobs(conn)
                await conn.commit()
            except Exception as exc:
                await conn.rollback()
                logger.warning("Recurring job bootstrap skipped: %s", exc)

        async with asyncio.TaskGroup() as tg:
            tg.create_task(self._listen_loop())
            tg.create_task(self._poll_loop())

    def _request_shutdown(self) -> None:
        logger.info("Shutdown requested")
        self._shutdown.set()

    async def _listen_loop(self) -> None:
        """LISTEN on the jobs channel for instant wake-up on new jobs."""
        while not self._shutdown.is_set():
            try:
                async with await psycopg.AsyncConnection.connect(
                    self.config.listen_database_url, autocommit=True
                ) as conn:
                    await conn.execute(f"LISTEN {LISTEN_CHANNEL}")
                    logger.info("Listening on %s channel", LISTEN_CHANNEL)

                    # Keep connection alive across timeouts; reconnect only on
                    # actual connection loss (OperationalError).
                    while not self._shutdown.is_set():
                        gen = conn.notifies(
                            timeout=self.config.poll_interval_seconds
                        )
                        async for notify in gen:
                            logger.debug("NOTIFY received: %s", notify.payload)
                            await self._process_batch()
                            if self._shutdown.is_set():
                                break
            except psycopg.OperationalError:
                if self._shutdown.is_set():
                    break
                logger.warning("LISTEN connection lost, reconnecting in 5s")
                await asyncio.sleep(5)

        logger.info("Listen loop stopped")

    async def _poll_loop(self) -> None:
        """Fallback polling loop; also ticks the recurring scheduler."""
        while not self._shutdown.is_set():
            try:
                await asyncio.wait_for(
                    self._shutdown.wait(),
                    timeout=self.config.poll_interval_seconds,
                )
                break  # shutdown was set
            except TimeoutError:
                pass

            await self._process_batch()

        logger.info("Poll loop stopped")

    async def _process_batch(self) -> None:
        """Claim and process a batch of pending jobs."""
        try:
            async with await psycopg.AsyncConnection.connect(
                self.config.database_url
            ) as conn:
                try:
                    await ensure_recurring_jobs(conn)
                    await conn.commit()
                except Exception as exc:
                    await conn.rollback()
                    logger.warning("Recurring scheduler tick skipped: %s", exc)

                jobs = await self._claim_jobs(conn)
                await conn.commit()  # Commit claims immediately so they survive crashes

                for job in jobs:
                    await self._process_job(conn, job)
        except Exception:
            logger.exception("Error in process_batch")

    async def _claim_jobs(
        self, conn: psycopg.AsyncConnection[Any]
    ) -> list[dict[str, Any]]:
        """Claim pending jobs using SELECT FOR UPDATE SKIP LOCKED."""
        async with conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                UPDATE background_jobs
                SET status = 'processing', started_at = NOW(), attempt = attempt + 1
                WHERE id IN (
                    SELECT id FROM background_jobs
                    WHERE status = 'pending' AND scheduled_for <= NOW()
                    ORDER BY scheduled_for, priority DESC, id
                    LIMIT %s
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING id, patient_id, job_type, payload, attempt, max_retries
                """,
                (self.config.batch_size,),
            )
            return await cur.fetchall()

    async def _process_job(
        self, conn: psycopg.AsyncConnection[Any], job: dict[str, Any]
    ) -> None:
        """Process a single job in its own transaction, or per item for batch handlers."""
        with log_context(job_id=job["id"], job_type=job["job_type"]):
            await self._run_job(conn, job)

    async def _run_job(
        self, conn: psycopg.AsyncConnection[Any], job: dict[str, Any]
    ) -> None:
        job_id = job["id"]
        job_type = job["job_type"]

        handler = get_handler(job_type)
        if handler is None:
            logger.warning("No handler for job_type=%s (job_id=%d)", job_type, job_id)
            await self._fail_job(conn, job_id, f"No handler for job_type={job_type}")
            return

        payload = dict(job["payload"] or {})
        if job.get("patient_id"):
            payload.setdefault("patient_id", job["patient_id"])
        self_committing = commits_own_work(job_type)

        started = time.monotonic()
        try:
            if self_committing:
                # Batch handlers commit per item; a rerun after a crash is idempotent
                await handler(conn, payload)
                async with conn.transaction():
                    await self._complete_job(conn, job_id)
            else:
                # Handler + job completion in one transaction, no crash window
                async with conn.transaction():
                    await handler(conn, payload)
                    await self._complete_job(conn, job_id)
            duration_ms = (time.monotonic() - started) * 1000
            record_handler_invocation(handler.__name__, duration_ms, success=True)
            record_job_completed()
            logger.info(
                "Job %d completed (type=%s)",
                job_id,
                job_type,
                extra={"medsched_duration_ms": round(duration_ms, 1)},
            )
        except Exception as exc:
            # conn.transaction() already rolled back; a self-committing handler
            # may have left an implicit transaction open
            if self_committing:
                await conn.rollback()
            record_handler_invocation(
                handler.__name__, (time.monotonic() - started) * 1000, success=False
            )
            logger.exception("Job %d failed (type=%s)", job_id, job_type)

            attempt = job["attempt"]
            max_retries = job["max_retries"]

            if attempt >= max_retries:
                await self._dead_job(conn, job_id, str(exc))
            else:
                record_job_failed()
                await self._retry_job(conn, job_id, attempt, str(exc))

    async def _complete_job(
        self, conn: psycopg.AsyncConnection[Any], job_id: int
    ) -> None:
        await conn.execute(
            """
            UPDATE background_jobs
            SET status = 'completed', completed_at = NOW()
            WHERE id = %s
            """,
            (job_id,),
        )

    async def _fail_job(
        self, conn: psycopg.AsyncConnection[Any], job_id: int, error: str
    ) -> None:
        async with conn.cursor() as cur:
            await cur.execute(
                """
                UPDATE background_jobs
                SET status = 'dead', error_message = %s, completed_at = NOW()
                WHERE id = %s
                """,
                (error, job_id),
            )
        await conn.commit()

    async def _dead_job(
        self, conn: psycopg.AsyncConnection[Any], job_id: int, error: str
    ) -> None:
        record_job_dead()
        logger.error("Job %d is dead after max retries: %s", job_id, error)
        await self._fail_job(conn, job_id, error)

    async def _retry_job(
        self,
        conn: psycopg.AsyncConnection[Any],
        job_id: int,
        attempt: int,
        error: str,
    ) -> None:
        backoff_seconds = 2**attempt
        logger.info("Job %d retrying in %ds (attempt=%d)", job_id, backoff_seconds, attempt)
        async with conn.cursor() as cur:
            await cur.execute(
                """
                UPDATE background_jobs
                SET status = 'pending',
                    error_message = %s,
                    scheduled_for = NOW() + make_interval(secs => %s)
                WHERE id = %s
                """,
                (error, float(backoff_seconds), job_id),
            )
        await conn.commit()
