"""Background job orchestration.

Jobs live in the database; this module claims due jobs, runs each one in its
own asyncio task and records the outcome. Several orchestrators may share one
database: claims are conditional updates stamped with the worker id, a running
job is kept alive by heartbeats, and only jobs whose heartbeat went stale are
recovered by another worker.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from knowledge_pipeline.config import settings
from knowledge_pipeline.db.database import async_session_maker
from knowledge_pipeline.db.models import AutomationJob, utcnow
from knowledge_pipeline.exceptions import JobCancelledError, TransientError, classify_error
from knowledge_pipeline.jobs.context import JobContext
from knowledge_pipeline.jobs.handlers import JobHandler
from knowledge_pipeline.jobs.models import JobType, RuleEventType
from knowledge_pipeline.jobs.rules import AutomationRuleService
from knowledge_pipeline.jobs.store import JobStore

logger = logging.getLogger(__name__)


class JobOrchestrator:
    """Claims and runs jobs with bounded concurrency, retries and timeouts.

    Retryable failures keep the job PROCESSING with `awaiting_retry` set and a
    later `run_after`; once `max_retries` is used up the job is FAILED. Any
    other failure fails the job at once.
    """

    def __init__(
        self,
        handlers: dict[JobType, JobHandler],
        session_maker: async_sessionmaker[AsyncSession] | None = None,
        rules: AutomationRuleService | None = None,
        store: JobStore | None = None,
        max_concurrent: int | None = None,
        job_timeout_seconds: float | None = None,
        retry_base_delay: float | None = None,
        retry_max_delay: float | None = None,
        heartbeat_seconds: float | None = None,
    ):
        missing = set(JobType) - set(handlers)
        if missing:
            raise RuntimeError(f"No handler for job types: {sorted(t.value for t in missing)}")

        self.handlers = handlers
        self.session_maker = session_maker or async_session_maker
        self.store = store or JobStore(self.session_maker)
        self.rules = rules
        self.max_concurrent = max_concurrent or settings.MAX_CONCURRENT_JOBS
        self.job_timeout_seconds = job_timeout_seconds or settings.JOB_TIMEOUT_MINUTES * 60
        self.retry_base_delay = (
            retry_base_delay if retry_base_delay is not None else settings.JOB_RETRY_BASE_DELAY_SECONDS
        )
        self.retry_max_delay = (
            retry_max_delay if retry_max_delay is not None else settings.JOB_RETRY_MAX_DELAY_SECONDS
        )
        self.heartbeat_seconds = heartbeat_seconds or settings.JOB_HEARTBEAT_SECONDS
        self._tasks: dict[str, asyncio.Task] = {}
        self._stop = asyncio.Event()

    # -------------------------------------------------------------------------
    # Job API
    # -------------------------------------------------------------------------

    async def create_job(
        self,
        job_type: JobType | str,
        payload: dict[str, Any] | None = None,
        priority: int = 0,
        delay_seconds: float = 0,
        max_retries: int | None = None,
        created_by: str = "system",
    ) -> str:
        return await self.store.create_job(
            job_type,
            payload,
            priority=priority,
            delay_seconds=delay_seconds,
            max_retries=max_retries,
            created_by=created_by,
        )

    async def get_job_status(self, job_id: str) -> dict[str, Any]:
        return await self.store.get_job_status(job_id)

    async def cancel_job(self, job_id: str) -> bool:
        """Mark the job CANCELLED. A running handler stops at its next checkpoint."""
        return await self.store.cancel_job(job_id)

    async def list_jobs(self, status: str | None = None, job_type: str | None = None, limit: int = 50):
        return await self.store.list_jobs(status=status, job_type=job_type, limit=limit)

    async def get_job_statistics(self) -> dict[str, Any]:
        stats = await self.store.get_job_statistics()
        stats["running_here"] = len(self._tasks)
        return stats

    # -------------------------------------------------------------------------
    # Worker loop
    # -------------------------------------------------------------------------

    @property
    def running(self) -> int:
        return len(self._tasks)

    async def tick(self, now: datetime | None = None) -> list[str]:
        """Fire due schedules, then start as many due jobs as there is room for."""
        now = now or utcnow()
        if self.rules is not None:
            try:
                await self.rules.fire_due_schedules(now)
            except Exception as e:
                logger.error(f"Failed to fire scheduled rules: {e}")

        capacity = self.max_concurrent - len(self._tasks)
        if capacity <= 0:
            return []

        jobs = await self.store.claim_due(capacity, now)
        for job in jobs:
            task = asyncio.create_task(self._run(job), name=f"job-{job.job_id}")
            self._tasks[job.job_id] = task
            task.add_done_callback(lambda _, job_id=job.job_id: self._tasks.pop(job_id, None))
        if jobs:
            logger.debug(f"Started {len(jobs)} jobs, {len(self._tasks)} running")
        return [job.job_id for job in jobs]

    async def wait_idle(self) -> None:
        """Wait until every job started by this orchestrator has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def run_pending(self, now: datetime | None = None) -> int:
        """Run due jobs until none are left. Returns how many runs were started."""
        started = 0
        while True:
            claimed = await self.tick(now)
            if not claimed and not self._tasks:
                return started
            started += len(claimed)
            await self.wait_idle()

    async def run_forever(self, poll_interval: float | None = None) -> None:
        poll_interval = poll_interval or settings.JOB_POLL_INTERVAL_SECONDS
        self._stop.clear()
        logger.info(
            f"Job orchestrator {self.store.worker_id} started (max {self.max_concurrent} concurrent jobs)"
        )

        while not self._stop.is_set():
            try:
                await self.store.recover_orphaned()
                await self.tick()
            except Exception as e:
                logger.exception(f"Orchestrator tick failed: {e}")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=poll_interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Job orchestrator stopped")

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Stop polling and give running jobs `timeout` seconds to finish.

        Jobs still running after that are cancelled and left PROCESSING; once
        their heartbeat is stale a worker recovers them.
        """
        self._stop.set()
        if not self._tasks:
            return
        tasks = list(self._tasks.values())
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"Cancelled {len(pending)} jobs still running at shutdown")
            await asyncio.gather(*pending, return_exceptions=True)

    # -------------------------------------------------------------------------
    # Running one job
    # -------------------------------------------------------------------------

    def retry_delay(self, retry_number: int, retry_after: float | None = None) -> float:
        """Exponential backoff for the n-th retry, at least the provider's retry-after."""
        delay = self.retry_base_delay * 2 ** (retry_number - 1)
        if retry_after:
            delay = max(delay, retry_after)
        return min(delay, self.retry_max_delay)

    async def _run(self, job: AutomationJob) -> None:
        job_type = JobType(job.job_type)
        handler = self.handlers[job_type]
        ctx = JobContext(job.job_id, self.store)
        payload = json.loads(job.payload or "{}")
        attempt = job.retry_count + 1
        logger.info(f"Running {job_type.value} job {job.job_id} (attempt {attempt})")

        heartbeat = asyncio.create_task(self._heartbeat(job.job_id), name=f"heartbeat-{job.job_id}")
        try:
            result = await asyncio.wait_for(handler(ctx, payload), timeout=self.job_timeout_seconds)
        except JobCancelledError:
            logger.info(f"Job {job.job_id} stopped after cancellation")
            return
        except asyncio.TimeoutError:
            await self._handle_failure(
                job, TransientError(f"Job timed out after {self.job_timeout_seconds:.0f} seconds")
            )
            return
        except Exception as e:
            await self._handle_failure(job, e)
            return
        finally:
            heartbeat.cancel()

        if not await self.store.complete(job.job_id, result):
            logger.info(f"Job {job.job_id} finished but was no longer running here (cancelled or recovered)")
            return
        logger.info(f"Job {job.job_id} complete")
        await self._record_rule_outcome(job, success=True)

        if job_type == JobType.DOCUMENT_CREATION and self.rules is not None:
            created = (result or {}).get("documents_created", 0)
            if created:
                try:
                    await self.rules.fire_event(
                        RuleEventType.DOCUMENTS_CREATED,
                        {"job_id": job.job_id, "document_ids": result.get("document_ids", [])},
                    )
                except Exception as e:
                    logger.error(f"Failed to fire documents_created rules for job {job.job_id}: {e}")

    async def _heartbeat(self, job_id: str) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_seconds)
            try:
                if not await self.store.heartbeat(job_id):
                    return
            except Exception as e:
                logger.warning(f"Heartbeat for job {job_id} failed: {e}")

    async def _handle_failure(self, job: AutomationJob, error: Exception) -> None:
        classified = classify_error(error)
        message = f"{classified.error_type}: {classified}"

        if isinstance(classified, TransientError) and job.retry_count < job.max_retries:
            retry_number = job.retry_count + 1
            delay = self.retry_delay(retry_number, classified.retry_after)
            if await self.store.schedule_retry(job.job_id, message, delay):
                logger.warning(
                    f"Job {job.job_id} failed ({message}), retry {retry_number}/{job.max_retries} in {delay:.1f}s"
                )
            return

        if await self.store.fail(job.job_id, message):
            logger.error(f"Job {job.job_id} failed: {message}")
            await self._record_rule_outcome(job, success=False)

    async def _record_rule_outcome(self, job: AutomationJob, success: bool) -> None:
        if job.rule_id is None or self.rules is None:
            return
        elapsed = (utcnow() - (job.started_at or job.created_at)).total_seconds()
        try:
            await self.rules.record_run_outcome(job.rule_id, success, max(0.0, elapsed))
        except Exception as e:
            logger.error(f"Failed to record outcome of job {job.job_id} on rule {job.rule_id}: {e}")
