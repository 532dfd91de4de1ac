"""Persistent job records and their state transitions.

Every transition is a conditional UPDATE on the current status, so a job in a
terminal state (complete, failed, cancelled) never changes again, whatever
the interleaving of workers and API calls.

Each store carries a worker id. Claimed jobs record it together with a
heartbeat, and only the owning worker can finish them, so several workers may
share one database. A running job whose heartbeat goes stale is treated as
orphaned and becomes eligible again.
"""

import json
import logging
import os
import socket
import uuid
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from knowledge_pipeline.config import settings
from knowledge_pipeline.db.database import async_session_maker
from knowledge_pipeline.db.models import AutomationJob, utcnow
from knowledge_pipeline.exceptions import NotFoundError, ValidationError
from knowledge_pipeline.jobs.models import TERMINAL_JOB_STATUSES, JobStatus, JobType

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = [JobStatus.QUEUED.value, JobStatus.PROCESSING.value]


def build_job(
    job_type: JobType | str,
    payload: dict[str, Any] | None = None,
    priority: int = 0,
    delay_seconds: float = 0,
    max_retries: int | None = None,
    rule_id: int | None = None,
    created_by: str = "system",
) -> AutomationJob:
    """A new QUEUED job row, not yet added to a session."""
    try:
        job_type = JobType(job_type)
    except ValueError as e:
        raise ValidationError(f"Unknown job type: {job_type!r}") from e
    if delay_seconds < 0:
        raise ValidationError("Delay cannot be negative")

    return AutomationJob(
        job_id=str(uuid.uuid4()),
        job_type=job_type.value,
        status=JobStatus.QUEUED.value,
        progress=0,
        priority=priority,
        run_after=utcnow() + timedelta(seconds=delay_seconds),
        retry_count=0,
        max_retries=settings.JOB_MAX_RETRIES if max_retries is None else max_retries,
        awaiting_retry=False,
        payload=json.dumps(payload or {}, default=str),
        rule_id=rule_id,
        created_by=created_by,
    )


def job_status_dict(job: AutomationJob) -> dict[str, Any]:
    return {
        "job_id": job.job_id,
        "job_type": job.job_type,
        "status": job.status,
        "progress": job.progress,
        "priority": job.priority,
        "error": job.error_message,
        "retry_count": job.retry_count,
        "max_retries": job.max_retries,
        "awaiting_retry": job.awaiting_retry,
        "run_after": job.run_after,
        "payload": json.loads(job.payload or "{}"),
        "result": json.loads(job.result) if job.result else None,
        "rule_id": job.rule_id,
        "created_by": job.created_by,
        "worker_id": job.worker_id,
        "heartbeat_at": job.heartbeat_at,
        "created_at": job.created_at,
        "started_at": job.started_at,
        "completed_at": job.completed_at,
    }


class JobStore:
    """Reads and conditional writes of AutomationJob rows."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession] | None = None,
        worker_id: str | None = None,
    ):
        self.session_maker = session_maker or async_session_maker
        self.worker_id = worker_id or f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"

    async def create_job(
        self,
        job_type: JobType | str,
        payload: dict[str, Any] | None = None,
        priority: int = 0,
        delay_seconds: float = 0,
        max_retries: int | None = None,
        rule_id: int | None = None,
        created_by: str = "system",
    ) -> str:
        job = build_job(job_type, payload, priority, delay_seconds, max_retries, rule_id, created_by)
        async with self.session_maker() as session:
            session.add(job)
            await session.commit()
        logger.info(f"Queued {job.job_type} job {job.job_id} (priority {priority})")
        return job.job_id

    async def get_job(self, job_id: str) -> AutomationJob:
        async with self.session_maker() as session:
            job = await session.scalar(select(AutomationJob).where(AutomationJob.job_id == job_id))
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    async def get_job_status(self, job_id: str) -> dict[str, Any]:
        return job_status_dict(await self.get_job(job_id))

    async def current_status(self, job_id: str) -> JobStatus | None:
        async with self.session_maker() as session:
            status = await session.scalar(
                select(AutomationJob.status).where(AutomationJob.job_id == job_id)
            )
        return JobStatus(status) if status else None

    async def cancel_job(self, job_id: str) -> bool:
        """Cancel a queued or running job. False if it is unknown or already finished."""
        now = utcnow()
        async with self.session_maker() as session:
            result = await session.execute(
                update(AutomationJob)
                .where(AutomationJob.job_id == job_id, AutomationJob.status.in_(ACTIVE_STATUSES))
                .values(
                    status=JobStatus.CANCELLED.value,
                    awaiting_retry=False,
                    completed_at=now,
                    updated_at=now,
                )
            )
            await session.commit()
        cancelled = result.rowcount > 0
        if cancelled:
            logger.info(f"Cancelled job {job_id}")
        return cancelled

    async def list_jobs(
        self,
        status: str | None = None,
        job_type: str | None = None,
        limit: int = 50,
    ) -> list[AutomationJob]:
        query = select(AutomationJob).order_by(AutomationJob.created_at.desc(), AutomationJob.id.desc())
        if status:
            query = query.where(AutomationJob.status == status)
        if job_type:
            query = query.where(AutomationJob.job_type == job_type)
        async with self.session_maker() as session:
            result = await session.execute(query.limit(limit))
            return list(result.scalars())

    async def get_job_statistics(self) -> dict[str, Any]:
        async with self.session_maker() as session:
            by_status = {status.value: 0 for status in JobStatus}
            for status, count in (
                await session.execute(
                    select(AutomationJob.status, func.count()).group_by(AutomationJob.status)
                )
            ).all():
                by_status[status] = count
            by_type = dict(
                (
                    await session.execute(
                        select(AutomationJob.job_type, func.count()).group_by(AutomationJob.job_type)
                    )
                ).all()
            )
            awaiting_retry = await session.scalar(
                select(func.count(AutomationJob.id)).where(AutomationJob.awaiting_retry.is_(True))
            )
        finished = by_status[JobStatus.COMPLETE.value] + by_status[JobStatus.FAILED.value]
        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "by_type": by_type,
            "awaiting_retry": awaiting_retry or 0,
            "success_rate": round(by_status[JobStatus.COMPLETE.value] / finished, 3) if finished else None,
        }

    # -------------------------------------------------------------------------
    # Worker-side transitions
    # -------------------------------------------------------------------------

    async def claim_due(self, limit: int, now: datetime | None = None) -> list[AutomationJob]:
        """Claim up to `limit` eligible jobs, highest priority first, then oldest.

        Eligible: QUEUED jobs whose run_after has passed, and PROCESSING jobs
        waiting for a retry whose run_after has passed.
        """
        if limit <= 0:
            return []
        now = now or utcnow()
        due = and_(AutomationJob.run_after <= now)
        eligible = or_(
            and_(AutomationJob.status == JobStatus.QUEUED.value, due),
            and_(
                AutomationJob.status == JobStatus.PROCESSING.value,
                AutomationJob.awaiting_retry.is_(True),
                due,
            ),
        )

        claimed = []
        async with self.session_maker() as session:
            result = await session.execute(
                select(AutomationJob.id, AutomationJob.status)
                .where(eligible)
                .order_by(AutomationJob.priority.desc(), AutomationJob.created_at, AutomationJob.id)
                .limit(limit)
            )
            for row_id, status in result.all():
                if status == JobStatus.QUEUED.value:
                    guard = AutomationJob.status == JobStatus.QUEUED.value
                else:
                    guard = and_(
                        AutomationJob.status == JobStatus.PROCESSING.value,
                        AutomationJob.awaiting_retry.is_(True),
                    )
                values: dict[str, Any] = {
                    "status": JobStatus.PROCESSING.value,
                    "awaiting_retry": False,
                    "worker_id": self.worker_id,
                    "heartbeat_at": now,
                    "updated_at": now,
                }
                if status == JobStatus.QUEUED.value:
                    values["started_at"] = now
                updated = await session.execute(
                    update(AutomationJob).where(AutomationJob.id == row_id, guard).values(**values)
                )
                if updated.rowcount:
                    claimed.append(row_id)
            await session.commit()

            if not claimed:
                return []
            jobs = await session.execute(
                select(AutomationJob)
                .where(AutomationJob.id.in_(claimed))
                .order_by(AutomationJob.priority.desc(), AutomationJob.created_at, AutomationJob.id)
                .execution_options(populate_existing=True)
            )
            return list(jobs.scalars())

    def _owned_and_running(self, job_id: str):
        return and_(
            AutomationJob.job_id == job_id,
            AutomationJob.status == JobStatus.PROCESSING.value,
            AutomationJob.awaiting_retry.is_(False),
            or_(AutomationJob.worker_id.is_(None), AutomationJob.worker_id == self.worker_id),
        )

    async def set_progress(self, job_id: str, progress: int) -> None:
        now = utcnow()
        async with self.session_maker() as session:
            await session.execute(
                update(AutomationJob)
                .where(self._owned_and_running(job_id))
                .values(progress=max(0, min(100, int(progress))), heartbeat_at=now, updated_at=now)
            )
            await session.commit()

    async def heartbeat(self, job_id: str) -> bool:
        """Record that this worker is still running the job. False once it lost the job."""
        async with self.session_maker() as session:
            result = await session.execute(
                update(AutomationJob).where(self._owned_and_running(job_id)).values(heartbeat_at=utcnow())
            )
            await session.commit()
        return result.rowcount > 0

    async def update_payload(self, job_id: str, values: dict[str, Any]) -> bool:
        """Merge `values` into a running job's payload; a retry of the job sees them."""
        async with self.session_maker() as session:
            job = await session.scalar(select(AutomationJob).where(self._owned_and_running(job_id)))
            if job is None:
                return False
            payload = json.loads(job.payload or "{}")
            payload.update(values)
            job.payload = json.dumps(payload, default=str)
            job.updated_at = utcnow()
            await session.commit()
        return True

    async def complete(self, job_id: str, result: dict[str, Any] | None) -> bool:
        now = utcnow()
        return await self._finish_running(
            job_id,
            status=JobStatus.COMPLETE.value,
            progress=100,
            result=json.dumps(result or {}, default=str),
            error_message=None,
            completed_at=now,
            updated_at=now,
        )

    async def fail(self, job_id: str, error: str) -> bool:
        now = utcnow()
        return await self._finish_running(
            job_id,
            status=JobStatus.FAILED.value,
            error_message=error,
            completed_at=now,
            updated_at=now,
        )

    async def schedule_retry(self, job_id: str, error: str, delay_seconds: float) -> bool:
        """Keep the job PROCESSING but idle until run_after, one retry further along."""
        now = utcnow()
        return await self._finish_running(
            job_id,
            awaiting_retry=True,
            retry_count=AutomationJob.retry_count + 1,
            run_after=now + timedelta(seconds=delay_seconds),
            error_message=error,
            updated_at=now,
        )

    async def _finish_running(self, job_id: str, **values: Any) -> bool:
        async with self.session_maker() as session:
            result = await session.execute(
                update(AutomationJob).where(self._owned_and_running(job_id)).values(**values)
            )
            await session.commit()
        return result.rowcount > 0

    async def recover_orphaned(self, stale_after_seconds: float | None = None) -> int:
        """Make running jobs left behind by a dead worker eligible again.

        A job counts as orphaned when its heartbeat is older than
        `stale_after_seconds`. Jobs a live worker keeps beating for are left alone.
        """
        now = utcnow()
        if stale_after_seconds is None:
            stale_after_seconds = settings.JOB_STALE_AFTER_SECONDS
        cutoff = now - timedelta(seconds=stale_after_seconds)
        async with self.session_maker() as session:
            result = await session.execute(
                update(AutomationJob)
                .where(
                    AutomationJob.status == JobStatus.PROCESSING.value,
                    AutomationJob.awaiting_retry.is_(False),
                    or_(AutomationJob.heartbeat_at.is_(None), AutomationJob.heartbeat_at < cutoff),
                )
                .values(awaiting_retry=True, run_after=now, updated_at=now)
            )
            await session.commit()
        if result.rowcount:
            logger.warning(f"Recovered {result.rowcount} orphaned jobs")
        return result.rowcount

    async def prune_jobs(self, older_than_days: int) -> int:
        cutoff = utcnow() - timedelta(days=older_than_days)
        async with self.session_maker() as session:
            result = await session.execute(
                delete(AutomationJob).where(
                    AutomationJob.status.in_([s.value for s in TERMINAL_JOB_STATUSES]),
                    AutomationJob.completed_at < cutoff,
                )
            )
            await session.commit()
        logger.info(f"Pruned {result.rowcount} finished jobs older than {older_than_days} days")
        return result.rowcount
