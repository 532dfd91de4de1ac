"""Per-job context handed to job handlers."""

from knowledge_pipeline.exceptions import JobCancelledError
from knowledge_pipeline.jobs.models import JobStatus
from knowledge_pipeline.jobs.store import JobStore


class JobContext:
    """Progress reporting and cooperative cancellation for one running job."""

    def __init__(self, job_id: str, store: JobStore):
        self.job_id = job_id
        self.store = store

    async def report_progress(self, progress: int) -> None:
        await self.store.set_progress(self.job_id, progress)

    async def checkpoint(self) -> None:
        """Raise JobCancelledError if the job was cancelled meanwhile."""
        if await self.store.current_status(self.job_id) == JobStatus.CANCELLED:
            raise JobCancelledError(f"Job {self.job_id} was cancelled")

    async def save_payload(self, **values) -> None:
        """Persist values into the job payload so a retried run starts from them."""
        await self.store.update_payload(self.job_id, values)

    def scaled(self, start: int, end: int):
        """A progress callback mapping 0-100 onto [start, end]."""

        async def report(progress: int) -> None:
            await self.report_progress(start + (end - start) * progress // 100)

        return report
