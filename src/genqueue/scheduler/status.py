"""Owner-facing job status and advisory wait estimates."""

from __future__ import annotations

import math

from genqueue.errors import NotFoundError
from genqueue.scheduler.models import JobStatus, JobView, StatusDocument, WaitEstimate
from genqueue.scheduler.repository import JobRepository

AVERAGE_SAMPLE_SIZE = 50


class StatusService:
    """Read-only view over the job store."""

    def __init__(
        self,
        *,
        jobs: JobRepository,
        concurrency: int,
        default_job_seconds: int,
    ) -> None:
        self.jobs = jobs
        self.concurrency = max(1, concurrency)
        self.default_job_seconds = default_job_seconds

    def get_status(self, *, job_id: str, owner_id: str) -> StatusDocument:
        """Status of an owned job; unknown and foreign jobs look the same."""

        job = self.jobs.get_job(job_id=job_id, owner_id=owner_id)
        if job is None:
            raise NotFoundError(f"Job not found: {job_id}")
        return self._document(job)

    def list_jobs(self, *, owner_id: str, limit: int = 50) -> list[StatusDocument]:
        return [
            self._document(job, with_estimate=False)
            for job in self.jobs.list_jobs(owner_id=owner_id, limit=limit)
        ]

    def estimate_wait(self, *, job_id: str) -> WaitEstimate | None:
        position = self.jobs.queue_position(job_id=job_id)
        if position is None:
            return None
        average = self.jobs.average_duration_seconds(sample_size=AVERAGE_SAMPLE_SIZE)
        if average is None:
            average = float(self.default_job_seconds)
        estimated_seconds = math.ceil(position / self.concurrency * average)
        return WaitEstimate(
            position=position,
            queue_length=self.jobs.count_by_status(status=JobStatus.QUEUED),
            active_jobs=self.jobs.count_by_status(status=JobStatus.ACTIVE),
            estimated_seconds=estimated_seconds,
            estimated_minutes=math.ceil(estimated_seconds / 60),
        )

    def _document(self, job: JobView, *, with_estimate: bool = True) -> StatusDocument:
        document = StatusDocument(
            job_id=job.job_id,
            status=job.status,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )
        if job.status == JobStatus.QUEUED and with_estimate:
            document.wait_estimate = self.estimate_wait(job_id=job.job_id)
        elif job.status == JobStatus.ACTIVE:
            document.progress = job.progress
        elif job.status == JobStatus.COMPLETED:
            document.result_ref = job.result_ref
            document.metrics = job.metrics
        elif job.status == JobStatus.FAILED:
            document.error = job.error
        return document
