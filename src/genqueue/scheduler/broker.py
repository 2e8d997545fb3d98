"""Priority dispatch with concurrency cap, rate limiting and stall recovery."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError

from genqueue.config import BrokerSettings
from genqueue.errors import EnqueueFailure, StallTimeout
from genqueue.scheduler.models import JobStatus, JobView, StalledJob
from genqueue.scheduler.repository import JobRepository
from genqueue.scheduler.settlement import SettlementService
from genqueue.storage.common import utc_now

logger = logging.getLogger(__name__)


class TokenBucket:
    """Thread-safe token bucket: ``capacity`` starts per ``period_seconds``."""

    def __init__(
        self,
        *,
        capacity: int,
        period_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity <= 0 or period_seconds <= 0:
            raise ValueError("Token bucket capacity and period must be positive.")
        self.capacity = capacity
        self.period_seconds = period_seconds
        self._clock = clock
        self._tokens = float(capacity)
        self._updated_at = clock()
        self._lock = threading.Lock()

    def try_acquire(self) -> bool:
        with self._lock:
            self._refill()
            if self._tokens < 1.0:
                return False
            self._tokens -= 1.0
            return True

    def release(self) -> None:
        """Return an unused token."""

        with self._lock:
            self._tokens = min(float(self.capacity), self._tokens + 1.0)

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated_at)
        self._updated_at = now
        rate = self.capacity / self.period_seconds
        self._tokens = min(float(self.capacity), self._tokens + elapsed * rate)


class JobBroker:
    """Hands queued jobs to workers, highest cost first then FIFO."""

    def __init__(
        self,
        *,
        jobs: JobRepository,
        settlement: SettlementService,
        settings: BrokerSettings,
        concurrency: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.jobs = jobs
        self.settlement = settlement
        self.settings = settings
        self.concurrency = concurrency
        self.limiter = TokenBucket(
            capacity=settings.rate_limit_max,
            period_seconds=settings.rate_limit_duration_seconds,
            clock=clock,
        )
        self._dispatch_lock = threading.Lock()

    def enqueue(self, *, job_id: str, priority: int) -> None:
        """Make a pending job visible to workers."""

        try:
            queued = self.jobs.mark_queued(job_id=job_id, priority=priority)
        except SQLAlchemyError as error:
            raise EnqueueFailure(f"Failed to enqueue job {job_id}: {error}") from error
        if not queued:
            raise EnqueueFailure(f"Failed to enqueue job {job_id}: job is not pending")
        logger.info("Enqueued job %s with priority %d", job_id, priority)

    def dispatch(self, *, worker_id: str) -> JobView | None:
        """Lease the next job, or ``None`` when capped, throttled or idle."""

        with self._dispatch_lock:
            if self.jobs.count_by_status(status=JobStatus.ACTIVE) >= self.concurrency:
                return None
            if not self.limiter.try_acquire():
                return None
            job = self.jobs.claim_next_queued_job(
                worker_id=worker_id,
                lease_seconds=self.settings.lock_duration_seconds,
            )
            if job is None:
                self.limiter.release()
                return None
        logger.info(
            "Dispatched job %s to %s (priority %d, attempt %d)",
            job.job_id,
            worker_id,
            job.priority,
            job.attempt,
        )
        return job

    def sweep_stalled(self, *, now: datetime | None = None) -> list[StalledJob]:
        """Requeue or fail active jobs that stopped heartbeating."""

        current = now or utc_now()
        heartbeat_before = current - timedelta(seconds=self.settings.stalled_interval_seconds)
        swept: list[StalledJob] = []
        for job in self.jobs.list_stalled_jobs(heartbeat_before=heartbeat_before, now=current):
            if job.stalled_count < self.settings.max_stalled_count:
                requeued = self.jobs.requeue_stalled_job(
                    job_id=job.job_id,
                    worker_id=job.worker_id,
                    stalled_count=job.stalled_count,
                )
                if not requeued:
                    continue
                logger.warning(
                    "Job %s stalled on %s, moved back to queue (stall %d of %d)",
                    job.job_id,
                    job.worker_id,
                    job.stalled_count + 1,
                    self.settings.max_stalled_count,
                )
                swept.append(_stalled(job, requeued=True))
                continue

            outcome = self.settlement.fail(
                job,
                StallTimeout("job stalled more than allowable limit"),
            )
            logger.warning(
                "Job %s stalled more than %d time(s), failed (%s)",
                job.job_id,
                self.settings.max_stalled_count,
                outcome.refund_status.value,
            )
            swept.append(_stalled(job, requeued=False))
        return swept

    def waiting_count(self) -> int:
        return self.jobs.count_by_status(status=JobStatus.QUEUED)

    def active_count(self) -> int:
        return self.jobs.count_by_status(status=JobStatus.ACTIVE)

    def queue_position(self, *, job_id: str) -> int | None:
        return self.jobs.queue_position(job_id=job_id)


def _stalled(job: JobView, *, requeued: bool) -> StalledJob:
    return StalledJob(
        job_id=job.job_id,
        owner_id=job.owner_id,
        cost=job.cost,
        worker_id=job.worker_id,
        stalled_count=job.stalled_count + 1,
        requeued=requeued,
    )
