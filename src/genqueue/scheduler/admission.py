"""Admission: validate, price, reserve credits, persist and enqueue."""

from __future__ import annotations

import logging
from datetime import timedelta
from uuid import uuid4

from genqueue.config import AdmissionSettings, LedgerSettings
from genqueue.errors import (
    AdmissionLimitError,
    EnqueueFailure,
    LedgerInfrastructureFailure,
    ValidationError,
)
from genqueue.ledger.repository import LedgerRepository
from genqueue.scheduler.broker import JobBroker
from genqueue.scheduler.models import AdmissionReceipt, JobCreate, JobStatus
from genqueue.scheduler.payload import (
    compute_cost,
    is_utf8_text,
    priority_for_cost,
    validate_payload,
)
from genqueue.scheduler.repository import JobRepository
from genqueue.storage.common import utc_now

logger = logging.getLogger(__name__)

MAX_JOB_ID_LENGTH = 128


class AdmissionController:
    """Turns a client request into a paid, queued job or a clean refusal.

    Once the reservation succeeds, every later failure on this path is
    compensated with a refund before the error leaves ``submit``.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        ledger: LedgerRepository,
        jobs: JobRepository,
        broker: JobBroker,
        ledger_settings: LedgerSettings,
        admission_settings: AdmissionSettings,
    ) -> None:
        self.ledger = ledger
        self.jobs = jobs
        self.broker = broker
        self.ledger_settings = ledger_settings
        self.admission_settings = admission_settings

    def submit(
        self,
        *,
        owner_id: str,
        payload: object,
        job_id: str | None = None,
    ) -> AdmissionReceipt:
        request = validate_payload(payload)
        resolved_job_id = _resolve_job_id(job_id)

        since = utc_now() - timedelta(seconds=self.admission_settings.active_job_window_seconds)
        active = self.jobs.count_recent_non_terminal(owner_id=owner_id, since=since)
        if active >= self.admission_settings.max_active_jobs_per_owner:
            raise AdmissionLimitError(
                active=active,
                max_allowed=self.admission_settings.max_active_jobs_per_owner,
            )

        cost = compute_cost(request, credits_per_minute=self.ledger_settings.credits_per_minute)
        posting = self.ledger.reserve(
            owner_id=owner_id,
            amount=cost,
            reason=f"Generation: {request.minutes} min {request.genre}",
            job_id=resolved_job_id,
            metadata={
                "minutes": request.minutes,
                "genre": request.genre,
                "language": request.language,
                "credits_per_minute": self.ledger_settings.credits_per_minute,
            },
        )

        try:
            self.jobs.create_job(
                JobCreate(
                    job_id=resolved_job_id,
                    owner_id=owner_id,
                    payload=request.to_payload(),
                    cost=cost,
                ),
            )
        except Exception as error:
            logger.exception("Failed to create job %s for %s", resolved_job_id, owner_id)
            self._refund_unpersisted(owner_id=owner_id, job_id=resolved_job_id, cost=cost)
            raise EnqueueFailure(f"Failed to create job: {error}") from error

        try:
            self.broker.enqueue(job_id=resolved_job_id, priority=priority_for_cost(cost))
        except Exception as error:
            logger.error("Failed to enqueue job %s: %s", resolved_job_id, error)
            self._refund_unqueued(owner_id=owner_id, job_id=resolved_job_id, cost=cost, error=error)
            if isinstance(error, EnqueueFailure):
                raise
            raise EnqueueFailure(f"Failed to enqueue job {resolved_job_id}: {error}") from error

        logger.info(
            "Admitted job %s for %s: %d credits reserved, balance %d",
            resolved_job_id,
            owner_id,
            cost,
            posting.balance_after,
        )
        return AdmissionReceipt(
            job_id=resolved_job_id,
            status=JobStatus.QUEUED,
            cost=cost,
            balance=posting.balance_after,
        )

    def _refund_unpersisted(self, *, owner_id: str, job_id: str, cost: int) -> None:
        try:
            self.ledger.refund(
                owner_id=owner_id,
                amount=cost,
                reason="Job creation failed - automatic refund",
                job_id=job_id,
            )
        except LedgerInfrastructureFailure:
            logger.critical(
                "Compensating refund of %d credits to %s for job %s failed, manual "
                "reconciliation required",
                cost,
                owner_id,
                job_id,
                exc_info=True,
            )
            raise

    def _refund_unqueued(
        self,
        *,
        owner_id: str,
        job_id: str,
        cost: int,
        error: Exception,
    ) -> None:
        try:
            result = self.jobs.refund_atomic(
                job_id=job_id,
                owner_id=owner_id,
                amount=cost,
                error_message=f"Failed to queue job: {error}",
            )
        except LedgerInfrastructureFailure:
            logger.critical(
                "Compensating refund of %d credits to %s for job %s failed, manual "
                "reconciliation required",
                cost,
                owner_id,
                job_id,
                exc_info=True,
            )
            raise
        if not result.success:
            logger.warning("Compensating refund for job %s skipped: %s", job_id, result.error)


def _resolve_job_id(job_id: str | None) -> str:
    if job_id is None:
        return str(uuid4())
    candidate = job_id.strip() if isinstance(job_id, str) else ""
    if not candidate or len(candidate) > MAX_JOB_ID_LENGTH or not is_utf8_text(candidate):
        raise ValidationError(
            f"job_id must be a non-empty string of at most {MAX_JOB_ID_LENGTH} characters",
        )
    return candidate
