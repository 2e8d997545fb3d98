"""Exactly-once settlement of finished jobs."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from genqueue.errors import DuplicateSettlement, LedgerInfrastructureFailure, NotFoundError
from genqueue.ledger.repository import LedgerRepository
from genqueue.scheduler.models import JobStatus, JobView, RefundResult, RefundStatus
from genqueue.scheduler.repository import JobRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class SettlementSucceeded:
    """The job is completed and its reservation became the final charge."""

    job_id: str
    result_ref: str | None
    duplicate: bool = False


@dataclass(slots=True, frozen=True)
class SettlementFailed:
    """The job is failed; ``refund_status`` says what happened to the credits."""

    job_id: str
    error: str
    refund_status: RefundStatus
    new_balance: int | None = None


SettlementOutcome = SettlementSucceeded | SettlementFailed


class SettlementService:
    """Drive jobs into a terminal state through the atomic store procedures."""

    def __init__(self, *, jobs: JobRepository, ledger: LedgerRepository) -> None:
        self.jobs = jobs
        self.ledger = ledger

    def succeed(
        self,
        job: JobView,
        *,
        result_ref: str,
        metrics: dict[str, object] | None = None,
    ) -> SettlementOutcome:
        """Complete the job; a job that already failed keeps its refund."""

        result = self.jobs.complete_atomic(
            job_id=job.job_id,
            result_ref=result_ref,
            metrics=metrics,
        )
        if result.success:
            charge = self.ledger.settle_success(job_id=job.job_id)
            logger.info(
                "Job %s completed, charged %d credits (entry %s)",
                job.job_id,
                job.cost,
                charge.entry_id if charge is not None else "-",
            )
            return SettlementSucceeded(job_id=job.job_id, result_ref=result_ref)
        if result.was_duplicate:
            current = self.jobs.get_job(job_id=job.job_id)
            return SettlementSucceeded(
                job_id=job.job_id,
                result_ref=current.result_ref if current is not None else None,
                duplicate=True,
            )
        if result.was_refunded:
            logger.warning(
                "Completion of job %s arrived after it was failed and refunded",
                job.job_id,
            )
            return SettlementFailed(
                job_id=job.job_id,
                error=result.error or "Job already failed",
                refund_status=RefundStatus.ALREADY_SETTLED,
            )
        # Job was never dispatched: nothing to complete, release its credits.
        logger.warning("Completion of job %s rejected: %s", job.job_id, result.error)
        return self.fail(job, result.error or "Job cannot be completed")

    def fail(self, job: JobView, error: BaseException | str) -> SettlementFailed:
        """Fail the job and refund its reservation at most once."""

        message = _error_message(error)
        if job.cost <= 0:
            self.jobs.mark_failed_without_refund(job_id=job.job_id, error_message=message)
            return SettlementFailed(
                job_id=job.job_id,
                error=message,
                refund_status=RefundStatus.NO_COST,
            )

        try:
            result = self.jobs.refund_atomic(
                job_id=job.job_id,
                owner_id=job.owner_id,
                amount=job.cost,
                error_message=message,
            )
        except LedgerInfrastructureFailure as failure:
            self._fail_without_refund(job, message=message, failure=failure)
            return SettlementFailed(
                job_id=job.job_id,
                error=message,
                refund_status=RefundStatus.NOT_REFUNDED_INFRASTRUCTURE,
            )

        if result.success:
            logger.info(
                "Job %s failed, refunded %d credits to %s (balance %s): %s",
                job.job_id,
                job.cost,
                job.owner_id,
                result.new_balance,
                message,
            )
            return SettlementFailed(
                job_id=job.job_id,
                error=message,
                refund_status=RefundStatus.REFUNDED,
                new_balance=result.new_balance,
            )
        return SettlementFailed(
            job_id=job.job_id,
            error=result.error or message,
            refund_status=RefundStatus.ALREADY_SETTLED,
        )

    def reconcile(self, *, job_id: str) -> RefundResult:
        """Refund a job that was failed while the ledger was unavailable."""

        job = self.jobs.get_job(job_id=job_id)
        if job is None:
            raise NotFoundError(f"Job not found: {job_id}")
        if job.status != JobStatus.FAILED or job.refunded_at is not None or job.cost <= 0:
            raise DuplicateSettlement(
                f"Job {job_id} needs no reconciliation "
                f"(status={job.status.value}, refunded={job.refunded_at is not None})",
            )
        result = self.jobs.refund_atomic(
            job_id=job.job_id,
            owner_id=job.owner_id,
            amount=job.cost,
            error_message=job.error or "Reconciled refund",
        )
        if result.success:
            self.jobs.add_job_event(
                job_id=job_id,
                event_type="reconciled",
                details={"amount": job.cost, "entry_id": result.entry_id},
            )
            logger.warning("Reconciled refund of %d credits for job %s", job.cost, job_id)
        return result

    def _fail_without_refund(
        self,
        job: JobView,
        *,
        message: str,
        failure: LedgerInfrastructureFailure,
    ) -> None:
        logger.critical(
            "Refund of %d credits for job %s (owner %s) failed, manual reconciliation "
            "required: %s",
            job.cost,
            job.job_id,
            job.owner_id,
            failure,
        )
        try:
            self.jobs.mark_failed_without_refund(job_id=job.job_id, error_message=message)
        except SQLAlchemyError:
            logger.critical(
                "Could not mark job %s failed; it stays non-terminal until the stall sweep",
                job.job_id,
                exc_info=True,
            )


def _error_message(error: BaseException | str) -> str:
    if isinstance(error, str):
        return error or "Generation failed"
    text = str(error).strip()
    return text or error.__class__.__name__
