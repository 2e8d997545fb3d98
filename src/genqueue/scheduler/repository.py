"""Persistent job store and settlement procedures."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from genqueue.errors import LedgerInfrastructureFailure
from genqueue.ledger.models import LedgerEntryKind
from genqueue.ledger.repository import credit_account
from genqueue.scheduler.models import (
    NON_TERMINAL_STATUSES,
    CompletionResult,
    JobCreate,
    JobDetails,
    JobEventView,
    JobStatus,
    JobView,
    RefundResult,
)
from genqueue.storage.alembic_runner import upgrade_head
from genqueue.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from genqueue.storage.sqlmodel_models import Job, JobEvent

logger = logging.getLogger(__name__)

_NON_TERMINAL_VALUES = tuple(status.value for status in NON_TERMINAL_STATUSES)
_COMPLETABLE_VALUES = (JobStatus.QUEUED.value, JobStatus.ACTIVE.value)
_REFUNDABLE_VALUES = (*_NON_TERMINAL_VALUES, JobStatus.FAILED.value)


class JobRepository:
    """Job store facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create_job(self, payload: JobCreate) -> JobView:
        """Insert a job in ``pending`` state."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = Job(
                job_id=payload.job_id,
                owner_id=payload.owner_id,
                status=JobStatus.PENDING.value,
                payload_json=json.dumps(payload.payload, ensure_ascii=False, sort_keys=True),
                cost=payload.cost,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            self._add_event(
                session=session,
                job_id=payload.job_id,
                event_type="created",
                status_from=None,
                status_to=JobStatus.PENDING,
                details={"cost": payload.cost},
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def mark_queued(self, *, job_id: str, priority: int) -> bool:
        """Move a pending job into the dispatch queue."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.PENDING.value,
                )
                .values(
                    status=JobStatus.QUEUED.value,
                    priority=priority,
                    queued_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="enqueued",
                status_from=JobStatus.PENDING,
                status_to=JobStatus.QUEUED,
                details={"priority": priority},
            )
            session.commit()
            return True

    def count_recent_non_terminal(self, *, owner_id: str, since: datetime) -> int:
        """Count the owner's pending/queued/active jobs created at or after ``since``."""

        with Session(self.engine) as session:
            return session.exec(
                select(func.count())
                .select_from(Job)
                .where(
                    col(Job.owner_id) == owner_id,
                    col(Job.status).in_(_NON_TERMINAL_VALUES),
                    col(Job.created_at) >= to_db_datetime(since),
                ),
            ).one()

    def claim_next_queued_job(self, *, worker_id: str, lease_seconds: int) -> JobView | None:
        """Atomically lease the highest-priority queued job."""

        while True:
            now = to_db_datetime(utc_now())
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(Job)
                    .where(Job.status == JobStatus.QUEUED.value)
                    .order_by(
                        col(Job.priority).desc(),
                        col(Job.queued_at).asc(),
                        col(Job.created_at).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(Job)
                    .where(
                        col(Job.job_id) == candidate.job_id,
                        col(Job.status) == JobStatus.QUEUED.value,
                    )
                    .values(
                        status=JobStatus.ACTIVE.value,
                        attempt=candidate.attempt + 1,
                        started_at=now,
                        heartbeat_at=now,
                        lease_expires_at=now + timedelta(seconds=lease_seconds),
                        progress=0,
                        worker_id=worker_id,
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                claimed = session.exec(
                    select(Job).where(Job.job_id == candidate.job_id),
                ).one()
                session.refresh(claimed)
                self._add_event(
                    session=session,
                    job_id=claimed.job_id,
                    event_type="claimed",
                    status_from=JobStatus.QUEUED,
                    status_to=JobStatus.ACTIVE,
                    details={"worker_id": worker_id, "attempt": claimed.attempt},
                )
                session.commit()
                return _to_job_view(claimed)

    def touch_job(
        self,
        *,
        job_id: str,
        worker_id: str,
        progress: int,
        lease_seconds: int,
    ) -> bool:
        """Record a heartbeat; ``False`` when the worker no longer holds the lease."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.worker_id) == worker_id,
                    col(Job.status) == JobStatus.ACTIVE.value,
                )
                .values(
                    progress=func.max(col(Job.progress), progress),
                    heartbeat_at=now,
                    lease_expires_at=now + timedelta(seconds=lease_seconds),
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def list_stalled_jobs(self, *, heartbeat_before: datetime, now: datetime) -> list[JobView]:
        """Active jobs whose heartbeat is too old or whose lease expired."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Job)
                .where(
                    Job.status == JobStatus.ACTIVE.value,
                    (col(Job.heartbeat_at) < to_db_datetime(heartbeat_before))
                    | (col(Job.lease_expires_at) < to_db_datetime(now)),
                )
                .order_by(col(Job.started_at).asc()),
            ).all()
        return [_to_job_view(row) for row in rows]

    def requeue_stalled_job(
        self,
        *,
        job_id: str,
        worker_id: str | None,
        stalled_count: int,
    ) -> bool:
        """Release a stalled lease back to the queue, once per observed stall."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.ACTIVE.value,
                    col(Job.worker_id) == worker_id,
                    col(Job.stalled_count) == stalled_count,
                )
                .values(
                    status=JobStatus.QUEUED.value,
                    stalled_count=stalled_count + 1,
                    worker_id=None,
                    heartbeat_at=None,
                    lease_expires_at=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="stalled",
                status_from=JobStatus.ACTIVE,
                status_to=JobStatus.QUEUED,
                details={"worker_id": worker_id, "stalled_count": stalled_count + 1},
            )
            session.commit()
            return True

    def complete_atomic(
        self,
        *,
        job_id: str,
        result_ref: str,
        metrics: dict[str, object] | None = None,
    ) -> CompletionResult:
        """Mark a dispatched job completed; first writer wins."""

        now = to_db_datetime(utc_now())
        try:
            with Session(self.engine) as session:
                previous = _read_status(session, job_id=job_id)
                if previous is None:
                    return CompletionResult(success=False, error="Job not found")

                result = session.exec(
                    sa_update(Job)
                    .where(
                        col(Job.job_id) == job_id,
                        col(Job.status).in_(_COMPLETABLE_VALUES),
                    )
                    .values(
                        status=JobStatus.COMPLETED.value,
                        completed_at=now,
                        progress=100,
                        result_ref=result_ref,
                        metrics_json=json.dumps(metrics, ensure_ascii=False, sort_keys=True)
                        if metrics
                        else None,
                        lease_expires_at=None,
                        updated_at=now,
                    ),
                )
                if result.rowcount == 1:
                    self._add_event(
                        session=session,
                        job_id=job_id,
                        event_type="completed",
                        status_from=previous,
                        status_to=JobStatus.COMPLETED,
                        details={"result_ref": result_ref},
                    )
                    session.commit()
                    return CompletionResult(success=True)

                if previous == JobStatus.COMPLETED:
                    outcome = CompletionResult(
                        success=False,
                        was_duplicate=True,
                        error="Job already completed",
                    )
                elif previous == JobStatus.FAILED:
                    outcome = CompletionResult(
                        success=False,
                        was_refunded=True,
                        error="Job already failed and refunded - cannot complete",
                    )
                else:
                    session.rollback()
                    return CompletionResult(
                        success=False,
                        error=f"Job cannot be completed from status={previous.value}",
                    )
                self._record_duplicate_settlement(
                    session=session,
                    job_id=job_id,
                    status=previous,
                    attempted="complete",
                )
                session.commit()
                return outcome
        except SQLAlchemyError as error:
            raise LedgerInfrastructureFailure(f"Completion failed for {job_id}: {error}") from error

    def refund_atomic(
        self,
        *,
        job_id: str,
        owner_id: str,
        amount: int,
        error_message: str,
    ) -> RefundResult:
        """Fail the job and credit its reservation back in one transaction."""

        now = to_db_datetime(utc_now())
        try:
            with Session(self.engine) as session:
                previous = _read_status(session, job_id=job_id, owner_id=owner_id)
                if previous is None:
                    return RefundResult(success=False, error="Job not found")

                result = session.exec(
                    sa_update(Job)
                    .where(
                        col(Job.job_id) == job_id,
                        col(Job.owner_id) == owner_id,
                        col(Job.status).in_(_REFUNDABLE_VALUES),
                        col(Job.refunded_at).is_(None),
                    )
                    .values(
                        status=JobStatus.FAILED.value,
                        error=error_message,
                        completed_at=func.coalesce(col(Job.completed_at), now),
                        refunded_at=now,
                        lease_expires_at=None,
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    error = (
                        "Job already completed"
                        if previous == JobStatus.COMPLETED
                        else "Job already failed and refunded"
                    )
                    self._record_duplicate_settlement(
                        session=session,
                        job_id=job_id,
                        status=previous,
                        attempted="refund",
                    )
                    session.commit()
                    return RefundResult(success=False, error=error)

                posting = credit_account(
                    session,
                    owner_id=owner_id,
                    amount=amount,
                    kind=LedgerEntryKind.REFUND,
                    reason="Generation failed - automatic refund",
                    job_id=job_id,
                    metadata={"error": error_message, "refund_amount": amount},
                    now=now,
                )
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="refunded",
                    status_from=previous,
                    status_to=JobStatus.FAILED,
                    details={
                        "amount": amount,
                        "entry_id": posting.entry_id,
                        "error": error_message,
                    },
                )
                session.commit()
                return RefundResult(
                    success=True,
                    new_balance=posting.balance_after,
                    entry_id=posting.entry_id,
                )
        except SQLAlchemyError as error:
            raise LedgerInfrastructureFailure(f"Refund failed for {job_id}: {error}") from error

    def mark_failed_without_refund(self, *, job_id: str, error_message: str) -> bool:
        """Fail a non-terminal job while leaving its reservation untouched."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            previous = _read_status(session, job_id=job_id)
            if previous is None:
                return False
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status).in_(_NON_TERMINAL_VALUES),
                )
                .values(
                    status=JobStatus.FAILED.value,
                    error=error_message,
                    completed_at=now,
                    lease_expires_at=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="failed_without_refund",
                status_from=previous,
                status_to=JobStatus.FAILED,
                details={"error": error_message},
            )
            session.commit()
            return True

    def get_job(self, *, job_id: str, owner_id: str | None = None) -> JobView | None:
        """Return one job, optionally scoped to its owner."""

        with Session(self.engine) as session:
            statement = select(Job).where(Job.job_id == job_id)
            if owner_id is not None:
                statement = statement.where(Job.owner_id == owner_id)
            row = session.exec(statement).one_or_none()
        return _to_job_view(row) if row is not None else None

    def list_jobs(
        self,
        *,
        owner_id: str | None = None,
        status: JobStatus | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, newest first."""

        with Session(self.engine) as session:
            statement = select(Job).order_by(col(Job.created_at).desc()).limit(limit)
            if owner_id is not None:
                statement = statement.where(Job.owner_id == owner_id)
            if status is not None:
                statement = statement.where(Job.status == status.value)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def get_job_details(self, *, job_id: str) -> JobDetails | None:
        """Return job details with event stream."""

        with Session(self.engine) as session:
            job = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
            if job is None:
                return None
            event_rows = session.exec(
                select(JobEvent)
                .where(JobEvent.job_id == job_id)
                .order_by(col(JobEvent.created_at).asc(), col(JobEvent.id).asc()),
            ).all()

        events: list[JobEventView] = []
        for row in event_rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                JobEventView(
                    event_id=row.id or 0,
                    job_id=row.job_id,
                    event_type=row.event_type,
                    status_from=JobStatus(row.status_from) if row.status_from is not None else None,
                    status_to=JobStatus(row.status_to) if row.status_to is not None else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return JobDetails(job=_to_job_view(job), events=events)

    def queue_position(self, *, job_id: str) -> int | None:
        """0-indexed rank of a queued job, ``None`` when it is not queued."""

        with Session(self.engine) as session:
            row = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
            if row is None or row.status != JobStatus.QUEUED.value or row.queued_at is None:
                return None
            return session.exec(
                select(func.count())
                .select_from(Job)
                .where(
                    col(Job.status) == JobStatus.QUEUED.value,
                    (col(Job.priority) > row.priority)
                    | (
                        (col(Job.priority) == row.priority)
                        & (col(Job.queued_at) < row.queued_at)
                    ),
                ),
            ).one()

    def count_by_status(self, *, status: JobStatus) -> int:
        with Session(self.engine) as session:
            return session.exec(
                select(func.count()).select_from(Job).where(col(Job.status) == status.value),
            ).one()

    def average_duration_seconds(self, *, sample_size: int = 50) -> float | None:
        """Mean run time of the most recently completed jobs."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Job.started_at, Job.completed_at)
                .where(
                    Job.status == JobStatus.COMPLETED.value,
                    col(Job.started_at).is_not(None),
                    col(Job.completed_at).is_not(None),
                )
                .order_by(col(Job.completed_at).desc())
                .limit(sample_size),
            ).all()
        durations = [
            (completed_at - started_at).total_seconds()
            for started_at, completed_at in rows
            if started_at is not None and completed_at is not None
        ]
        if not durations:
            return None
        return sum(durations) / len(durations)

    def add_job_event(
        self,
        *,
        job_id: str,
        event_type: str,
        details: dict[str, object],
        status_from: JobStatus | None = None,
        status_to: JobStatus | None = None,
    ) -> None:
        """Append an audit event outside of a state transition."""

        with Session(self.engine) as session:
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                details=details,
            )
            session.commit()

    def _record_duplicate_settlement(
        self,
        *,
        session: Session,
        job_id: str,
        status: JobStatus,
        attempted: str,
    ) -> None:
        session.exec(
            sa_update(Job)
            .where(col(Job.job_id) == job_id)
            .values(duplicate_settlements=col(Job.duplicate_settlements) + 1),
        )
        self._add_event(
            session=session,
            job_id=job_id,
            event_type="duplicate_settlement_ignored",
            status_from=status,
            status_to=status,
            details={"attempted": attempted},
        )
        logger.warning(
            "Ignored duplicate %s settlement for job %s (status=%s)",
            attempted,
            job_id,
            status.value,
        )

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            JobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _read_status(
    session: Session,
    *,
    job_id: str,
    owner_id: str | None = None,
) -> JobStatus | None:
    statement = select(Job.status).where(Job.job_id == job_id)
    if owner_id is not None:
        statement = statement.where(Job.owner_id == owner_id)
    value = session.exec(statement).one_or_none()
    return JobStatus(value) if value is not None else None


def _to_job_view(row: Job) -> JobView:
    metrics = None
    if row.metrics_json:
        parsed = json.loads(row.metrics_json)
        if isinstance(parsed, dict):
            metrics = parsed
    return JobView(
        job_id=row.job_id,
        owner_id=row.owner_id,
        status=JobStatus(row.status),
        payload=json.loads(row.payload_json),
        cost=row.cost,
        priority=row.priority,
        attempt=row.attempt,
        stalled_count=row.stalled_count,
        duplicate_settlements=row.duplicate_settlements,
        progress=row.progress,
        worker_id=row.worker_id,
        queued_at=optional_utc(row.queued_at),
        started_at=optional_utc(row.started_at),
        heartbeat_at=optional_utc(row.heartbeat_at),
        lease_expires_at=optional_utc(row.lease_expires_at),
        completed_at=optional_utc(row.completed_at),
        refunded_at=optional_utc(row.refunded_at),
        result_ref=row.result_ref,
        metrics=metrics,
        error=row.error,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
