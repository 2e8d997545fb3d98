"""Controllers for genqueue CLI commands."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

from genqueue.config import Settings
from genqueue.errors import DuplicateSettlement, GenqueueError, InsufficientBalanceError
from genqueue.scheduler.models import JobStatus
from genqueue.services import open_services
from genqueue.storage.alembic_runner import current_revision, upgrade_head


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker pool execution."""

    db_path: Path | None
    once: bool
    max_jobs: int | None
    concurrency: int | None


@dataclass(slots=True)
class SubmitJobCommand:
    """CLI input for job submission on behalf of an owner."""

    db_path: Path | None
    owner_id: str
    payload_json: str
    job_id: str | None


@dataclass(slots=True)
class JobLookupCommand:
    """CLI input for single-job operations."""

    db_path: Path | None
    job_id: str
    owner_id: str | None = None


@dataclass(slots=True)
class ListJobsCommand:
    """CLI input for job listing."""

    db_path: Path | None
    owner_id: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class TopUpCommand:
    """CLI input for crediting an account."""

    db_path: Path | None
    owner_id: str
    amount: int
    reason: str


@dataclass(slots=True)
class LedgerQueryCommand:
    """CLI input for balance and history."""

    db_path: Path | None
    owner_id: str
    limit: int = 20


class GenqueueCliController:
    """Coordinates admission, worker, settlement and ledger CLI operations."""

    def upgrade_db(self, db_path: Path | None) -> list[str]:
        settings = Settings.from_env(db_path=db_path)
        upgrade_head(settings.db_path)
        revision = current_revision(settings.db_path)
        return [f"Database upgraded: {settings.db_path} (revision {revision})"]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = _settings(command.db_path)
        with open_services(settings) as services:
            pool = services.build_pool(concurrency=command.concurrency)
            summary = pool.run(max_jobs=command.max_jobs, exit_when_idle=command.once)

        lines = [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} stalled_recovered={summary.stalled_recovered} "
            f"idle_polls={summary.idle_polls}",
        ]
        if summary.remaining_job_ids:
            lines.append(f"Still active: {', '.join(summary.remaining_job_ids)}")
        return lines

    def submit(self, command: SubmitJobCommand) -> list[str]:
        settings = _settings(command.db_path)
        try:
            payload = json.loads(command.payload_json)
        except json.JSONDecodeError as error:
            return [f"Invalid payload JSON: {error}"]
        with open_services(settings) as services:
            try:
                receipt = services.admission.submit(
                    owner_id=command.owner_id,
                    payload=payload,
                    job_id=command.job_id,
                )
            except InsufficientBalanceError as error:
                return [
                    "Rejected: insufficient balance "
                    f"(required={error.required} current={error.current})",
                ]
            except GenqueueError as error:
                return [f"Rejected: {error}"]
        return [
            "Job submitted: "
            f"job_id={receipt.job_id} status={receipt.status.value} "
            f"cost={receipt.cost} balance={receipt.balance}",
        ]

    def status(self, command: JobLookupCommand) -> list[str]:
        settings = _settings(command.db_path)
        with open_services(settings) as services:
            job = services.jobs.get_job(job_id=command.job_id, owner_id=command.owner_id)
            if job is None:
                return [f"Job not found: {command.job_id}"]
            document = services.status.get_status(job_id=job.job_id, owner_id=job.owner_id)

        lines = [
            f"Job: {document.job_id}",
            f"Status: {document.status.value}",
            f"Created: {document.created_at.isoformat()}",
            f"Started: {document.started_at.isoformat() if document.started_at else '-'}",
            f"Completed: {document.completed_at.isoformat() if document.completed_at else '-'}",
        ]
        if document.wait_estimate is not None:
            estimate = document.wait_estimate
            lines.append(
                f"Queue: position={estimate.position} queue_length={estimate.queue_length} "
                f"active={estimate.active_jobs} eta={estimate.estimated_minutes}m",
            )
        if document.progress is not None:
            lines.append(f"Progress: {document.progress}%")
        if document.result_ref is not None:
            lines.append(f"Result: {document.result_ref}")
        if document.error is not None:
            lines.append(f"Error: {document.error}")
        return lines

    def list_jobs(self, command: ListJobsCommand) -> list[str]:
        settings = _settings(command.db_path)
        status_filter = _parse_status(command.status)
        with open_services(settings) as services:
            jobs = services.jobs.list_jobs(
                owner_id=command.owner_id,
                status=status_filter,
                limit=command.limit,
            )

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} owner={job.owner_id} status={job.status.value} "
                f"cost={job.cost} priority={job.priority} attempt={job.attempt} "
                f"stalled={job.stalled_count} created_at={job.created_at.isoformat()}",
            )
        return lines

    def inspect(self, command: JobLookupCommand) -> list[str]:
        settings = _settings(command.db_path)
        with open_services(settings) as services:
            details = services.jobs.get_job_details(job_id=command.job_id)
            entries = services.ledger.entries_for_job(job_id=command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Owner: {job.owner_id}",
            f"Status: {job.status.value}",
            f"Cost: {job.cost}",
            f"Attempt: {job.attempt} stalled={job.stalled_count} "
            f"duplicate_settlements={job.duplicate_settlements}",
            f"Worker: {job.worker_id or '-'}",
            f"Refunded: {job.refunded_at.isoformat() if job.refunded_at else '-'}",
            f"Result: {job.result_ref or '-'}",
            f"Error: {job.error or '-'}",
            f"Ledger entries: {len(entries)}",
        ]
        for entry in entries:
            lines.append(
                f"  #{entry.entry_id} {entry.kind.value} {entry.delta:+d} "
                f"balance={entry.balance_before}->{entry.balance_after}",
            )
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def reconcile(self, command: JobLookupCommand) -> list[str]:
        settings = _settings(command.db_path)
        with open_services(settings) as services:
            try:
                result = services.settlement.reconcile(job_id=command.job_id)
            except DuplicateSettlement as error:
                return [f"Nothing to reconcile: {error}"]
            except GenqueueError as error:
                return [f"Reconcile failed: {error}"]
        if not result.success:
            return [f"Reconcile skipped: {result.error}"]
        return [
            f"Refunded job {command.job_id}: entry_id={result.entry_id} "
            f"balance={result.new_balance}",
        ]

    def sweep(self, db_path: Path | None) -> list[str]:
        settings = _settings(db_path)
        with open_services(settings) as services:
            swept = services.broker.sweep_stalled()

        lines = [f"Stalled jobs: {len(swept)}"]
        for item in swept:
            action = "requeued" if item.requeued else "failed"
            lines.append(
                f"  {item.job_id} owner={item.owner_id} worker={item.worker_id or '-'} "
                f"stalled={item.stalled_count} {action}",
            )
        return lines

    def top_up(self, command: TopUpCommand) -> list[str]:
        settings = _settings(command.db_path)
        with open_services(settings) as services:
            posting = services.ledger.top_up(
                owner_id=command.owner_id,
                amount=command.amount,
                reason=command.reason,
            )
        return [
            f"Credited {command.amount} to {command.owner_id}: "
            f"balance={posting.balance_after} entry_id={posting.entry_id}",
        ]

    def balance(self, command: LedgerQueryCommand) -> list[str]:
        settings = _settings(command.db_path)
        with open_services(settings) as services:
            balance = services.ledger.get_balance(owner_id=command.owner_id)
        return [f"Balance for {command.owner_id}: {balance}"]

    def history(self, command: LedgerQueryCommand) -> list[str]:
        settings = _settings(command.db_path)
        with open_services(settings) as services:
            entries = services.ledger.list_entries(owner_id=command.owner_id, limit=command.limit)

        lines = [f"Ledger entries: {len(entries)}"]
        for entry in entries:
            lines.append(
                f"  #{entry.entry_id} {entry.created_at.isoformat()} {entry.kind.value} "
                f"{entry.delta:+d} balance={entry.balance_after} job={entry.job_id or '-'} "
                f"{entry.reason}",
            )
        return lines


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    normalized = value.strip().lower()
    for status in JobStatus:
        if status.value == normalized:
            return status
    raise ValueError(f"Unsupported status filter: {value}")
