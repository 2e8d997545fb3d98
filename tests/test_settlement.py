from __future__ import annotations

import allure
import pytest

from genqueue.errors import (
    DuplicateSettlement,
    EngineFailure,
    LedgerInfrastructureFailure,
    NotFoundError,
)
from genqueue.ledger.models import LedgerEntryKind
from genqueue.scheduler.models import JobCreate, JobStatus, JobView, RefundStatus
from genqueue.scheduler.settlement import SettlementFailed, SettlementSucceeded
from genqueue.services import Services

pytestmark = [
    allure.epic("Settlement"),
    allure.feature("Exactly-Once Charge or Refund"),
]


def _dispatched_job(services: Services, *, job_id: str = "job-1") -> JobView:
    services.ledger.top_up(owner_id="alice", amount=100, reason="purchase")
    services.admission.submit(
        owner_id="alice",
        payload={
            "language": "en-US",
            "genre": "romance",
            "minutes": 3,
            "prompt": "Two strangers share an umbrella.",
        },
        job_id=job_id,
    )
    job = services.broker.dispatch(worker_id="worker-1")
    assert job is not None
    return job


def test_engine_failure_refunds_reservation(services: Services) -> None:
    job = _dispatched_job(services)
    assert services.ledger.get_balance(owner_id="alice") == 70

    outcome = services.settlement.fail(job, EngineFailure("model overloaded"))

    assert isinstance(outcome, SettlementFailed)
    assert outcome.refund_status == RefundStatus.REFUNDED
    assert outcome.new_balance == 100
    assert services.ledger.get_balance(owner_id="alice") == 100
    stored = services.jobs.get_job(job_id=job.job_id)
    assert stored.status == JobStatus.FAILED
    assert stored.error == "model overloaded"
    assert [entry.kind for entry in services.ledger.entries_for_job(job_id=job.job_id)] == [
        LedgerEntryKind.DEBIT,
        LedgerEntryKind.REFUND,
    ]


def test_success_keeps_charge_and_second_completion_is_duplicate(services: Services) -> None:
    job = _dispatched_job(services)

    first = services.settlement.succeed(job, result_ref="file:///story.md", metrics={"words": 9})
    second = services.settlement.succeed(job, result_ref="file:///other.md")

    assert first == SettlementSucceeded(job_id="job-1", result_ref="file:///story.md")
    assert isinstance(second, SettlementSucceeded)
    assert second.duplicate
    assert second.result_ref == "file:///story.md"
    assert services.ledger.get_balance(owner_id="alice") == 70
    assert [entry.kind for entry in services.ledger.entries_for_job(job_id="job-1")] == [
        LedgerEntryKind.DEBIT,
    ]


def test_failure_after_success_does_not_refund(services: Services) -> None:
    job = _dispatched_job(services)
    services.settlement.succeed(job, result_ref="file:///story.md")

    outcome = services.settlement.fail(job, "late stall detection")

    assert outcome.refund_status == RefundStatus.ALREADY_SETTLED
    assert outcome.error == "Job already completed"
    assert services.ledger.get_balance(owner_id="alice") == 70
    assert services.jobs.get_job(job_id="job-1").status == JobStatus.COMPLETED


def test_success_after_refund_keeps_refund(services: Services) -> None:
    job = _dispatched_job(services)
    services.settlement.fail(job, "stalled")

    outcome = services.settlement.succeed(job, result_ref="file:///late.md")

    assert isinstance(outcome, SettlementFailed)
    assert outcome.refund_status == RefundStatus.ALREADY_SETTLED
    assert services.ledger.get_balance(owner_id="alice") == 100
    assert services.jobs.get_job(job_id="job-1").result_ref is None


def test_zero_cost_job_fails_without_ledger_activity(services: Services) -> None:
    services.ledger.open_account(owner_id="alice")
    job = services.jobs.create_job(
        JobCreate(job_id="free-1", owner_id="alice", payload={"minutes": 1}, cost=0),
    )

    outcome = services.settlement.fail(job, "engine unavailable")

    assert outcome.refund_status == RefundStatus.NO_COST
    assert services.jobs.get_job(job_id="free-1").status == JobStatus.FAILED
    assert services.ledger.entries_for_job(job_id="free-1") == []


def test_ledger_outage_marks_failed_and_reconcile_refunds_later(
    services: Services,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    job = _dispatched_job(services)

    def _ledger_down(**_: object) -> None:
        raise LedgerInfrastructureFailure("database is locked")

    with monkeypatch.context() as patch:
        patch.setattr(services.jobs, "refund_atomic", _ledger_down)
        outcome = services.settlement.fail(job, EngineFailure("timeout"))

    assert outcome.refund_status == RefundStatus.NOT_REFUNDED_INFRASTRUCTURE
    stored = services.jobs.get_job(job_id="job-1")
    assert stored.status == JobStatus.FAILED
    assert stored.refunded_at is None
    assert services.ledger.get_balance(owner_id="alice") == 70

    result = services.settlement.reconcile(job_id="job-1")

    assert result.success
    assert result.new_balance == 100
    assert services.ledger.get_balance(owner_id="alice") == 100
    events = services.jobs.get_job_details(job_id="job-1").events
    assert [event.event_type for event in events][-3:] == [
        "failed_without_refund",
        "refunded",
        "reconciled",
    ]

    with pytest.raises(DuplicateSettlement):
        services.settlement.reconcile(job_id="job-1")


def test_reconcile_rejects_unknown_and_completed_jobs(services: Services) -> None:
    job = _dispatched_job(services)
    services.settlement.succeed(job, result_ref="file:///story.md")

    with pytest.raises(NotFoundError):
        services.settlement.reconcile(job_id="missing")
    with pytest.raises(DuplicateSettlement, match="status=completed"):
        services.settlement.reconcile(job_id="job-1")
