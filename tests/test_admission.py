from __future__ import annotations

from datetime import timedelta

import allure
import pytest
from sqlalchemy import update as sa_update
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, col

from genqueue.errors import (
    AdmissionLimitError,
    EnqueueFailure,
    InsufficientBalanceError,
    ValidationError,
)
from genqueue.ledger.models import LedgerEntryKind
from genqueue.scheduler.models import JobStatus
from genqueue.services import Services
from genqueue.storage.common import to_db_datetime, utc_now
from genqueue.storage.sqlmodel_models import Job

pytestmark = [
    allure.epic("Admission"),
    allure.feature("Credit Reservation & Backpressure"),
]


def _payload(minutes: int = 3) -> dict[str, object]:
    return {
        "language": "en-US",
        "genre": "sci_fi",
        "minutes": minutes,
        "prompt": "The last signal from Europa.",
    }


def test_submit_reserves_credits_and_queues_job(services: Services) -> None:
    services.ledger.top_up(owner_id="alice", amount=100, reason="purchase")

    receipt = services.admission.submit(owner_id="alice", payload=_payload())

    assert receipt.status == JobStatus.QUEUED
    assert receipt.cost == 30
    assert receipt.balance == 70
    job = services.jobs.get_job(job_id=receipt.job_id)
    assert job.status == JobStatus.QUEUED
    assert job.priority == 30
    assert job.payload == _payload()
    assert services.ledger.get_balance(owner_id="alice") == 70


def test_insufficient_balance_creates_nothing(services: Services) -> None:
    services.ledger.top_up(owner_id="bob", amount=20, reason="purchase")

    with pytest.raises(InsufficientBalanceError) as error_info:
        services.admission.submit(owner_id="bob", payload=_payload())

    assert (error_info.value.required, error_info.value.current) == (30, 20)
    assert services.ledger.get_balance(owner_id="bob") == 20
    assert services.jobs.list_jobs(owner_id="bob") == []


def test_invalid_payload_has_no_side_effects(services: Services) -> None:
    services.ledger.top_up(owner_id="alice", amount=100, reason="purchase")

    with pytest.raises(ValidationError):
        services.admission.submit(owner_id="alice", payload=_payload(minutes=0))

    assert services.ledger.get_balance(owner_id="alice") == 100
    assert services.jobs.list_jobs(owner_id="alice") == []


def test_sixth_concurrent_job_is_refused_without_charge(services: Services) -> None:
    services.ledger.top_up(owner_id="alice", amount=1_000, reason="purchase")
    for _ in range(5):
        services.admission.submit(owner_id="alice", payload=_payload())

    with pytest.raises(AdmissionLimitError) as error_info:
        services.admission.submit(owner_id="alice", payload=_payload())

    assert error_info.value.active == 5
    assert error_info.value.max_allowed == 5
    assert services.ledger.get_balance(owner_id="alice") == 850
    assert len(services.ledger.list_entries(owner_id="alice")) == 6


def test_finished_job_frees_admission_slot(services: Services) -> None:
    services.ledger.top_up(owner_id="alice", amount=1_000, reason="purchase")
    receipts = [services.admission.submit(owner_id="alice", payload=_payload()) for _ in range(5)]
    job = services.jobs.get_job(job_id=receipts[0].job_id)
    services.settlement.fail(job, "cancelled by engine")

    receipt = services.admission.submit(owner_id="alice", payload=_payload())

    assert receipt.status == JobStatus.QUEUED


def test_limit_is_per_owner(services: Services) -> None:
    services.ledger.top_up(owner_id="alice", amount=1_000, reason="purchase")
    services.ledger.top_up(owner_id="bob", amount=100, reason="purchase")
    for _ in range(5):
        services.admission.submit(owner_id="alice", payload=_payload())

    receipt = services.admission.submit(owner_id="bob", payload=_payload())

    assert receipt.balance == 70


def test_caller_job_id_is_used_and_cannot_be_reused(services: Services) -> None:
    services.ledger.top_up(owner_id="alice", amount=100, reason="purchase")

    receipt = services.admission.submit(owner_id="alice", payload=_payload(), job_id=" story-1 ")
    with pytest.raises(ValidationError, match="already in use"):
        services.admission.submit(owner_id="alice", payload=_payload(), job_id="story-1")

    assert receipt.job_id == "story-1"
    assert services.ledger.get_balance(owner_id="alice") == 70


@pytest.mark.parametrize("job_id", ["", "   ", "x" * 129, "story-\ud800"])
def test_malformed_job_id_is_rejected(services: Services, job_id: str) -> None:
    services.ledger.top_up(owner_id="alice", amount=100, reason="purchase")

    with pytest.raises(ValidationError, match="job_id"):
        services.admission.submit(owner_id="alice", payload=_payload(), job_id=job_id)

    assert services.ledger.get_balance(owner_id="alice") == 100


def test_enqueue_failure_refunds_and_fails_job(
    services: Services,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    services.ledger.top_up(owner_id="alice", amount=100, reason="purchase")

    def _broker_down(**_: object) -> None:
        raise EnqueueFailure("broker unavailable")

    monkeypatch.setattr(services.broker, "enqueue", _broker_down)

    with pytest.raises(EnqueueFailure):
        services.admission.submit(owner_id="alice", payload=_payload(), job_id="job-1")

    assert services.ledger.get_balance(owner_id="alice") == 100
    job = services.jobs.get_job(job_id="job-1")
    assert job.status == JobStatus.FAILED
    assert job.refunded_at is not None


def test_job_insert_failure_refunds_reservation(
    services: Services,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    services.ledger.top_up(owner_id="alice", amount=100, reason="purchase")

    def _insert_fails(_: object) -> None:
        raise OperationalError("INSERT INTO jobs", {}, Exception("disk I/O error"))

    monkeypatch.setattr(services.jobs, "create_job", _insert_fails)

    with pytest.raises(EnqueueFailure, match="Failed to create job"):
        services.admission.submit(owner_id="alice", payload=_payload(), job_id="job-1")

    assert services.ledger.get_balance(owner_id="alice") == 100
    assert [entry.kind for entry in services.ledger.entries_for_job(job_id="job-1")] == [
        LedgerEntryKind.DEBIT,
        LedgerEntryKind.REFUND,
    ]


def test_jobs_older_than_window_do_not_count_toward_limit(services: Services) -> None:
    services.ledger.top_up(owner_id="alice", amount=1_000, reason="purchase")
    receipts = [services.admission.submit(owner_id="alice", payload=_payload()) for _ in range(5)]
    window = services.settings.admission.active_job_window_seconds
    with Session(services.jobs.engine) as session:
        session.exec(
            sa_update(Job)
            .where(col(Job.job_id).in_([receipt.job_id for receipt in receipts]))
            .values(created_at=to_db_datetime(utc_now() - timedelta(seconds=window + 60))),
        )
        session.commit()

    receipt = services.admission.submit(owner_id="alice", payload=_payload())

    assert receipt.status == JobStatus.QUEUED
    assert receipt.balance == 820
    assert len(services.jobs.list_jobs(owner_id="alice")) == 6


def test_prompt_with_lone_surrogate_is_rejected_before_charge(services: Services) -> None:
    services.ledger.top_up(owner_id="alice", amount=100, reason="purchase")
    payload = {**_payload(), "prompt": "story \ud800"}

    with pytest.raises(ValidationError, match="UTF-8"):
        services.admission.submit(owner_id="alice", payload=payload, job_id="j1")

    assert services.ledger.get_balance(owner_id="alice") == 100
    assert services.ledger.entries_for_job(job_id="j1") == []


def test_unexpected_insert_error_still_refunds(
    services: Services,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    services.ledger.top_up(owner_id="alice", amount=100, reason="purchase")

    def _insert_fails(_: object) -> None:
        raise UnicodeEncodeError("utf-8", "\ud800", 0, 1, "surrogates not allowed")

    monkeypatch.setattr(services.jobs, "create_job", _insert_fails)

    with pytest.raises(EnqueueFailure, match="Failed to create job"):
        services.admission.submit(owner_id="alice", payload=_payload(), job_id="job-1")

    assert services.ledger.get_balance(owner_id="alice") == 100
    assert [entry.kind for entry in services.ledger.entries_for_job(job_id="job-1")] == [
        LedgerEntryKind.DEBIT,
        LedgerEntryKind.REFUND,
    ]


def test_unexpected_enqueue_error_refunds_and_fails_job(
    services: Services,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    services.ledger.top_up(owner_id="alice", amount=100, reason="purchase")

    def _broker_crashes(**_: object) -> None:
        raise RuntimeError("lock table corrupted")

    monkeypatch.setattr(services.broker, "enqueue", _broker_crashes)

    with pytest.raises(EnqueueFailure, match="lock table corrupted"):
        services.admission.submit(owner_id="alice", payload=_payload(), job_id="job-1")

    assert services.ledger.get_balance(owner_id="alice") == 100
    assert services.jobs.get_job(job_id="job-1").status == JobStatus.FAILED
