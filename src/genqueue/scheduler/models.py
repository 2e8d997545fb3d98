"""Domain models for job admission, dispatch and settlement."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


NON_TERMINAL_STATUSES = frozenset({JobStatus.PENDING, JobStatus.QUEUED, JobStatus.ACTIVE})


class RefundStatus(str, Enum):
    """What happened to the reservation of a failed job."""

    REFUNDED = "refunded"
    ALREADY_SETTLED = "already_settled"
    NOT_REFUNDED_INFRASTRUCTURE = "not_refunded_infrastructure"
    NO_COST = "no_cost"


@dataclass(slots=True)
class JobCreate:
    """Input for inserting a pending job."""

    job_id: str
    owner_id: str
    payload: dict[str, Any]
    cost: int


@dataclass(slots=True)
class JobView:
    """Readable job view for workers, API and CLI."""

    job_id: str
    owner_id: str
    status: JobStatus
    payload: dict[str, Any]
    cost: int
    priority: int
    attempt: int
    stalled_count: int
    duplicate_settlements: int
    progress: int
    worker_id: str | None
    queued_at: datetime | None
    started_at: datetime | None
    heartbeat_at: datetime | None
    lease_expires_at: datetime | None
    completed_at: datetime | None
    refunded_at: datetime | None
    result_ref: str | None
    metrics: dict[str, Any] | None
    error: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job details with event stream."""

    job: JobView
    events: list[JobEventView]


@dataclass(slots=True)
class CompletionResult:
    """Outcome of the atomic completion procedure."""

    success: bool
    was_duplicate: bool = False
    was_refunded: bool = False
    error: str | None = None


@dataclass(slots=True)
class RefundResult:
    """Outcome of the atomic refund-and-fail procedure."""

    success: bool
    new_balance: int | None = None
    entry_id: int | None = None
    error: str | None = None


@dataclass(slots=True)
class StalledJob:
    """One job reclaimed or failed by a stall sweep."""

    job_id: str
    owner_id: str
    cost: int
    worker_id: str | None
    stalled_count: int
    requeued: bool


@dataclass(slots=True)
class AdmissionReceipt:
    """Returned to the submitting client."""

    job_id: str
    status: JobStatus
    cost: int
    balance: int


@dataclass(slots=True)
class WaitEstimate:
    """Advisory queue position and wait time for a queued job."""

    position: int
    queue_length: int
    active_jobs: int
    estimated_seconds: int
    estimated_minutes: int


@dataclass(slots=True)
class StatusDocument:
    """Polled job status returned to the owner."""

    job_id: str
    status: JobStatus
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    result_ref: str | None = None
    metrics: dict[str, Any] | None = None
    error: str | None = None
    progress: int | None = None
    wait_estimate: WaitEstimate | None = None
