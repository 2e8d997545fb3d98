"""SQLModel ORM tables for ledger and job storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, Text, text
from sqlmodel import Field, SQLModel


class Account(SQLModel, table=True):
    __tablename__ = "accounts"  # type: ignore[bad-override]
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),)

    owner_id: str = Field(primary_key=True)
    balance: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class LedgerEntry(SQLModel, table=True):
    __tablename__ = "ledger_entries"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_ledger_entries_owner_time", "owner_id", "created_at"),
        Index(
            "uq_ledger_entries_job_kind",
            "job_id",
            "kind",
            unique=True,
            sqlite_where=text("job_id IS NOT NULL"),
        ),
    )

    entry_id: int | None = Field(default=None, primary_key=True)
    owner_id: str = Field(
        sa_column=Column(
            ForeignKey("accounts.owner_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    delta: int
    kind: str = Field(index=True)
    reason: str = Field(sa_column=Column(Text, nullable=False))
    balance_before: int
    balance_after: int
    job_id: str | None = Field(default=None, index=True)
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_jobs_queue", "status", "priority", "queued_at"),
        Index("idx_jobs_owner_status_time", "owner_id", "status", "created_at"),
    )

    job_id: str = Field(primary_key=True)
    owner_id: str = Field(
        sa_column=Column(
            ForeignKey("accounts.owner_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    status: str = Field(index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    cost: int
    priority: int = Field(default=0)
    attempt: int = Field(default=0)
    stalled_count: int = Field(default=0)
    duplicate_settlements: int = Field(default=0)
    progress: int = Field(default=0)
    worker_id: str | None = Field(default=None, index=True)
    queued_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    heartbeat_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    lease_expires_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    refunded_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    result_ref: str | None = None
    metrics_json: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobEvent(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None, index=True)
    status_to: str | None = Field(default=None, index=True)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
