"""Atomic credit ledger operations backed by SQLModel + SQLite.

Each public operation is one transaction. Balance changes are conditional
``UPDATE`` statements, so a debit can never take a balance below zero, and the
matching ledger entry is written inside the same transaction. The module-level
``credit_account`` helper is shared with the job repository, whose refund
procedure must credit the ledger in the same transaction that fails the job.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path

from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, select

from genqueue.errors import InsufficientBalanceError, LedgerInfrastructureFailure, ValidationError
from genqueue.ledger.models import LedgerEntryKind, LedgerEntryView, LedgerPosting
from genqueue.storage.alembic_runner import upgrade_head
from genqueue.storage.common import build_sqlite_engine, to_utc_aware_datetime, utc_now
from genqueue.storage.sqlmodel_models import Account, LedgerEntry

logger = logging.getLogger(__name__)


class LedgerRepository:
    """Ledger persistence facade."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def open_account(self, *, owner_id: str) -> int:
        """Create the owner's account if missing and return its balance."""

        with Session(self.engine) as session:
            balance = _ensure_account(session, owner_id=owner_id, now=utc_now())
            session.commit()
            return balance

    def top_up(
        self,
        *,
        owner_id: str,
        amount: int,
        reason: str,
        metadata: dict[str, object] | None = None,
    ) -> LedgerPosting:
        """Credit purchased or granted credits to an account."""

        with Session(self.engine) as session:
            posting = credit_account(
                session,
                owner_id=owner_id,
                amount=amount,
                kind=LedgerEntryKind.TOP_UP,
                reason=reason,
                job_id=None,
                metadata=metadata,
                now=utc_now(),
            )
            session.commit()
        logger.info("Top-up of %d credits for %s, balance %d", amount, owner_id, posting.balance_after)
        return posting

    def reserve(
        self,
        *,
        owner_id: str,
        amount: int,
        reason: str,
        job_id: str | None = None,
        metadata: dict[str, object] | None = None,
    ) -> LedgerPosting:
        """Atomically debit ``amount`` or raise without touching the balance."""

        try:
            with Session(self.engine) as session:
                posting = debit_account(
                    session,
                    owner_id=owner_id,
                    amount=amount,
                    reason=reason,
                    job_id=job_id,
                    metadata=metadata,
                    now=utc_now(),
                )
                if posting is None:
                    current = _read_balance(session, owner_id=owner_id)
                    session.rollback()
                    raise InsufficientBalanceError(required=amount, current=current)
                session.commit()
                return posting
        except IntegrityError as error:
            raise ValidationError(f"Job id already in use: {job_id}") from error
        except SQLAlchemyError as error:
            raise LedgerInfrastructureFailure(f"Reserve failed for {owner_id}: {error}") from error

    def refund(
        self,
        *,
        owner_id: str,
        amount: int,
        reason: str,
        job_id: str | None = None,
        metadata: dict[str, object] | None = None,
    ) -> LedgerPosting:
        """Credit back a reservation whose job never reached the job store."""

        try:
            with Session(self.engine) as session:
                posting = credit_account(
                    session,
                    owner_id=owner_id,
                    amount=amount,
                    kind=LedgerEntryKind.REFUND,
                    reason=reason,
                    job_id=job_id,
                    metadata=metadata,
                    now=utc_now(),
                )
                session.commit()
                return posting
        except SQLAlchemyError as error:
            raise LedgerInfrastructureFailure(
                f"Refund of {amount} credits to {owner_id} failed: {error}",
            ) from error

    def settle_success(self, *, job_id: str) -> LedgerEntryView | None:
        """Confirm the reservation of a completed job as its final charge.

        Success settlement does not move credits; the debit written at
        admission is returned for reporting.
        """

        with Session(self.engine) as session:
            row = session.exec(
                select(LedgerEntry).where(
                    LedgerEntry.job_id == job_id,
                    LedgerEntry.kind == LedgerEntryKind.DEBIT.value,
                ),
            ).one_or_none()
        return _to_entry_view(row) if row is not None else None

    def get_balance(self, *, owner_id: str) -> int:
        """Current balance, zero for unknown owners."""

        with Session(self.engine) as session:
            return _read_balance(session, owner_id=owner_id)

    def list_entries(self, *, owner_id: str, limit: int = 50) -> list[LedgerEntryView]:
        """Most recent entries first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(LedgerEntry)
                .where(LedgerEntry.owner_id == owner_id)
                .order_by(col(LedgerEntry.entry_id).desc())
                .limit(limit),
            ).all()
        return [_to_entry_view(row) for row in rows]

    def entries_for_job(self, *, job_id: str) -> list[LedgerEntryView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(LedgerEntry)
                .where(LedgerEntry.job_id == job_id)
                .order_by(col(LedgerEntry.entry_id).asc()),
            ).all()
        return [_to_entry_view(row) for row in rows]


def debit_account(  # noqa: PLR0913
    session: Session,
    *,
    owner_id: str,
    amount: int,
    reason: str,
    job_id: str | None,
    metadata: dict[str, object] | None,
    now: datetime,
) -> LedgerPosting | None:
    """Debit inside the caller's transaction; ``None`` when balance is short."""

    _require_positive(amount)
    result = session.exec(
        sa_update(Account)
        .where(
            col(Account.owner_id) == owner_id,
            col(Account.balance) >= amount,
        )
        .values(
            balance=col(Account.balance) - amount,
            updated_at=now,
        ),
    )
    if result.rowcount != 1:
        return None
    balance_after = _read_balance(session, owner_id=owner_id)
    return _append_entry(
        session,
        owner_id=owner_id,
        kind=LedgerEntryKind.DEBIT,
        delta=-amount,
        reason=reason,
        balance_before=balance_after + amount,
        balance_after=balance_after,
        job_id=job_id,
        metadata=metadata,
        now=now,
    )


def credit_account(  # noqa: PLR0913
    session: Session,
    *,
    owner_id: str,
    amount: int,
    kind: LedgerEntryKind,
    reason: str,
    job_id: str | None,
    metadata: dict[str, object] | None,
    now: datetime,
) -> LedgerPosting:
    """Credit inside the caller's transaction, opening the account if needed."""

    _require_positive(amount)
    _ensure_account(session, owner_id=owner_id, now=now)
    session.exec(
        sa_update(Account)
        .where(col(Account.owner_id) == owner_id)
        .values(
            balance=col(Account.balance) + amount,
            updated_at=now,
        ),
    )
    balance_after = _read_balance(session, owner_id=owner_id)
    return _append_entry(
        session,
        owner_id=owner_id,
        kind=kind,
        delta=amount,
        reason=reason,
        balance_before=balance_after - amount,
        balance_after=balance_after,
        job_id=job_id,
        metadata=metadata,
        now=now,
    )


def _append_entry(  # noqa: PLR0913
    session: Session,
    *,
    owner_id: str,
    kind: LedgerEntryKind,
    delta: int,
    reason: str,
    balance_before: int,
    balance_after: int,
    job_id: str | None,
    metadata: dict[str, object] | None,
    now: datetime,
) -> LedgerPosting:
    entry = LedgerEntry(
        owner_id=owner_id,
        delta=delta,
        kind=kind.value,
        reason=reason,
        balance_before=balance_before,
        balance_after=balance_after,
        job_id=job_id,
        metadata_json=json.dumps(metadata, ensure_ascii=False, sort_keys=True)
        if metadata
        else None,
        created_at=now,
    )
    session.add(entry)
    session.flush()
    return LedgerPosting(
        entry_id=entry.entry_id or 0,
        owner_id=owner_id,
        kind=kind,
        delta=delta,
        balance_before=balance_before,
        balance_after=balance_after,
        job_id=job_id,
    )


def _ensure_account(session: Session, *, owner_id: str, now: datetime) -> int:
    account = session.get(Account, owner_id)
    if account is not None:
        return account.balance
    session.add(Account(owner_id=owner_id, balance=0, created_at=now, updated_at=now))
    session.flush()
    return 0


def _read_balance(session: Session, *, owner_id: str) -> int:
    balance = session.exec(
        select(Account.balance).where(Account.owner_id == owner_id),
    ).one_or_none()
    return balance if balance is not None else 0


def _require_positive(amount: int) -> None:
    if amount <= 0:
        raise ValueError(f"Ledger amount must be positive, got {amount}")


def _to_entry_view(row: LedgerEntry) -> LedgerEntryView:
    metadata: dict[str, object] = {}
    if row.metadata_json:
        parsed = json.loads(row.metadata_json)
        if isinstance(parsed, dict):
            metadata = parsed
    return LedgerEntryView(
        entry_id=row.entry_id or 0,
        owner_id=row.owner_id,
        kind=LedgerEntryKind(row.kind),
        delta=row.delta,
        reason=row.reason,
        balance_before=row.balance_before,
        balance_after=row.balance_after,
        job_id=row.job_id,
        created_at=to_utc_aware_datetime(row.created_at),
        metadata=metadata,
    )
