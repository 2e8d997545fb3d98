"""Domain models for the credit ledger."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class LedgerEntryKind(str, Enum):
    """Reason class of a ledger entry."""

    TOP_UP = "top_up"
    DEBIT = "debit"
    REFUND = "refund"


@dataclass(slots=True)
class LedgerPosting:
    """Result of one atomic ledger operation."""

    entry_id: int
    owner_id: str
    kind: LedgerEntryKind
    delta: int
    balance_before: int
    balance_after: int
    job_id: str | None = None


@dataclass(slots=True)
class LedgerEntryView:
    """Stored immutable ledger entry."""

    entry_id: int
    owner_id: str
    kind: LedgerEntryKind
    delta: int
    reason: str
    balance_before: int
    balance_after: int
    job_id: str | None
    created_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)
