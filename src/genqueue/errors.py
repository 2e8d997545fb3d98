"""Error taxonomy shared by admission, settlement and the HTTP layer."""

from __future__ import annotations


class GenqueueError(RuntimeError):
    """Base class for domain errors."""


class ValidationError(GenqueueError):
    """Client input rejected before any side effect."""

    def __init__(self, message: str, *, allowed: list[str] | None = None) -> None:
        super().__init__(message)
        self.allowed = allowed


class InsufficientBalanceError(GenqueueError):
    """Reservation refused; balance left untouched."""

    def __init__(self, *, required: int, current: int) -> None:
        super().__init__(f"Insufficient balance: required {required}, current {current}")
        self.required = required
        self.current = current


class AdmissionLimitError(GenqueueError):
    """Owner already has too many recent non-terminal jobs."""

    def __init__(self, *, active: int, max_allowed: int) -> None:
        super().__init__(
            f"You can have at most {max_allowed} jobs generating at the same time "
            f"(currently {active}). Wait for one to finish before starting a new one.",
        )
        self.active = active
        self.max_allowed = max_allowed


class EnqueueFailure(GenqueueError):
    """Job could not be handed to the broker; the reservation was refunded."""


class EngineFailure(GenqueueError):
    """External generation engine raised or returned unusable output."""


class StallTimeout(GenqueueError):
    """Active job missed its heartbeat deadline."""


class DuplicateSettlement(GenqueueError):
    """Second settlement attempt for a job that is already terminal."""


class LedgerInfrastructureFailure(GenqueueError):
    """Ledger procedure failed; the job may need manual reconciliation."""


class NotFoundError(GenqueueError):
    """Job missing or not owned by the caller."""
