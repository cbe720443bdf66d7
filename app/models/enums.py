"""Enumerations for the payment reconciliation domain model."""

from enum import Enum


class PaymentStatus(str, Enum):
    """Lifecycle states for a payment. Everything but PENDING is terminal."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class SignalSource(str, Enum):
    """Where a status signal came from."""

    CREATE = "create"
    SUBMISSION = "submission"
    CALLBACK = "callback"
    CANCEL = "cancel"
    NOTIFICATION = "notification"
    POLL = "poll"


class TransitionOutcome(str, Enum):
    """Result of evaluating a status signal against the current record."""

    APPLIED = "applied"  # pending -> terminal
    DUPLICATE = "duplicate"  # same status as recorded
    IGNORED = "ignored"  # pending signal after a terminal status
    CONFLICT = "conflict"  # different terminal status than recorded
