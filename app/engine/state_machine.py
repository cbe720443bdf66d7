"""
Payment status state machine.

    pending -> completed | failed | canceled

``pending`` is the only non-terminal state. Signals from every channel are
mapped onto a PaymentStatus and then judged against the recorded status:
the first terminal status wins, a later pending signal is stale, and a
different terminal status is a conflict that leaves the record untouched.
"""

from typing import Optional

from app.models.enums import PaymentStatus, TransitionOutcome

GATEWAY_STATUS_MAP = {
    "COMPLETED": PaymentStatus.COMPLETED,
    "FAILED": PaymentStatus.FAILED,
    "INVALID": PaymentStatus.FAILED,
    "CANCELLED": PaymentStatus.CANCELED,
    "PENDING": PaymentStatus.PENDING,
}


def map_gateway_status(keyword: Optional[str]) -> PaymentStatus:
    """Map a gateway status keyword (case-insensitive) onto our status. Unknown means pending."""
    if not keyword:
        return PaymentStatus.PENDING
    return GATEWAY_STATUS_MAP.get(str(keyword).strip().upper(), PaymentStatus.PENDING)


def decide_transition(current: PaymentStatus, proposed: PaymentStatus) -> TransitionOutcome:
    """
    Decide what a proposed status does to a record currently in ``current``.

    Returns:
        DUPLICATE when nothing would change, APPLIED for pending -> terminal,
        IGNORED for a pending signal after a terminal status, and CONFLICT
        for a terminal status that differs from the recorded one.
    """
    current = PaymentStatus(current)
    proposed = PaymentStatus(proposed)

    if proposed == current:
        return TransitionOutcome.DUPLICATE
    if not current.is_terminal:
        return TransitionOutcome.APPLIED
    if not proposed.is_terminal:
        return TransitionOutcome.IGNORED
    return TransitionOutcome.CONFLICT
