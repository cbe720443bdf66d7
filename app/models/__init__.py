from app.models.enums import PaymentStatus, SignalSource, TransitionOutcome
from app.models.payment import AuditLog, Base, Payment

__all__ = [
    "Base",
    "Payment",
    "AuditLog",
    "PaymentStatus",
    "SignalSource",
    "TransitionOutcome",
]
