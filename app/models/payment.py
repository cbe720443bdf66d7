"""SQLAlchemy models for the payment reconciler."""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Payment(Base):
    """
    A single customer payment tracked against the external gateway.

    Created pending before the gateway is contacted, then converged onto one
    terminal status by whichever notification channels deliver. The
    merchant_reference is ours; the tracking_id is the gateway's and is set
    at most once. ``version`` is bumped on every accepted write and is the
    compare-and-set token for status transitions.
    """

    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    merchant_reference = Column(String(64), nullable=False, unique=True, index=True)
    tracking_id = Column(String(100), nullable=True, unique=True, index=True)

    amount = Column(Float, nullable=False)
    currency = Column(String(3), nullable=False, default="KES")
    description = Column(String(255), nullable=False)

    status = Column(String(20), nullable=False, default="pending", index=True)
    payment_method = Column(String(50), nullable=True)

    customer_email = Column(String(200), nullable=False, index=True)
    customer_name = Column(String(200), nullable=False)
    customer_phone = Column(String(50), nullable=True)

    callback_url = Column(String(500), nullable=False)
    cancellation_url = Column(String(500), nullable=False)

    notification_received = Column(Boolean, nullable=False, default=False)
    last_notification_payload = Column(Text, nullable=True)  # JSON, verbatim IPN body

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)

    audit_logs = relationship("AuditLog", back_populates="payment", lazy="raise")


class AuditLog(Base):
    """
    Immutable audit trail entry.

    Every signal evaluated against a payment gets an entry, whether it was
    applied, ignored as stale, rejected as a conflict, or referenced an
    unknown payment (payment_id is then NULL). These are append-only and
    never modified.
    """

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=True, index=True)
    action = Column(String(50), nullable=False)
    source = Column(String(20), nullable=True)
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=True)
    details = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), default=_utcnow)

    payment = relationship("Payment", back_populates="audit_logs")
