"""
Immutable audit trail for payment reconciliation.

Every signal the engine evaluates gets an append-only audit log entry with:
  - Payment ID (NULL when the signal referenced an unknown payment)
  - Action (what happened: applied, duplicate, conflict, not found, ...)
  - Source (create, submission, callback, cancel, notification, poll)
  - From/to status (the recorded status and the status the signal proposed)
  - Details (references, gateway keywords, error messages)
  - Timestamp (UTC)

Rejected signals never change the payment record itself, so this table is
the only place a provider-side inconsistency remains visible.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.payment import AuditLog

logger = logging.getLogger("payment_reconciler.audit")


async def log_event(
    session: AsyncSession,
    action: str,
    payment_id: Optional[int] = None,
    source: Optional[str] = None,
    from_status: Optional[str] = None,
    to_status: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> AuditLog:
    """
    Create an immutable audit log entry.

    The entry is added to the session; the caller owns the commit.

    Args:
        session: Database session.
        action: What happened (e.g. "signal_applied", "signal_conflict").
        payment_id: The payment this event relates to, if it is known.
        source: The channel the signal arrived on.
        from_status: Status recorded when the signal was evaluated.
        to_status: Status the signal proposed.
        details: Arbitrary context (serialized to JSON).

    Returns:
        The created AuditLog record.
    """
    entry = AuditLog(
        payment_id=payment_id,
        action=action,
        source=source,
        from_status=from_status,
        to_status=to_status,
        details=json.dumps(details, default=str) if details else None,
        timestamp=datetime.now(timezone.utc),
    )
    session.add(entry)
    logger.info(
        "AUDIT | payment=%s source=%s action=%s %s->%s | %s",
        payment_id or "-",
        source or "-",
        action,
        from_status or "-",
        to_status or "-",
        json.dumps(details, default=str)[:200] if details else "",
    )
    return entry
