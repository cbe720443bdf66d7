"""
Payment store.

Lookups by merchant reference and tracking id, create-if-absent, and a
compare-and-set update keyed on ``Payment.version``. Reads always refresh
the identity map (populate_existing) so a retry after a lost race sees the
winning write rather than a stale cached object.

None of these functions commit; the reconciler owns transaction boundaries.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.payment import Payment

logger = logging.getLogger("payment_reconciler.store")


async def find_by_reference(session: AsyncSession, merchant_reference: str) -> Optional[Payment]:
    result = await session.execute(
        select(Payment)
        .where(Payment.merchant_reference == merchant_reference)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def find_by_tracking_id(session: AsyncSession, tracking_id: str) -> Optional[Payment]:
    result = await session.execute(
        select(Payment)
        .where(Payment.tracking_id == tracking_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def create_if_absent(session: AsyncSession, **fields: Any) -> Optional[Payment]:
    """
    Insert a new payment unless its merchant reference already exists.

    Must be the first write of the unit of work: a duplicate rolls the
    session back.

    Returns:
        The new Payment, or None when the reference was taken.

    Raises:
        IntegrityError: Any other constraint failure on the new row.
    """
    merchant_reference = fields.get("merchant_reference")
    if merchant_reference and await find_by_reference(session, merchant_reference) is not None:
        logger.warning("Merchant reference already exists: %s", merchant_reference)
        return None

    now = datetime.now(timezone.utc)
    payment = Payment(version=1, created_at=now, updated_at=now, **fields)
    session.add(payment)
    try:
        await session.flush()
    except IntegrityError:
        await session.rollback()
        if merchant_reference and await find_by_reference(session, merchant_reference) is not None:
            logger.warning("Merchant reference already exists: %s", merchant_reference)
            return None
        raise
    return payment


async def compare_and_set(
    session: AsyncSession,
    payment: Payment,
    expected_version: int,
    **changes: Any,
) -> bool:
    """
    Write ``changes`` only if the row still carries ``expected_version``.

    On success the version is bumped, updated_at advanced, and ``payment``
    refreshed from the database.

    Returns:
        True if the write landed, False if another writer got there first.
    """
    result = await session.execute(
        update(Payment)
        .where(Payment.id == payment.id, Payment.version == expected_version)
        .values(
            **changes,
            version=expected_version + 1,
            updated_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    await session.refresh(payment)
    return True
