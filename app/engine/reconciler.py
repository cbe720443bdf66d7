"""
Payment reconciler — the core state engine.

Creates payments and folds every later status signal into the payment
record. The signals arrive on independent channels with no ordering between
them and with at-least-once delivery:

  1. Browser redirect callback      (by merchant reference)
  2. Browser cancellation redirect  (by merchant reference)
  3. Server-to-server notification  (by tracking id)
  4. Caller-initiated status poll   (by merchant reference, asks the gateway)

Convergence guarantees:
  - The first terminal status recorded wins; no signal leaves a terminal state
  - A pending signal after a terminal status is ignored (never a downgrade)
  - A different terminal status is a conflict: audited, logged, raised as
    ConflictError for the channel adapter to swallow, record untouched
  - Redelivery of an identical signal writes nothing
  - Signals for unknown payments raise NotFoundError and never create records

Each transition is read -> decide -> compare-and-set on Payment.version, so
two signals racing on the same payment cannot both pass the "still pending"
check. A lost race re-reads and decides again.
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.audit.logger import log_event
from app.channels.envelope import NotificationEnvelope
from app.config import Settings, settings as default_settings
from app.engine.errors import (
    ConcurrentUpdateError,
    ConflictError,
    GatewayError,
    NotFoundError,
    PaymentError,
    ValidationError,
)
from app.engine.state_machine import decide_transition, map_gateway_status
from app.engine.validation import check_payment_request
from app.gateway.base import (
    BillingAddress,
    GatewayStatus,
    OrderRequest,
    PaymentGateway,
    split_customer_name,
)
from app.models.enums import PaymentStatus, SignalSource, TransitionOutcome
from app.models.payment import Payment
from app.store import payments as store

logger = logging.getLogger("payment_reconciler.engine")

MAX_CAS_ATTEMPTS = 5
MAX_REFERENCE_ATTEMPTS = 3

PaymentLoader = Callable[[], Awaitable[Optional[Payment]]]
ChangeBuilder = Callable[[Payment, TransitionOutcome], Awaitable[dict[str, Any]]]


@dataclass
class PaymentRequest:
    """Inbound request to create a payment."""

    amount: Optional[float]
    customer_email: Optional[str]
    customer_name: Optional[str]
    currency: Optional[str] = None
    customer_phone: Optional[str] = None
    description: Optional[str] = None


@dataclass
class CreatedPayment:
    merchant_reference: str
    tracking_id: str
    redirect_url: str
    payment: Payment


@dataclass
class TransitionResult:
    """What a signal did to a payment."""

    outcome: TransitionOutcome
    payment: Payment
    previous_status: PaymentStatus
    proposed_status: PaymentStatus

    @property
    def status(self) -> PaymentStatus:
        return PaymentStatus(self.payment.status)


@dataclass
class PollResult:
    payment: Payment
    gateway_status: Optional[GatewayStatus] = None
    outcome: Optional[TransitionOutcome] = None


def generate_merchant_reference(prefix: str) -> str:
    """e.g. BIPS_1718000000000_a1b2c3d"""
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:7]}"


async def _no_changes(payment: Payment, outcome: TransitionOutcome) -> dict[str, Any]:
    return {}


# ----------------------------------------------------------------------
# Creation
# ----------------------------------------------------------------------


async def create_payment(
    session: AsyncSession,
    gateway: PaymentGateway,
    request: PaymentRequest,
    config: Settings = default_settings,
) -> CreatedPayment:
    """
    Create a pending payment and submit it to the gateway.

    The record is committed before the gateway is contacted, so a crash or
    rejection mid-submission leaves a pending record with no tracking id.
    Failed submissions are not retried under the same merchant reference.

    Args:
        session: Database session.
        gateway: Gateway to submit the order to.
        request: Amount, currency and customer details.
        config: Settings providing callback URLs, currency and billing defaults.

    Returns:
        CreatedPayment with the gateway's tracking id and redirect URL.

    Raises:
        ValidationError: Before anything is persisted or sent.
        AuthenticationError, SubmissionError: Gateway refused; record stays pending.
    """
    result = check_payment_request(
        amount=request.amount,
        customer_email=request.customer_email,
        customer_name=request.customer_name,
        currency=request.currency,
    )
    if not result.valid:
        raise ValidationError(result.errors)

    currency = (request.currency or config.default_currency).upper()
    customer_name = request.customer_name.strip()
    description = request.description or f"Payment - {request.amount} {currency}"

    payment = None
    for _ in range(MAX_REFERENCE_ATTEMPTS):
        payment = await store.create_if_absent(
            session,
            merchant_reference=generate_merchant_reference(config.merchant_reference_prefix),
            amount=request.amount,
            currency=currency,
            description=description,
            status=PaymentStatus.PENDING.value,
            customer_email=request.customer_email.strip(),
            customer_name=customer_name,
            customer_phone=request.customer_phone or "",
            callback_url=config.callback_url,
            cancellation_url=config.cancellation_url,
            notification_received=False,
        )
        if payment is not None:
            break
    if payment is None:
        raise PaymentError("Could not allocate a unique merchant reference")

    await log_event(
        session,
        "payment_created",
        payment_id=payment.id,
        source=SignalSource.CREATE.value,
        to_status=PaymentStatus.PENDING.value,
        details={
            "merchant_reference": payment.merchant_reference,
            "amount": payment.amount,
            "currency": currency,
        },
    )
    await session.commit()

    first_name, last_name = split_customer_name(customer_name)
    order = OrderRequest(
        merchant_reference=payment.merchant_reference,
        amount=payment.amount,
        currency=currency,
        description=description,
        callback_url=payment.callback_url,
        cancellation_url=payment.cancellation_url,
        billing_address=BillingAddress(
            email_address=payment.customer_email,
            phone_number=payment.customer_phone or "",
            country_code=config.billing_country_code,
            first_name=first_name,
            last_name=last_name,
        ),
    )

    try:
        response = await gateway.submit_order(order)
    except GatewayError as e:
        logger.error(
            "Submission failed for %s (%s): %s",
            payment.merchant_reference,
            type(e).__name__,
            e,
        )
        await log_event(
            session,
            "submission_failed",
            payment_id=payment.id,
            source=SignalSource.SUBMISSION.value,
            from_status=payment.status,
            details={
                "error": str(e),
                "error_type": type(e).__name__,
                "status_code": e.status_code,
                "detail": e.detail,
                "transient": e.transient,
            },
        )
        await session.commit()
        raise

    payment = await _attach_tracking_id(session, payment.merchant_reference, response.tracking_id)

    logger.info(
        "Payment %s submitted: tracking_id=%s amount=%s %s",
        payment.merchant_reference,
        response.tracking_id,
        payment.amount,
        payment.currency,
    )
    return CreatedPayment(
        merchant_reference=payment.merchant_reference,
        tracking_id=response.tracking_id,
        redirect_url=response.redirect_url,
        payment=payment,
    )


async def _attach_tracking_id(session: AsyncSession, merchant_reference: str, tracking_id: str) -> Payment:
    """Store the gateway's tracking id; a callback may have beaten us to it."""
    for _ in range(MAX_CAS_ATTEMPTS):
        payment = await store.find_by_reference(session, merchant_reference)
        if payment is None:
            raise NotFoundError(f"Payment vanished: {merchant_reference}", merchant_reference=merchant_reference)

        if payment.tracking_id == tracking_id:
            return payment
        if payment.tracking_id:
            logger.error(
                "Payment %s already has tracking id %s; gateway returned %s",
                merchant_reference,
                payment.tracking_id,
                tracking_id,
            )
            return payment

        if await store.compare_and_set(session, payment, payment.version, tracking_id=tracking_id):
            await log_event(
                session,
                "order_submitted",
                payment_id=payment.id,
                source=SignalSource.SUBMISSION.value,
                from_status=payment.status,
                details={"tracking_id": tracking_id},
            )
            await session.commit()
            return payment

        await session.rollback()

    raise ConcurrentUpdateError(f"Could not store tracking id for {merchant_reference}")


# ----------------------------------------------------------------------
# Signal application
# ----------------------------------------------------------------------


async def _reconcile(
    session: AsyncSession,
    load: PaymentLoader,
    source: SignalSource,
    proposed: PaymentStatus,
    lookup: dict[str, Any],
    build_changes: ChangeBuilder = _no_changes,
    details: Optional[dict[str, Any]] = None,
) -> TransitionResult:
    """
    Apply one status signal under the first-terminal-wins rule.

    Every evaluation is audited and committed, including rejections.
    """
    details = {**lookup, **(details or {})}

    for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
        payment = await load()
        if payment is None:
            logger.warning("%s signal for unknown payment %s; dropped", source.value, lookup)
            await log_event(
                session,
                "signal_not_found",
                source=source.value,
                to_status=proposed.value,
                details=details,
            )
            await session.commit()
            raise NotFoundError(
                f"No payment for {lookup}",
                merchant_reference=lookup.get("merchant_reference"),
                tracking_id=lookup.get("tracking_id"),
            )

        current = PaymentStatus(payment.status)
        outcome = decide_transition(current, proposed)
        changes = await build_changes(payment, outcome)
        if outcome is TransitionOutcome.APPLIED:
            changes["status"] = proposed.value

        if outcome in (TransitionOutcome.IGNORED, TransitionOutcome.CONFLICT) or not changes:
            await log_event(
                session,
                f"signal_{outcome.value}",
                payment_id=payment.id,
                source=source.value,
                from_status=current.value,
                to_status=proposed.value,
                details=details,
            )
            await session.commit()

            if outcome is TransitionOutcome.CONFLICT:
                logger.warning(
                    "Conflicting %s signal for %s: recorded %s, signal says %s; kept %s",
                    source.value,
                    payment.merchant_reference,
                    current.value,
                    proposed.value,
                    current.value,
                )
                raise ConflictError(
                    f"Payment {payment.merchant_reference} is already {current.value}",
                    current_status=current.value,
                    proposed_status=proposed.value,
                )
            if outcome is TransitionOutcome.IGNORED:
                logger.warning(
                    "Stale %s signal for %s: %s after terminal %s; ignored",
                    source.value,
                    payment.merchant_reference,
                    proposed.value,
                    current.value,
                )
            return TransitionResult(outcome, payment, current, proposed)

        if await store.compare_and_set(session, payment, payment.version, **changes):
            await log_event(
                session,
                "signal_applied" if outcome is TransitionOutcome.APPLIED else "signal_duplicate",
                payment_id=payment.id,
                source=source.value,
                from_status=current.value,
                to_status=proposed.value,
                details={**details, "fields": sorted(changes)},
            )
            await session.commit()
            logger.info(
                "%s signal for %s: %s -> %s (%s)",
                source.value,
                payment.merchant_reference,
                current.value,
                payment.status,
                outcome.value,
            )
            return TransitionResult(outcome, payment, current, proposed)

        logger.info(
            "Concurrent update on %s, retrying %s signal (attempt %d/%d)",
            payment.merchant_reference,
            source.value,
            attempt,
            MAX_CAS_ATTEMPTS,
        )
        await session.rollback()

    raise ConcurrentUpdateError(f"Gave up applying {source.value} signal for {lookup}")


async def apply_callback(
    session: AsyncSession,
    merchant_reference: str,
    tracking_id: Optional[str] = None,
    gateway_status: Optional[str] = None,
) -> TransitionResult:
    """
    Apply the browser's return from the hosted payment page.

    The reported status only moves a pending payment. A tracking id is
    filled in when the record has none yet and no other payment owns it.
    """
    proposed = map_gateway_status(gateway_status)

    async def build_changes(payment: Payment, outcome: TransitionOutcome) -> dict[str, Any]:
        if not tracking_id or payment.tracking_id == tracking_id:
            return {}
        if payment.tracking_id:
            logger.warning(
                "Callback for %s reports tracking id %s but record has %s; keeping recorded",
                merchant_reference,
                tracking_id,
                payment.tracking_id,
            )
            return {}
        owner = await store.find_by_tracking_id(session, tracking_id)
        if owner is not None:
            logger.warning(
                "Callback for %s reports tracking id %s already owned by %s; not assigned",
                merchant_reference,
                tracking_id,
                owner.merchant_reference,
            )
            return {}
        return {"tracking_id": tracking_id}

    return await _reconcile(
        session,
        lambda: store.find_by_reference(session, merchant_reference),
        SignalSource.CALLBACK,
        proposed,
        lookup={"merchant_reference": merchant_reference},
        build_changes=build_changes,
        details={"tracking_id": tracking_id, "gateway_status": gateway_status},
    )


async def apply_cancel(session: AsyncSession, merchant_reference: str) -> TransitionResult:
    """Apply the browser's cancellation redirect. A completed or failed payment stays as it is."""
    return await _reconcile(
        session,
        lambda: store.find_by_reference(session, merchant_reference),
        SignalSource.CANCEL,
        PaymentStatus.CANCELED,
        lookup={"merchant_reference": merchant_reference},
    )


async def apply_notification(session: AsyncSession, envelope: NotificationEnvelope) -> TransitionResult:
    """
    Apply a server-to-server push notification.

    The payment is found by tracking id. The notification flag, raw body and
    payment method are written with the status transition, or alone when the
    status is unchanged but this delivery is new (first push, or a different
    body). An identical redelivery writes nothing.
    """
    if not envelope.tracking_id:
        raise NotFoundError("Notification carries no tracking id")

    proposed = map_gateway_status(envelope.payment_status)
    payload_json = json.dumps(envelope.raw, sort_keys=True, default=str)

    async def build_changes(payment: Payment, outcome: TransitionOutcome) -> dict[str, Any]:
        if outcome is TransitionOutcome.DUPLICATE and (
            payment.notification_received and payment.last_notification_payload == payload_json
        ):
            return {}
        if outcome not in (TransitionOutcome.APPLIED, TransitionOutcome.DUPLICATE):
            return {}

        if envelope.amount is not None and abs(envelope.amount - payment.amount) > 0.005:
            logger.warning(
                "Notification amount %s differs from recorded %s for %s",
                envelope.amount,
                payment.amount,
                payment.merchant_reference,
            )

        changes: dict[str, Any] = {
            "notification_received": True,
            "last_notification_payload": payload_json,
        }
        if envelope.payment_method:
            changes["payment_method"] = envelope.payment_method
        return changes

    return await _reconcile(
        session,
        lambda: store.find_by_tracking_id(session, envelope.tracking_id),
        SignalSource.NOTIFICATION,
        proposed,
        lookup={"tracking_id": envelope.tracking_id},
        build_changes=build_changes,
        details={
            "merchant_reference": envelope.merchant_reference,
            "gateway_status": envelope.payment_status,
            "payment_method": envelope.payment_method,
            "payload": envelope.raw,
        },
    )


async def poll_status(
    session: AsyncSession,
    gateway: PaymentGateway,
    merchant_reference: str,
) -> PollResult:
    """
    Ask the gateway for a payment's current status and fold it in.

    A payment without a tracking id is returned as-is. A conflicting answer
    from the gateway is audited and logged but not raised; the recorded
    status is returned unchanged.

    Raises:
        NotFoundError: Unknown merchant reference.
        StatusQueryError: The gateway could not be queried; nothing changed.
    """
    payment = await store.find_by_reference(session, merchant_reference)
    if payment is None:
        raise NotFoundError(f"Payment not found: {merchant_reference}", merchant_reference=merchant_reference)
    if not payment.tracking_id:
        return PollResult(payment=payment)

    gateway_status = await gateway.get_status(payment.tracking_id)

    async def build_changes(record: Payment, outcome: TransitionOutcome) -> dict[str, Any]:
        if outcome is TransitionOutcome.APPLIED and gateway_status.payment_method:
            return {"payment_method": gateway_status.payment_method}
        return {}

    try:
        result = await _reconcile(
            session,
            lambda: store.find_by_reference(session, merchant_reference),
            SignalSource.POLL,
            map_gateway_status(gateway_status.status),
            lookup={"merchant_reference": merchant_reference},
            build_changes=build_changes,
            details={"tracking_id": payment.tracking_id, "gateway_status": gateway_status.status},
        )
    except ConflictError:
        payment = await store.find_by_reference(session, merchant_reference)
        return PollResult(payment=payment, gateway_status=gateway_status, outcome=TransitionOutcome.CONFLICT)

    return PollResult(payment=result.payment, gateway_status=gateway_status, outcome=result.outcome)
