"""
Notification channel adapters.

One adapter per inbound channel. Each translates its transport's fields into
a reconciler call and then answers the channel unconditionally:

  - Redirect callback -> browser redirect to the success or error page
  - Cancel redirect   -> browser redirect to the canceled or error page
  - Push notification -> success acknowledgment, always

Reconciliation failures never reach the browser as an HTTP error and never
reach the gateway at all: a non-success answer to a push notification makes
the gateway redeliver, so the only failure mode here is log and acknowledge.
"""

import logging
from typing import Any, Mapping, Optional
from urllib.parse import urlencode

from sqlalchemy.ext.asyncio import AsyncSession

from app.channels.envelope import NotificationAck, NotificationEnvelope
from app.config import Settings, settings as default_settings
from app.engine import reconciler
from app.engine.errors import ConflictError, GatewayError, NotFoundError
from app.gateway.base import PaymentGateway
from app.models.enums import PaymentStatus

logger = logging.getLogger("payment_reconciler.channels")

REFERENCE_KEYS = ("OrderMerchantReference", "merchantReference", "merchant_reference")
TRACKING_KEYS = ("OrderTrackingId", "trackingId", "tracking_id")
STATUS_KEYS = ("Status", "status", "paymentStatus")


def _first(params: Mapping[str, Any], keys: tuple[str, ...]) -> Optional[str]:
    for key in keys:
        value = params.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def _landing_page(config: Settings, page: str, reference: Optional[str] = None) -> str:
    url = f"{config.frontend_url.rstrip('/')}/{page}"
    if reference:
        url = f"{url}?{urlencode({'reference': reference})}"
    return url


async def handle_callback(
    session: AsyncSession,
    params: Mapping[str, Any],
    config: Settings = default_settings,
) -> str:
    """Reconcile a redirect callback and return the landing page URL for the browser."""
    merchant_reference = _first(params, REFERENCE_KEYS)
    if not merchant_reference:
        logger.warning("Callback without merchant reference: %s", dict(params))
        return _landing_page(config, "payment-error")

    try:
        await reconciler.apply_callback(
            session,
            merchant_reference,
            tracking_id=_first(params, TRACKING_KEYS),
            gateway_status=_first(params, STATUS_KEYS),
        )
    except NotFoundError:
        return _landing_page(config, "payment-error")
    except ConflictError:
        # Record already settled; the landing page shows whatever it holds.
        pass
    except Exception:
        logger.exception("Callback processing failed for %s", merchant_reference)
        return _landing_page(config, "payment-error")

    return _landing_page(config, "payment-success", merchant_reference)


async def handle_cancel(
    session: AsyncSession,
    params: Mapping[str, Any],
    config: Settings = default_settings,
) -> str:
    """Reconcile a cancellation redirect and return the landing page URL for the browser."""
    merchant_reference = _first(params, REFERENCE_KEYS)
    if not merchant_reference:
        logger.warning("Cancel redirect without merchant reference: %s", dict(params))
        return _landing_page(config, "payment-error")

    try:
        result = await reconciler.apply_cancel(session, merchant_reference)
    except (NotFoundError, ConflictError):
        return _landing_page(config, "payment-error")
    except Exception:
        logger.exception("Cancel processing failed for %s", merchant_reference)
        return _landing_page(config, "payment-error")

    if result.status is PaymentStatus.CANCELED:
        return _landing_page(config, "payment-canceled", merchant_reference)
    return _landing_page(config, "payment-error")


async def handle_notification(
    session: AsyncSession,
    payload: Any,
    gateway: Optional[PaymentGateway] = None,
) -> NotificationAck:
    """
    Reconcile a push notification. Always returns a success acknowledgment.

    Notifications that carry a tracking id but no status (the gateway's
    change-notification form) are resolved by asking ``gateway`` for the
    current status, when one is given.
    """
    try:
        envelope = NotificationEnvelope.from_payload(payload)
        ack = NotificationAck(
            orderTrackingId=envelope.tracking_id,
            orderMerchantReference=envelope.merchant_reference,
        )

        if gateway is not None and not gateway.verify_notification(envelope.raw):
            logger.warning("Notification failed verification: %s", envelope.raw)
            return ack

        if envelope.tracking_id and not envelope.payment_status and gateway is not None:
            try:
                status = await gateway.get_status(envelope.tracking_id)
            except GatewayError as e:
                logger.warning("Could not resolve status for notification %s: %s", envelope.tracking_id, e)
                return ack
            envelope.payment_status = status.status
            if status.payment_method and not envelope.payment_method:
                envelope.payment_method = status.payment_method

        if not envelope.tracking_id or not envelope.payment_status:
            logger.warning("Missing essential notification fields: %s", envelope.raw)
            return ack

        await reconciler.apply_notification(session, envelope)
        return ack

    except (NotFoundError, ConflictError) as e:
        logger.warning("Notification not applied: %s", e)
        return ack
    except Exception:
        logger.exception("Notification processing failed")
        return NotificationAck(error="Logged internally")
