"""
Payment endpoints.

POST /payments                          — Create a payment and get the gateway redirect URL.
GET  /payments/callback                 — Browser return from the hosted payment page.
GET  /payments/cancel                   — Browser cancellation redirect.
POST /payments/ipn, GET /payments/ipn   — Gateway push notification (always 200).
GET  /payments/status/{reference}       — Persisted record plus a live gateway status.
GET  /payments/{reference}/trace        — Full audit trail for a payment.
GET  /payments/gateway/auth-check       — Verify the configured gateway credentials.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.channels import adapters
from app.channels.envelope import NotificationAck
from app.config import settings
from app.database import get_session
from app.engine import reconciler
from app.engine.errors import GatewayError, NotFoundError, ValidationError
from app.gateway import get_gateway
from app.gateway.base import PaymentGateway
from app.models.payment import AuditLog, Payment
from app.store import payments as store

logger = logging.getLogger("payment_reconciler.api")

router = APIRouter(prefix="/payments", tags=["payments"])


class CreatePaymentBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    amount: Optional[float] = None
    currency: Optional[str] = None
    customer_email: Optional[str] = Field(None, alias="customerEmail")
    customer_name: Optional[str] = Field(None, alias="customerName")
    customer_phone: Optional[str] = Field(None, alias="customerPhone")
    description: Optional[str] = None


class CreatePaymentResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    merchant_reference: str = Field(alias="merchantReference")
    tracking_id: str = Field(alias="trackingId")
    redirect_url: str = Field(alias="redirectUrl")


class PaymentDetail(BaseModel):
    merchant_reference: str
    tracking_id: Optional[str]
    amount: float
    currency: str
    description: str
    status: str
    payment_method: Optional[str]
    customer_email: str
    customer_name: str
    customer_phone: Optional[str]
    notification_received: bool
    last_notification_payload: Optional[dict] = None
    created_at: Optional[str]
    updated_at: Optional[str]

    model_config = {"from_attributes": True}


class PaymentStatusResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    payment: PaymentDetail
    gateway_status: Optional[dict[str, Any]] = Field(None, alias="gatewayStatus")


class AuditEntry(BaseModel):
    id: int
    action: str
    source: Optional[str]
    from_status: Optional[str]
    to_status: Optional[str]
    details: Optional[dict] = None
    timestamp: Optional[str]


class PaymentTrace(BaseModel):
    payment: PaymentDetail
    audit_trail: list[AuditEntry]


class AuthCheckResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    message: str
    environment: str
    base_url: Optional[str] = Field(None, alias="baseUrl")
    timestamp: str
    error: Optional[str] = None


def _load_json(text: Optional[str]) -> Optional[dict]:
    if not text:
        return None
    try:
        value = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return {"raw": text}
    return value if isinstance(value, dict) else {"raw": value}


def _payment_to_detail(p: Payment) -> PaymentDetail:
    return PaymentDetail(
        merchant_reference=p.merchant_reference,
        tracking_id=p.tracking_id,
        amount=p.amount,
        currency=p.currency,
        description=p.description,
        status=p.status,
        payment_method=p.payment_method,
        customer_email=p.customer_email,
        customer_name=p.customer_name,
        customer_phone=p.customer_phone,
        notification_received=bool(p.notification_received),
        last_notification_payload=_load_json(p.last_notification_payload),
        created_at=p.created_at.isoformat() if p.created_at else None,
        updated_at=p.updated_at.isoformat() if p.updated_at else None,
    )


@router.post("", response_model=CreatePaymentResponse, status_code=201)
async def create_payment(
    body: CreatePaymentBody,
    session: AsyncSession = Depends(get_session),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """Create a pending payment, submit it to the gateway, and return the redirect URL."""
    request = reconciler.PaymentRequest(
        amount=body.amount,
        currency=body.currency,
        customer_email=body.customer_email,
        customer_name=body.customer_name,
        customer_phone=body.customer_phone,
        description=body.description,
    )
    try:
        created = await reconciler.create_payment(session, gateway, request)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail={"error": "Validation failed", "details": e.errors})
    except GatewayError as e:
        raise HTTPException(
            status_code=502,
            detail={"error": "Failed to create payment request", "details": str(e)},
        )

    return CreatePaymentResponse(
        merchant_reference=created.merchant_reference,
        tracking_id=created.tracking_id,
        redirect_url=created.redirect_url,
    )


@router.get("/callback")
async def payment_callback(request: Request, session: AsyncSession = Depends(get_session)):
    """Browser returning from the hosted payment page."""
    url = await adapters.handle_callback(session, request.query_params)
    return RedirectResponse(url, status_code=302)


@router.get("/cancel")
async def payment_cancel(request: Request, session: AsyncSession = Depends(get_session)):
    """Browser cancelling on the hosted payment page."""
    url = await adapters.handle_cancel(session, request.query_params)
    return RedirectResponse(url, status_code=302)


@router.post("/ipn", response_model=NotificationAck, response_model_exclude_none=True)
async def payment_ipn_post(
    request: Request,
    session: AsyncSession = Depends(get_session),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """
    Gateway push notification.

    Always answers 200 with a success marker, whatever the body contains;
    anything else makes the gateway redeliver.
    """
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("Notification body is not JSON")
        payload = {}
    if not payload:
        payload = dict(request.query_params)
    return await adapters.handle_notification(session, payload, gateway)


@router.get("/ipn", response_model=NotificationAck, response_model_exclude_none=True)
async def payment_ipn_get(
    request: Request,
    session: AsyncSession = Depends(get_session),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """Gateway push notification delivered as query parameters."""
    return await adapters.handle_notification(session, dict(request.query_params), gateway)


@router.get("/status/{merchant_reference}", response_model=PaymentStatusResponse)
async def payment_status(
    merchant_reference: str,
    session: AsyncSession = Depends(get_session),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """Persisted payment plus a live re-query of the gateway's status."""
    try:
        result = await reconciler.poll_status(session, gateway, merchant_reference)
    except NotFoundError:
        raise HTTPException(status_code=404, detail=f"Payment not found: {merchant_reference}")
    except GatewayError as e:
        raise HTTPException(status_code=502, detail={"error": "Failed to fetch status", "details": str(e)})

    return PaymentStatusResponse(
        payment=_payment_to_detail(result.payment),
        gateway_status=result.gateway_status.raw if result.gateway_status else None,
    )


@router.get("/gateway/auth-check", response_model=AuthCheckResponse, response_model_exclude_none=True)
async def gateway_auth_check(gateway: PaymentGateway = Depends(get_gateway)):
    """Check that the configured gateway credentials authenticate. Never returns the token."""
    error = None
    try:
        await gateway.authenticate()
    except GatewayError as e:
        error = str(e)

    return AuthCheckResponse(
        success=error is None,
        message=f"{gateway.name} authentication {'successful' if error is None else 'failed'}",
        environment=settings.pesapal_environment,
        base_url=getattr(gateway, "base_url", None),
        timestamp=datetime.now(timezone.utc).isoformat(),
        error=error,
    )


@router.get("/{merchant_reference}/trace", response_model=PaymentTrace)
async def payment_trace(merchant_reference: str, session: AsyncSession = Depends(get_session)):
    """
    Full audit trail for a payment.

    Returns the payment plus every audit entry in order, including signals
    that were ignored or rejected as conflicts and so never show up in the
    payment's own status.
    """
    payment = await store.find_by_reference(session, merchant_reference)
    if not payment:
        raise HTTPException(status_code=404, detail=f"Payment not found: {merchant_reference}")

    result = await session.execute(
        select(AuditLog)
        .where(AuditLog.payment_id == payment.id)
        .order_by(AuditLog.timestamp.asc(), AuditLog.id.asc())
    )

    audit_trail = [
        AuditEntry(
            id=log.id,
            action=log.action,
            source=log.source,
            from_status=log.from_status,
            to_status=log.to_status,
            details=_load_json(log.details),
            timestamp=log.timestamp.isoformat() if log.timestamp else None,
        )
        for log in result.scalars().all()
    ]

    return PaymentTrace(payment=_payment_to_detail(payment), audit_trail=audit_trail)
