"""
Payment Reconciler — hosted-checkout payments with multi-channel reconciliation.

Creates payment orders on an external gateway (Pesapal v3) and converges the
gateway's redirect callbacks, cancellation redirects, push notifications and
on-demand status polls onto one terminal status per payment.

Start the server:
    uvicorn app.main:app --reload

Run against the in-process mock gateway:
    GATEWAY_BACKEND=mock uvicorn app.main:app --reload
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.api.health import router as health_router
from app.api.payments import router as payments_router
from app.config import settings
from app.database import init_db
from app.gateway import build_gateway

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize the database and the gateway client; close the client on shutdown."""
    await init_db()
    app.state.gateway = build_gateway(settings)
    logging.getLogger("payment_reconciler").info(
        "Gateway: %s (%s)", app.state.gateway.name, settings.pesapal_environment
    )
    yield
    await app.state.gateway.aclose()


app = FastAPI(
    title="Payment Reconciler",
    description=(
        "Hosted-checkout payment service. Submits orders to the payment gateway and "
        "reconciles redirect callbacks, cancellations, push notifications and status "
        "polls onto a single idempotent, monotone payment status with a full audit trail."
    ),
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health_router)
app.include_router(payments_router, prefix="/api")
