"""Liveness endpoint."""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from app.config import settings
from app.gateway import get_gateway
from app.gateway.base import PaymentGateway

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(gateway: PaymentGateway = Depends(get_gateway)):
    return {
        "status": "OK",
        "message": "Payment reconciler is running",
        "paymentProvider": gateway.name,
        "environment": settings.pesapal_environment,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
