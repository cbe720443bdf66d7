from fastapi import Request

from app.config import Settings
from app.gateway.base import PaymentGateway
from app.gateway.mock_gateway import MockGateway
from app.gateway.pesapal import PesapalGateway


def build_gateway(settings: Settings) -> PaymentGateway:
    """Construct the gateway selected by GATEWAY_BACKEND."""
    if settings.gateway_backend == "mock":
        return MockGateway(failure_rate=settings.mock_failure_rate, latency_ms=settings.mock_latency_ms)
    return PesapalGateway(settings)


def get_gateway(request: Request) -> PaymentGateway:
    """FastAPI dependency: the gateway owned by the running app."""
    return request.app.state.gateway


__all__ = ["PaymentGateway", "MockGateway", "PesapalGateway", "build_gateway", "get_gateway"]
