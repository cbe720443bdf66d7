"""
Mock payment gateway for local development and tests.

Simulates the hosted-payment-page flow:
  - Configurable latency (default 100ms)
  - Configurable failure rate for order submission (default 5%)
  - Realistic tracking ids and redirect URLs
  - An in-memory status table, advanced with set_status() to play the
    part of the customer completing or abandoning the payment
"""

import asyncio
import random
import uuid
from typing import Optional

from app.config import settings
from app.engine.errors import StatusQueryError, SubmissionError
from app.gateway.base import (
    Credential,
    GatewayStatus,
    OrderRequest,
    OrderResponse,
    PaymentGateway,
)

MOCK_PAYMENT_PAGE = "https://mock-gateway.local/pay"


class MockGateway(PaymentGateway):
    def __init__(
        self,
        failure_rate: Optional[float] = None,
        latency_ms: Optional[int] = None,
    ):
        self._failure_rate = failure_rate if failure_rate is not None else settings.mock_failure_rate
        self._latency_ms = latency_ms if latency_ms is not None else settings.mock_latency_ms
        self._statuses: dict[str, str] = {}
        self._methods: dict[str, str] = {}
        self.submitted: list[OrderRequest] = []

    @property
    def name(self) -> str:
        return "mock_gateway"

    async def _simulate_latency(self) -> None:
        if self._latency_ms > 0:
            jitter = random.uniform(0.5, 1.5)
            await asyncio.sleep(self._latency_ms * jitter / 1000)

    async def authenticate(self) -> Credential:
        return Credential(token="mock-token")

    async def submit_order(self, request: OrderRequest) -> OrderResponse:
        await self._simulate_latency()

        if random.random() < self._failure_rate:
            raise SubmissionError(
                "Mock submission rejected",
                status_code=500,
                detail={"code": "mock_rejection", "message": "Mock submission rejected"},
            )

        tracking_id = str(uuid.uuid4())
        self._statuses[tracking_id] = "PENDING"
        self.submitted.append(request)

        return OrderResponse(
            tracking_id=tracking_id,
            redirect_url=f"{MOCK_PAYMENT_PAGE}?OrderTrackingId={tracking_id}",
            merchant_reference=request.merchant_reference,
        )

    async def get_status(self, tracking_id: str) -> GatewayStatus:
        await self._simulate_latency()

        if tracking_id not in self._statuses:
            raise StatusQueryError(f"Unknown tracking id: {tracking_id}", status_code=500)

        keyword = self._statuses[tracking_id]
        return GatewayStatus(
            status=keyword,
            payment_method=self._methods.get(tracking_id),
            raw={"order_tracking_id": tracking_id, "payment_status_description": keyword},
        )

    def set_status(self, tracking_id: str, keyword: str, payment_method: Optional[str] = None) -> None:
        """Simulate the customer's action on the hosted payment page."""
        self._statuses[tracking_id] = keyword
        if payment_method:
            self._methods[tracking_id] = payment_method
