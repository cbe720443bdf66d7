"""
Abstract payment gateway interface.

The reconciler only needs three things from a gateway: authenticate, submit
an order, and report a transaction's current status. The production adapter
wraps Pesapal API v3; a mock implementation stands in for local development
and tests.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional


@dataclass
class Credential:
    """Short-lived bearer token returned by the gateway."""

    token: str
    expires_at: Optional[datetime] = None  # As reported by the gateway


@dataclass
class BillingAddress:
    email_address: str
    first_name: str
    last_name: str
    phone_number: str = ""
    country_code: str = ""


@dataclass
class OrderRequest:
    """Request to create an order on the gateway's hosted payment page."""

    merchant_reference: str
    amount: float
    currency: str
    description: str
    callback_url: str
    cancellation_url: str
    billing_address: BillingAddress
    notification_id: Optional[str] = None  # None uses the gateway's configured IPN id


@dataclass
class OrderResponse:
    """Gateway's answer to an accepted order."""

    tracking_id: str
    redirect_url: str
    merchant_reference: Optional[str] = None


@dataclass
class GatewayStatus:
    """A transaction's status as the gateway reports it, unmapped."""

    status: Optional[str]  # Gateway keyword, e.g. "COMPLETED"
    payment_method: Optional[str] = None
    confirmation_code: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)


def split_customer_name(full_name: str) -> tuple[str, str]:
    """Split "Jane Mary Doe" into ("Jane", "Mary Doe"). A single word has no last name."""
    parts = (full_name or "").split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


class PaymentGateway(ABC):
    """Abstract base class for payment gateways."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Gateway identifier (e.g. 'pesapal')."""
        ...

    @abstractmethod
    async def authenticate(self) -> Credential:
        """
        Return a valid bearer credential, from cache when possible.

        Raises:
            AuthenticationError: Credentials rejected or gateway unreachable.
        """
        ...

    @abstractmethod
    async def submit_order(self, request: OrderRequest) -> OrderResponse:
        """
        Submit an order and return the gateway's tracking id and redirect URL.

        Raises:
            AuthenticationError: Could not obtain a credential.
            SubmissionError: The gateway rejected the order or timed out.
        """
        ...

    @abstractmethod
    async def get_status(self, tracking_id: str) -> GatewayStatus:
        """
        Query a transaction's current status. Never touches local state.

        Raises:
            AuthenticationError: Could not obtain a credential.
            StatusQueryError: Transport or gateway-side failure.
        """
        ...

    def verify_notification(self, payload: dict[str, Any]) -> bool:
        """Inbound notifications are unsigned for this API version; accept all."""
        return True

    async def aclose(self) -> None:
        """Release any network resources held by the gateway."""
        return None
