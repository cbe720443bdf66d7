"""
Error taxonomy for payment creation and reconciliation.

Gateway errors carry a ``transient`` flag: timeouts and connection failures
are transient and must never be read as a payment outcome. The engine itself
never retries; callers decide whether to try again later.
"""

from typing import Any, Optional


class PaymentError(Exception):
    """Base exception for everything the reconciler raises."""


class ValidationError(PaymentError):
    """Malformed payment request (amount, email or name missing/invalid)."""

    def __init__(self, errors: list[str]):
        super().__init__("Validation failed: " + "; ".join(errors))
        self.errors = errors


class GatewayError(PaymentError):
    """Base exception for failures talking to the external gateway."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        detail: Optional[Any] = None,
        transient: bool = False,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail
        self.transient = transient


class AuthenticationError(GatewayError):
    """The gateway rejected our consumer key/secret or could not be reached to authenticate."""


class SubmissionError(GatewayError):
    """The gateway rejected (or never answered) an order submission."""


class StatusQueryError(GatewayError):
    """Fetching a transaction's status from the gateway failed."""


class NotFoundError(PaymentError):
    """A signal referenced a merchant reference or tracking id we never created."""

    def __init__(
        self,
        message: str,
        merchant_reference: Optional[str] = None,
        tracking_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.merchant_reference = merchant_reference
        self.tracking_id = tracking_id


class ConflictError(PaymentError):
    """A terminal status contradicts the terminal status already recorded."""

    def __init__(
        self,
        message: str,
        current_status: Optional[str] = None,
        proposed_status: Optional[str] = None,
    ):
        super().__init__(message)
        self.current_status = current_status
        self.proposed_status = proposed_status


class ConcurrentUpdateError(ConflictError):
    """Compare-and-set kept losing to concurrent writers on the same payment."""
