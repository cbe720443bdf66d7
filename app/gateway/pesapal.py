"""
Pesapal API v3 gateway client.

Three calls are used:
  - POST /api/Auth/RequestToken                      (consumer key/secret -> bearer token)
  - POST /api/Transactions/SubmitOrderRequest        (order -> tracking id + redirect URL)
  - GET  /api/Transactions/GetTransactionStatus      (tracking id -> status)

Pesapal reports some failures as HTTP 200 with an ``error`` object in the
body, so every response is checked for both. A rejected token invalidates the
cached credential so the next call re-authenticates instead of reusing it.
"""

import logging
import re
import time
from datetime import datetime
from typing import Any, Callable, Optional

import httpx

from app.config import Settings
from app.engine.errors import AuthenticationError, StatusQueryError, SubmissionError
from app.gateway.base import (
    Credential,
    GatewayStatus,
    OrderRequest,
    OrderResponse,
    PaymentGateway,
)
from app.gateway.credentials import CredentialCache

logger = logging.getLogger("payment_reconciler.gateway")

AUTH_PATH = "/api/Auth/RequestToken"
SUBMIT_ORDER_PATH = "/api/Transactions/SubmitOrderRequest"
TRANSACTION_STATUS_PATH = "/api/Transactions/GetTransactionStatus"

AUTH_REJECTION_STATUS_CODES = {401, 403}
AUTH_ERROR_CODE_MARKERS = ("token", "unauthorized", "credential")

# status_code field of GetTransactionStatus, used when no description is given
STATUS_CODE_KEYWORDS = {
    0: "INVALID",
    1: "COMPLETED",
    2: "FAILED",
    3: "REVERSED",
}

_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def _parse_expiry(value: Optional[str]) -> Optional[datetime]:
    """Parse Pesapal's expiryDate ("2024-08-26T12:29:30.5177702Z"). Unparseable means unknown."""
    if not value:
        return None
    text = _FRACTION_RE.sub(r"\1", value.strip()).replace("Z", "+00:00")
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        logger.warning("Unparseable token expiry from gateway: %s", value)
        return None


def _error_detail(data: Any) -> Optional[dict[str, Any]]:
    """Extract the ``error`` object Pesapal embeds in failed responses."""
    if not isinstance(data, dict):
        return None
    error = data.get("error")
    if isinstance(error, dict) and (error.get("code") or error.get("message")):
        return error
    if isinstance(error, str) and error:
        return {"message": error}
    return None


def _is_auth_rejection(status_code: int, error: Optional[dict[str, Any]]) -> bool:
    if status_code in AUTH_REJECTION_STATUS_CODES:
        return True
    code = str((error or {}).get("code") or "").lower()
    return any(marker in code for marker in AUTH_ERROR_CODE_MARKERS)


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


class PesapalGateway(PaymentGateway):
    """Pesapal v3 client with a per-instance cached bearer token."""

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._settings = settings
        self._base_url = settings.resolved_pesapal_base_url
        self._credentials = CredentialCache(settings.credential_cache_seconds, clock=clock)
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={"Accept": "application/json"},
            transport=transport,
        )

    @property
    def name(self) -> str:
        return "pesapal"

    @property
    def base_url(self) -> str:
        return self._base_url

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def authenticate(self) -> Credential:
        return await self._credentials.get(self._request_token)

    def invalidate_credential(self) -> None:
        self._credentials.invalidate()

    async def _request_token(self) -> Credential:
        if not self._settings.pesapal_consumer_key or not self._settings.pesapal_consumer_secret:
            raise AuthenticationError("Gateway consumer key/secret are not configured")

        try:
            response = await self._client.post(
                AUTH_PATH,
                json={
                    "consumer_key": self._settings.pesapal_consumer_key,
                    "consumer_secret": self._settings.pesapal_consumer_secret,
                },
                timeout=self._settings.auth_timeout_seconds,
            )
        except httpx.TimeoutException as e:
            raise AuthenticationError("Gateway authentication timed out", transient=True) from e
        except httpx.HTTPError as e:
            raise AuthenticationError(f"Gateway authentication failed: {e}", transient=True) from e

        data = _json_or_none(response)
        error = _error_detail(data)
        token = data.get("token") if isinstance(data, dict) else None

        if response.status_code >= 400 or error or not token:
            logger.error(
                "Gateway token request rejected: HTTP %d %s",
                response.status_code,
                error or "no token in response",
            )
            raise AuthenticationError(
                (error or {}).get("message") or "Failed to get gateway token",
                status_code=response.status_code,
                detail=error,
                transient=response.status_code >= 500,
            )

        logger.info("Obtained gateway credential (expires %s)", data.get("expiryDate") or "unknown")
        return Credential(token=token, expires_at=_parse_expiry(data.get("expiryDate")))

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def submit_order(self, request: OrderRequest) -> OrderResponse:
        credential = await self.authenticate()
        billing = request.billing_address
        payload = {
            "id": request.merchant_reference,
            "currency": request.currency,
            "amount": request.amount,
            "description": request.description,
            "callback_url": request.callback_url,
            "cancellation_url": request.cancellation_url,
            "notification_id": request.notification_id or self._settings.pesapal_ipn_id,
            "billing_address": {
                "email_address": billing.email_address,
                "phone_number": billing.phone_number,
                "country_code": billing.country_code,
                "first_name": billing.first_name,
                "last_name": billing.last_name,
            },
        }

        try:
            response = await self._client.post(
                SUBMIT_ORDER_PATH,
                json=payload,
                headers={"Authorization": f"Bearer {credential.token}"},
                timeout=self._settings.submit_timeout_seconds,
            )
        except httpx.TimeoutException as e:
            raise SubmissionError("Order submission timed out", transient=True) from e
        except httpx.HTTPError as e:
            raise SubmissionError(f"Order submission failed: {e}", transient=True) from e

        data = _json_or_none(response)
        error = _error_detail(data)
        tracking_id = data.get("order_tracking_id") if isinstance(data, dict) else None

        if response.status_code >= 400 or error or not tracking_id:
            if _is_auth_rejection(response.status_code, error):
                self.invalidate_credential()
            logger.error(
                "Order %s rejected by gateway: HTTP %d %s",
                request.merchant_reference,
                response.status_code,
                error or "no tracking id in response",
            )
            raise SubmissionError(
                (error or {}).get("message") or "Failed to submit order",
                status_code=response.status_code,
                detail=error or data,
                transient=response.status_code >= 500 and not error,
            )

        return OrderResponse(
            tracking_id=tracking_id,
            redirect_url=data.get("redirect_url") or "",
            merchant_reference=data.get("merchant_reference"),
        )

    async def get_status(self, tracking_id: str) -> GatewayStatus:
        credential = await self.authenticate()

        try:
            response = await self._client.get(
                TRANSACTION_STATUS_PATH,
                params={"orderTrackingId": tracking_id},
                headers={"Authorization": f"Bearer {credential.token}"},
                timeout=self._settings.status_timeout_seconds,
            )
        except httpx.TimeoutException as e:
            raise StatusQueryError("Status query timed out", transient=True) from e
        except httpx.HTTPError as e:
            raise StatusQueryError(f"Status query failed: {e}", transient=True) from e

        data = _json_or_none(response)
        error = _error_detail(data)

        if response.status_code >= 400 or error or not isinstance(data, dict):
            if _is_auth_rejection(response.status_code, error):
                self.invalidate_credential()
            logger.error(
                "Status query for %s failed: HTTP %d %s",
                tracking_id,
                response.status_code,
                error or "unreadable response",
            )
            raise StatusQueryError(
                (error or {}).get("message") or "Failed to fetch payment status",
                status_code=response.status_code,
                detail=error,
                transient=True,
            )

        keyword = data.get("payment_status_description")
        if not keyword and data.get("status_code") is not None:
            keyword = STATUS_CODE_KEYWORDS.get(data.get("status_code"))

        amount = data.get("amount")
        return GatewayStatus(
            status=keyword,
            payment_method=data.get("payment_method") or None,
            confirmation_code=data.get("confirmation_code") or None,
            amount=float(amount) if isinstance(amount, (int, float)) else None,
            currency=data.get("currency"),
            raw=data,
        )
