"""
Typed envelope for inbound push notifications.

The gateway's notification bodies vary in shape and spelling between API
versions and integrations. The handful of fields we act on are promoted to
attributes (accepting each known spelling); the whole body is kept verbatim
in ``raw`` for the audit trail and is never interpreted further.
"""

from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, PrivateAttr, field_validator


class NotificationEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    tracking_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("tracking_id", "trackingId", "order_tracking_id", "OrderTrackingId"),
    )
    payment_status: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "payment_status", "paymentStatus", "payment_status_description", "PaymentStatus"
        ),
    )
    payment_method: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("payment_method", "paymentMethod", "PaymentMethod"),
    )
    merchant_reference: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "merchant_reference", "merchantReference", "OrderMerchantReference"
        ),
    )
    amount: Optional[float] = None
    currency: Optional[str] = None
    _raw: dict[str, Any] = PrivateAttr(default_factory=dict)

    @property
    def raw(self) -> dict[str, Any]:
        return self._raw

    @field_validator("tracking_id", "payment_status", "payment_method", "merchant_reference", "currency", mode="before")
    @classmethod
    def _text_or_none(cls, value: Any) -> Optional[str]:
        if value is None or isinstance(value, (dict, list)):
            return None
        text = str(value).strip()
        return text or None

    @field_validator("amount", mode="before")
    @classmethod
    def _amount_or_none(cls, value: Any) -> Optional[float]:
        if value is None or isinstance(value, bool):
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @classmethod
    def from_payload(cls, payload: Any) -> "NotificationEnvelope":
        """Build an envelope from any decoded body. Non-dict bodies yield an empty envelope."""
        data = dict(payload) if isinstance(payload, dict) else {}
        envelope = cls.model_validate(data)
        envelope._raw = data
        return envelope


class NotificationAck(BaseModel):
    """Acknowledgment returned to the gateway for every push notification."""

    status: str = "success"
    message: str = "IPN processed"
    error: Optional[str] = None
    orderTrackingId: Optional[str] = None
    orderMerchantReference: Optional[str] = None
