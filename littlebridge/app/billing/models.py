"""Domain models for the billing system."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Metadata key carried on checkout sessions and subscriptions. Webhook events
# are attributed to an account exclusively through this key.
ACCOUNT_METADATA_KEY = "account_id"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BillingStatus(str, Enum):
    """Internal subscription status used to gate access."""

    NONE = "none"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


SERVICE_ENABLED_STATUSES = frozenset(
    {BillingStatus.ACTIVE.value, BillingStatus.TRIALING.value, BillingStatus.PAST_DUE.value}
)


class BillingEventType(str, Enum):
    """Processor event types that the application reacts to."""

    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"


class HandlerOutcome(str, Enum):
    """Result of routing one event to its handler."""

    APPLIED = "applied"
    IGNORED = "ignored"


class AccountBillingRecord(BaseModel):
    """Durable per-account subscription state."""

    account_id: str
    external_customer_id: Optional[str] = None
    external_subscription_id: Optional[str] = None
    # Plain string: unrecognized processor statuses are stored as reported.
    status: str = BillingStatus.NONE.value
    status_event_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("status", mode="before")
    @classmethod
    def _plain_status(cls, value: object) -> object:
        if isinstance(value, BillingStatus):
            return value.value
        return value

    @property
    def is_service_enabled(self) -> bool:
        """Return ``True`` when the account may operate its listings."""
        return self.status in SERVICE_ENABLED_STATUSES

    @property
    def is_canceled(self) -> bool:
        return self.status == BillingStatus.CANCELED.value


class ProcessedEvent(BaseModel):
    """Append-only record of a webhook event that was fully handled."""

    event_id: str
    event_type: str
    account_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    received_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class WebhookEvent(BaseModel):
    """Parsed processor event envelope."""

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    data: Dict[str, Any]
    created: datetime

    model_config = ConfigDict(frozen=True)

    @property
    def object(self) -> Dict[str, Any]:
        """Return the event's ``data.object`` payload, or an empty mapping."""
        payload = self.data.get("object")
        return payload if isinstance(payload, dict) else {}


class HandlerResult(BaseModel):
    """What a handler did with an event, used for the Event Store entry."""

    outcome: HandlerOutcome
    account_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def ignored(cls) -> "HandlerResult":
        return cls(outcome=HandlerOutcome.IGNORED)


class StatusTransition(BaseModel):
    """A status change applied to a billing record."""

    record: AccountBillingRecord
    previous: str
    current: str
    # False when the record was left untouched because the event was outdated.
    written: bool = True

    model_config = ConfigDict(frozen=True)

    @property
    def changed(self) -> bool:
        return self.previous != self.current


class InvoiceSummary(BaseModel):
    """Invoice details quoted in billing notifications."""

    invoice_id: Optional[str] = None
    amount: int = Field(default=0, ge=0)
    currency: str = "AUD"
    created: Optional[datetime] = None
    period_end: Optional[datetime] = None
    next_payment_attempt: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @property
    def formatted_amount(self) -> str:
        return f"{self.amount / 100:.2f} {self.currency}"


class AccountContact(BaseModel):
    """Recipient details for an account's billing notifications."""

    account_id: str
    display_name: str
    email: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class NotificationKind(str, Enum):
    PAYMENT_CONFIRMATION = "payment_confirmation"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_CANCELED = "subscription_canceled"


class NotificationResult(BaseModel):
    """Outcome of one notification attempt; never raised, only inspected."""

    kind: NotificationKind
    account_id: str
    delivered: bool
    error: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class CheckoutSession(BaseModel):
    """Hosted checkout page opened for an account."""

    account_id: str
    session_id: str
    checkout_url: str

    model_config = ConfigDict(frozen=True)


class PortalSession(BaseModel):
    account_id: str
    portal_url: str

    model_config = ConfigDict(frozen=True)
