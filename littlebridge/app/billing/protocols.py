"""Collaborator interfaces injected into the billing subsystem."""
from __future__ import annotations

from datetime import datetime
from typing import Dict, Mapping, Optional, Protocol

from .models import (
    AccountBillingRecord,
    AccountContact,
    NotificationKind,
    NotificationResult,
    ProcessedEvent,
)


class BillingStore(Protocol):
    """Persistence operations required by webhook ingestion and session creation."""

    def has_processed_event(self, event_id: str) -> bool:
        ...

    def record_processed_event(self, event: ProcessedEvent) -> bool:
        """Append ``event``; return ``False`` when it was already present."""

    def prune_processed_events(self, older_than: datetime) -> int:
        ...

    def get_record(self, account_id: str) -> Optional[AccountBillingRecord]:
        ...

    def get_record_by_customer(self, external_customer_id: str) -> Optional[AccountBillingRecord]:
        ...

    def save_record(
        self,
        record: AccountBillingRecord,
        *,
        expected_updated_at: Optional[datetime],
    ) -> Optional[AccountBillingRecord]:
        """Compare-and-update ``record``.

        With ``expected_updated_at`` set, the write only succeeds when the
        stored row still carries that ``updated_at``. With ``None`` the row is
        inserted and the write only succeeds when no row existed. Returns the
        stored record, or ``None`` when the comparison failed.
        """

    def ensure_record(self, account_id: str) -> AccountBillingRecord:
        """Return the account's record, creating it with status ``none``."""

    def assign_customer_id(self, account_id: str, external_customer_id: str) -> AccountBillingRecord:
        """Set ``external_customer_id`` unless the record already has one."""


class ResourceSuspender(Protocol):
    """Suspends resources gated on an account's subscription."""

    def suspend_account_resources(self, account_id: str) -> int:
        """Suspend every active dependent resource; return how many changed."""


class AccountDirectory(Protocol):
    """Looks up who to notify about an account."""

    def get_contact(self, account_id: str) -> Optional[AccountContact]:
        ...


class NotificationGateway(Protocol):
    """Sends templated billing email. Failures are reported, never raised."""

    def send(
        self,
        kind: NotificationKind,
        contact: AccountContact,
        context: Mapping[str, str],
    ) -> NotificationResult:
        ...


class PaymentProvider(Protocol):
    """External payment processor integration for hosted sessions."""

    def create_customer(self, *, email: Optional[str], name: str, metadata: Dict[str, str]) -> str:
        ...

    def create_checkout_session(
        self,
        *,
        customer_id: str,
        metadata: Dict[str, str],
        return_url: str,
        trial_days: int,
    ) -> Dict[str, object]:
        ...

    def create_portal_session(self, *, customer_id: str, return_url: str) -> Dict[str, object]:
        ...


__all__ = [
    "AccountDirectory",
    "BillingStore",
    "NotificationGateway",
    "PaymentProvider",
    "ResourceSuspender",
]
