"""Core services coordinating webhook ingestion and hosted billing sessions."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Mapping, Optional

from pydantic import ValidationError

from .errors import (
    AccountNotFoundError,
    MalformedEventError,
    MissingCustomerError,
    SignatureVerificationError,
    SubscriptionAlreadyActiveError,
)
from .handlers import EventHandler
from .models import (
    ACCOUNT_METADATA_KEY,
    CheckoutSession,
    HandlerOutcome,
    PortalSession,
    ProcessedEvent,
    WebhookEvent,
)
from .protocols import AccountDirectory, BillingStore, PaymentProvider
from .signature import verify_signature

logger = logging.getLogger(__name__)

PLATFORM_METADATA = {"platform": "littlebridge"}


def parse_event(payload: bytes) -> WebhookEvent:
    """Parse an authenticated body into a :class:`WebhookEvent`."""

    try:
        return WebhookEvent.model_validate_json(payload)
    except ValidationError as exc:
        raise MalformedEventError("Webhook body is not a valid event envelope") from exc


@dataclass
class WebhookProcessor:
    """Verifies, deduplicates and routes processor webhook deliveries.

    The processor holds no per-request state; everything durable goes
    through ``store``. Handler exceptions propagate unchanged so the HTTP
    layer answers 500 and the processor redelivers the event, which is only
    recorded as processed once its handler has succeeded.
    """

    store: BillingStore
    handlers: Mapping[str, EventHandler]
    webhook_secret: str
    tolerance_seconds: int = 300

    def process(
        self,
        payload: bytes,
        signature_header: Optional[str],
        *,
        client_ip: Optional[str] = None,
    ) -> Dict[str, bool]:
        try:
            verify_signature(
                payload,
                signature_header,
                secret=self.webhook_secret,
                tolerance_seconds=self.tolerance_seconds,
            )
        except SignatureVerificationError as exc:
            logger.warning(
                "Rejected webhook delivery: %s",
                exc.message,
                extra={"client_ip": client_ip},
            )
            raise

        event = parse_event(payload)
        log_context = {"billing_event_id": event.id, "billing_event_type": event.type}

        if self.store.has_processed_event(event.id):
            logger.info("Duplicate webhook delivery skipped", extra=log_context)
            return {"received": True, "duplicate": True}

        handler = self.handlers.get(event.type)
        if handler is None:
            logger.info("Unhandled webhook event type", extra=log_context)
            return {"received": True}

        result = handler.handle(event)
        if result.outcome == HandlerOutcome.APPLIED:
            self.store.record_processed_event(
                ProcessedEvent(
                    event_id=event.id,
                    event_type=event.type,
                    account_id=result.account_id,
                    amount=result.amount,
                    currency=result.currency,
                )
            )
        return {"received": True}


def prune_processed_events(
    store: BillingStore,
    *,
    retention_days: int,
    now: Optional[datetime] = None,
) -> int:
    """Delete Event Store entries older than the redelivery window."""

    reference = now or datetime.now(timezone.utc)
    removed = store.prune_processed_events(reference - timedelta(days=retention_days))
    logger.info("Pruned processed billing events", extra={"billing_pruned_count": removed})
    return removed


@dataclass
class BillingSessionService:
    """Opens hosted checkout and portal sessions for an account."""

    store: BillingStore
    provider: PaymentProvider
    directory: AccountDirectory
    trial_days: int = 30

    def create_checkout_session(self, account_id: str, *, return_url: str) -> CheckoutSession:
        contact = self.directory.get_contact(account_id)
        if contact is None:
            raise AccountNotFoundError(account_id)

        record = self.store.ensure_record(account_id)
        if record.is_service_enabled:
            raise SubscriptionAlreadyActiveError(account_id)

        metadata = {ACCOUNT_METADATA_KEY: account_id, **PLATFORM_METADATA}
        customer_id = record.external_customer_id
        if not customer_id:
            created_id = self.provider.create_customer(
                email=contact.email,
                name=contact.display_name,
                metadata=metadata,
            )
            # Another request may have won the race; the stored id is kept.
            customer_id = self.store.assign_customer_id(account_id, created_id).external_customer_id or created_id

        session = self.provider.create_checkout_session(
            customer_id=customer_id,
            metadata=metadata,
            return_url=return_url,
            trial_days=self.trial_days,
        )
        return CheckoutSession(
            account_id=account_id,
            session_id=str(session.get("id") or ""),
            checkout_url=str(session.get("url") or ""),
        )

    def create_portal_session(self, account_id: str, *, return_url: str) -> PortalSession:
        record = self.store.get_record(account_id)
        if record is None or not record.external_customer_id:
            raise MissingCustomerError(account_id)

        session = self.provider.create_portal_session(
            customer_id=record.external_customer_id,
            return_url=return_url,
        )
        return PortalSession(account_id=account_id, portal_url=str(session.get("url") or ""))


__all__ = [
    "BillingSessionService",
    "WebhookProcessor",
    "parse_event",
    "prune_processed_events",
]
