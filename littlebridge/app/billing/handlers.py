"""Handlers for the processor events that drive billing status."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from .dispatcher import SideEffectDispatcher
from .errors import ConcurrentUpdateError, MalformedEventError
from .models import (
    ACCOUNT_METADATA_KEY,
    AccountBillingRecord,
    BillingEventType,
    BillingStatus,
    HandlerOutcome,
    HandlerResult,
    InvoiceSummary,
    StatusTransition,
    WebhookEvent,
)
from .protocols import BillingStore
from .status_mapper import map_processor_status

logger = logging.getLogger(__name__)

RecordChange = Callable[[Optional[AccountBillingRecord]], Optional[AccountBillingRecord]]


class EventHandler(Protocol):
    """Common interface for every routed event type."""

    def handle(self, event: WebhookEvent) -> HandlerResult:
        ...


def _object_id(value: Any) -> Optional[str]:
    """Processor references arrive either as ids or as expanded objects."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, Mapping):
        identifier = value.get("id")
        return str(identifier) if identifier else None
    return None


def _from_unix(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def _log_context(event: WebhookEvent, **extra: Any) -> Dict[str, Any]:
    context: Dict[str, Any] = {"billing_event_id": event.id, "billing_event_type": event.type}
    context.update({f"billing_{key}": value for key, value in extra.items()})
    return context


class _RecordHandler:
    """Shared compare-and-update loop for handlers that write a billing record."""

    def __init__(
        self,
        store: BillingStore,
        dispatcher: SideEffectDispatcher,
        *,
        retry_attempts: int = 3,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.retry_attempts = max(1, retry_attempts)

    def _apply(
        self,
        account_id: str,
        current: Optional[AccountBillingRecord],
        change: RecordChange,
    ) -> StatusTransition:
        for _ in range(self.retry_attempts):
            updated = change(current)
            if updated is None:
                if current is None:
                    raise LookupError(f"Billing record {account_id} disappeared")
                return StatusTransition(
                    record=current, previous=current.status, current=current.status, written=False
                )

            stored = self.store.save_record(
                updated,
                expected_updated_at=current.updated_at if current is not None else None,
            )
            if stored is not None:
                previous = current.status if current is not None else BillingStatus.NONE.value
                return StatusTransition(record=stored, previous=previous, current=stored.status)

            logger.info(
                "Billing record changed concurrently; retrying",
                extra={"billing_account_id": account_id},
            )
            current = self.store.get_record(account_id)

        raise ConcurrentUpdateError(account_id, self.retry_attempts)


class _CustomerEventHandler(_RecordHandler):
    """Base for events attributed to an account through the processor customer."""

    def _resolve(self, event: WebhookEvent) -> Optional[AccountBillingRecord]:
        customer_id = _object_id(event.object.get("customer"))
        if not customer_id:
            logger.warning("Event has no customer reference", extra=_log_context(event))
            return None

        record = self.store.get_record_by_customer(customer_id)
        if record is None:
            logger.warning(
                "No billing record for customer",
                extra=_log_context(event, customer_id=customer_id),
            )
        return record

    def _skip_outdated(self, event: WebhookEvent, record: AccountBillingRecord) -> HandlerResult:
        logger.info(
            "Ignoring event older than the stored status",
            extra=_log_context(
                event,
                account_id=record.account_id,
                status=record.status,
                status_event_at=record.status_event_at.isoformat() if record.status_event_at else None,
            ),
        )
        return HandlerResult(outcome=HandlerOutcome.APPLIED, account_id=record.account_id)


def status_is_newer(record: AccountBillingRecord, event_created: datetime) -> bool:
    """Return ``True`` when ``record.status`` came from an event after ``event_created``."""

    return record.status_event_at is not None and record.status_event_at > event_created


class CheckoutCompletedHandler(_RecordHandler):
    """Activates the account named in the checkout session's metadata."""

    def handle(self, event: WebhookEvent) -> HandlerResult:
        session = event.object
        metadata = session.get("metadata") if isinstance(session.get("metadata"), Mapping) else {}
        account_id = metadata.get(ACCOUNT_METADATA_KEY)
        if not account_id:
            logger.warning(
                "Checkout session has no account metadata",
                extra=_log_context(event),
            )
            return HandlerResult.ignored()

        account_id = str(account_id)
        customer_id = _object_id(session.get("customer"))
        subscription_id = _object_id(session.get("subscription"))

        def change(current: Optional[AccountBillingRecord]) -> AccountBillingRecord:
            if current is None:
                return AccountBillingRecord(
                    account_id=account_id,
                    external_customer_id=customer_id,
                    external_subscription_id=subscription_id,
                    status=BillingStatus.ACTIVE,
                    status_event_at=event.created,
                )
            if current.external_customer_id and customer_id and current.external_customer_id != customer_id:
                logger.warning(
                    "Checkout reported a different customer; keeping the original",
                    extra=_log_context(
                        event,
                        account_id=account_id,
                        customer_id=customer_id,
                        existing_customer_id=current.external_customer_id,
                    ),
                )
            return current.model_copy(
                update={
                    "external_customer_id": current.external_customer_id or customer_id,
                    "external_subscription_id": subscription_id or current.external_subscription_id,
                    "status": BillingStatus.ACTIVE.value,
                    "status_event_at": event.created,
                }
            )

        transition = self._apply(account_id, self.store.get_record(account_id), change)
        self.dispatcher.status_changed(transition, occurred_at=event.created)
        logger.info("Subscription activated", extra=_log_context(event, account_id=account_id))
        return HandlerResult(outcome=HandlerOutcome.APPLIED, account_id=account_id)


class SubscriptionUpdatedHandler(_CustomerEventHandler):
    """Applies the processor's authoritative subscription status."""

    def handle(self, event: WebhookEvent) -> HandlerResult:
        subscription = event.object
        processor_status = subscription.get("status")
        if not processor_status:
            raise MalformedEventError("Subscription event has no status")

        record = self._resolve(event)
        if record is None:
            return HandlerResult.ignored()

        new_status = map_processor_status(str(processor_status))
        subscription_id = _object_id(subscription.get("id"))

        def change(current: Optional[AccountBillingRecord]) -> Optional[AccountBillingRecord]:
            if current is None or status_is_newer(current, event.created):
                return None
            return current.model_copy(
                update={
                    "status": new_status,
                    "external_subscription_id": subscription_id or current.external_subscription_id,
                    "status_event_at": event.created,
                }
            )

        transition = self._apply(record.account_id, record, change)
        if not transition.written:
            return self._skip_outdated(event, transition.record)
        self.dispatcher.status_changed(transition, occurred_at=event.created)
        logger.info(
            "Subscription updated",
            extra=_log_context(event, account_id=record.account_id, status=transition.current),
        )
        return HandlerResult(outcome=HandlerOutcome.APPLIED, account_id=record.account_id)


class SubscriptionDeletedHandler(_CustomerEventHandler):
    """Cancels the account and suspends everything gated on it."""

    def handle(self, event: WebhookEvent) -> HandlerResult:
        record = self._resolve(event)
        if record is None:
            return HandlerResult.ignored()

        subscription_id = _object_id(event.object.get("id"))

        def replaced(current: AccountBillingRecord) -> bool:
            # A deletion of a subscription the account has since replaced.
            return bool(
                subscription_id
                and current.external_subscription_id
                and current.external_subscription_id != subscription_id
                and status_is_newer(current, event.created)
            )

        def change(current: Optional[AccountBillingRecord]) -> Optional[AccountBillingRecord]:
            if current is None or replaced(current):
                return None
            return current.model_copy(
                update={"status": BillingStatus.CANCELED.value, "status_event_at": event.created}
            )

        transition = self._apply(record.account_id, record, change)
        if not transition.written:
            return self._skip_outdated(event, transition.record)
        ended_at = _from_unix(event.object.get("ended_at")) or event.created
        self.dispatcher.subscription_canceled(transition, ended_at=ended_at)
        logger.info("Subscription canceled", extra=_log_context(event, account_id=record.account_id))
        return HandlerResult(outcome=HandlerOutcome.APPLIED, account_id=record.account_id)


def invoice_status_is_stale(record: AccountBillingRecord, target: str, invoice_created: datetime) -> bool:
    """Return ``True`` when an invoice event may overwrite ``record.status``.

    Invoice events never resurrect a canceled account and never override a
    status written by an event at least as recent as the invoice.
    """

    if record.is_canceled or record.status == target:
        return False
    if record.status_event_at is None:
        return True
    return record.status_event_at < invoice_created


class _InvoiceHandler(_CustomerEventHandler):
    target_status: str
    amount_field: str

    def _notify(self, record: AccountBillingRecord, invoice: InvoiceSummary) -> None:
        raise NotImplementedError

    def _summary(self, event: WebhookEvent) -> InvoiceSummary:
        invoice = event.object
        period_end = None
        lines = invoice.get("lines")
        if isinstance(lines, Mapping):
            entries = lines.get("data")
            if isinstance(entries, list) and entries and isinstance(entries[0], Mapping):
                period = entries[0].get("period")
                if isinstance(period, Mapping):
                    period_end = _from_unix(period.get("end"))
        try:
            amount = int(invoice.get(self.amount_field) or 0)
        except (TypeError, ValueError) as exc:
            raise MalformedEventError(f"Invoice {self.amount_field} is not an integer") from exc
        return InvoiceSummary(
            invoice_id=_object_id(invoice.get("id")),
            amount=max(0, amount),
            currency=str(invoice.get("currency") or "aud"),
            created=_from_unix(invoice.get("created")) or event.created,
            period_end=period_end,
            next_payment_attempt=_from_unix(invoice.get("next_payment_attempt")),
        )

    def handle(self, event: WebhookEvent) -> HandlerResult:
        summary = self._summary(event)
        record = self._resolve(event)
        if record is None:
            return HandlerResult.ignored()

        def change(current: Optional[AccountBillingRecord]) -> Optional[AccountBillingRecord]:
            if current is None:
                return None
            if not invoice_status_is_stale(current, self.target_status, event.created):
                return None
            return current.model_copy(
                update={"status": self.target_status, "status_event_at": event.created}
            )

        transition = self._apply(record.account_id, record, change)
        if transition.changed:
            logger.info(
                "Invoice event refreshed stale status",
                extra=_log_context(
                    event,
                    account_id=record.account_id,
                    previous_status=transition.previous,
                    status=transition.current,
                ),
            )
        self._notify(transition.record, summary)
        return HandlerResult(
            outcome=HandlerOutcome.APPLIED,
            account_id=record.account_id,
            amount=summary.amount,
            currency=summary.currency,
        )


class InvoicePaidHandler(_InvoiceHandler):
    target_status = BillingStatus.ACTIVE.value
    amount_field = "amount_paid"

    def _notify(self, record: AccountBillingRecord, invoice: InvoiceSummary) -> None:
        self.dispatcher.payment_succeeded(record, invoice)


class InvoicePaymentFailedHandler(_InvoiceHandler):
    target_status = BillingStatus.PAST_DUE.value
    amount_field = "amount_due"

    def _notify(self, record: AccountBillingRecord, invoice: InvoiceSummary) -> None:
        self.dispatcher.payment_failed(record, invoice)


def build_handler_registry(
    store: BillingStore,
    dispatcher: SideEffectDispatcher,
    *,
    retry_attempts: int = 3,
) -> Dict[str, EventHandler]:
    """Map each handled event type to its handler."""

    kwargs = {"retry_attempts": retry_attempts}
    return {
        BillingEventType.CHECKOUT_COMPLETED.value: CheckoutCompletedHandler(store, dispatcher, **kwargs),
        BillingEventType.SUBSCRIPTION_UPDATED.value: SubscriptionUpdatedHandler(store, dispatcher, **kwargs),
        BillingEventType.SUBSCRIPTION_DELETED.value: SubscriptionDeletedHandler(store, dispatcher, **kwargs),
        BillingEventType.INVOICE_PAID.value: InvoicePaidHandler(store, dispatcher, **kwargs),
        BillingEventType.INVOICE_PAYMENT_FAILED.value: InvoicePaymentFailedHandler(store, dispatcher, **kwargs),
    }


__all__ = [
    "CheckoutCompletedHandler",
    "EventHandler",
    "InvoicePaidHandler",
    "InvoicePaymentFailedHandler",
    "SubscriptionDeletedHandler",
    "SubscriptionUpdatedHandler",
    "build_handler_registry",
    "invoice_status_is_stale",
]
