"""Cascading consequences of billing status changes."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

from .models import (
    AccountBillingRecord,
    BillingStatus,
    InvoiceSummary,
    NotificationKind,
    NotificationResult,
    StatusTransition,
)
from .protocols import AccountDirectory, NotificationGateway, ResourceSuspender

logger = logging.getLogger(__name__)

_UNKNOWN_VALUE = "—"


def _format_date(value: Optional[datetime]) -> str:
    return value.strftime("%d/%m/%Y") if value else _UNKNOWN_VALUE


@dataclass
class SideEffectDispatcher:
    """Applies resource suspension and billing notifications for handlers.

    Suspension runs before any notification and its errors propagate, so a
    failed suspension fails the handler and the processor redelivers the
    event. Notifications are best effort: :meth:`_notify` is the only place
    a notification is attempted and its result is logged, then discarded.
    """

    suspender: ResourceSuspender
    directory: AccountDirectory
    gateway: NotificationGateway
    app_base_url: str = ""

    def status_changed(self, transition: StatusTransition, *, occurred_at: datetime) -> None:
        """React to a status written from a ``subscription.updated`` event."""

        record = transition.record
        if transition.current == BillingStatus.CANCELED.value:
            self._suspend(record)
            if transition.changed:
                self._notify_canceled(record, ended_at=occurred_at)
            return

        if not transition.changed:
            return

        if transition.current == BillingStatus.PAST_DUE.value:
            self._notify(NotificationKind.PAYMENT_FAILED, record, self._dunning_context(None))
        elif transition.current == BillingStatus.ACTIVE.value and transition.previous in {
            BillingStatus.CANCELED.value,
            BillingStatus.PAST_DUE.value,
        }:
            # Resources paused while canceled or past due stay paused until
            # the account owner resumes them.
            logger.info(
                "Account reactivated without resuming resources",
                extra={"billing_account_id": record.account_id, "billing_previous_status": transition.previous},
            )

    def subscription_canceled(self, transition: StatusTransition, *, ended_at: datetime) -> None:
        """Suspend every dependent resource, then send the cancellation notice."""

        self._suspend(transition.record)
        self._notify_canceled(transition.record, ended_at=ended_at)

    def payment_succeeded(self, record: AccountBillingRecord, invoice: InvoiceSummary) -> None:
        context = self._base_context(record)
        context.update(
            {
                "amount_paid": invoice.formatted_amount,
                "invoice_date": _format_date(invoice.created),
                "next_billing_date": _format_date(invoice.period_end),
            }
        )
        self._notify(NotificationKind.PAYMENT_CONFIRMATION, record, context)

    def payment_failed(self, record: AccountBillingRecord, invoice: InvoiceSummary) -> None:
        self._notify(NotificationKind.PAYMENT_FAILED, record, self._dunning_context(invoice))

    def _suspend(self, record: AccountBillingRecord) -> None:
        suspended = self.suspender.suspend_account_resources(record.account_id)
        logger.info(
            "Suspended dependent resources",
            extra={"billing_account_id": record.account_id, "billing_suspended_count": suspended},
        )

    def _notify_canceled(self, record: AccountBillingRecord, *, ended_at: datetime) -> None:
        context = self._base_context(record)
        context["end_date"] = _format_date(ended_at)
        self._notify(NotificationKind.SUBSCRIPTION_CANCELED, record, context)

    def _dunning_context(self, invoice: Optional[InvoiceSummary]) -> Dict[str, str]:
        return {
            "amount_due": invoice.formatted_amount if invoice else _UNKNOWN_VALUE,
            "next_retry_date": _format_date(invoice.next_payment_attempt if invoice else None),
        }

    def _base_context(self, record: AccountBillingRecord) -> Dict[str, str]:
        return {"app_url": self.app_base_url, "account_id": record.account_id}

    def _notify(
        self,
        kind: NotificationKind,
        record: AccountBillingRecord,
        context: Dict[str, str],
    ) -> Optional[NotificationResult]:
        merged = {**self._base_context(record), **context}
        log_context = {"billing_account_id": record.account_id, "billing_notification": kind.value}
        try:
            contact = self.directory.get_contact(record.account_id)
            if contact is None or not contact.email:
                logger.warning("No billing contact for account; notification skipped", extra=log_context)
                return None
            merged.setdefault("display_name", contact.display_name)
            result = self.gateway.send(kind, contact, merged)
        except Exception as exc:  # notification must never fail the handler
            result = NotificationResult(
                kind=kind,
                account_id=record.account_id,
                delivered=False,
                error=str(exc) or exc.__class__.__name__,
            )

        if result.delivered:
            logger.info("Billing notification sent", extra=log_context)
        else:
            logger.error(
                "Billing notification failed",
                extra={**log_context, "billing_notification_error": result.error},
            )
        return result


__all__ = ["SideEffectDispatcher"]
