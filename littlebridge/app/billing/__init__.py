"""Billing domain package: webhook ingestion and subscription lifecycle."""

from .config import BillingConfig, load_billing_config
from .dispatcher import SideEffectDispatcher
from .errors import (
    AccountNotFoundError,
    BillingError,
    ConcurrentUpdateError,
    MalformedEventError,
    MissingCustomerError,
    SignatureVerificationError,
    SubscriptionAlreadyActiveError,
)
from .handlers import build_handler_registry, invoice_status_is_stale
from .models import (
    ACCOUNT_METADATA_KEY,
    AccountBillingRecord,
    AccountContact,
    BillingEventType,
    BillingStatus,
    CheckoutSession,
    HandlerOutcome,
    HandlerResult,
    InvoiceSummary,
    NotificationKind,
    NotificationResult,
    PortalSession,
    ProcessedEvent,
    StatusTransition,
    WebhookEvent,
)
from .service import (
    BillingSessionService,
    WebhookProcessor,
    parse_event,
    prune_processed_events,
)
from .signature import SIGNATURE_HEADER, build_signature_header, verify_signature
from .status_mapper import map_processor_status

__all__ = [
    "ACCOUNT_METADATA_KEY",
    "AccountBillingRecord",
    "AccountContact",
    "AccountNotFoundError",
    "BillingConfig",
    "BillingError",
    "BillingEventType",
    "BillingSessionService",
    "BillingStatus",
    "CheckoutSession",
    "ConcurrentUpdateError",
    "HandlerOutcome",
    "HandlerResult",
    "InvoiceSummary",
    "MalformedEventError",
    "MissingCustomerError",
    "NotificationKind",
    "NotificationResult",
    "PortalSession",
    "ProcessedEvent",
    "SIGNATURE_HEADER",
    "SideEffectDispatcher",
    "SignatureVerificationError",
    "StatusTransition",
    "SubscriptionAlreadyActiveError",
    "WebhookEvent",
    "WebhookProcessor",
    "build_handler_registry",
    "build_signature_header",
    "invoice_status_is_stale",
    "load_billing_config",
    "map_processor_status",
    "parse_event",
    "prune_processed_events",
    "verify_signature",
]
