"""Application wiring for the billing services."""
from __future__ import annotations

import logging
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Callable, Dict, Mapping, Optional
from uuid import uuid4

import stripe

from ... import app_context
from ...mail import EmailProvider, render_subject_body
from ..billing import (
    AccountContact,
    BillingConfig,
    BillingSessionService,
    NotificationKind,
    NotificationResult,
    SideEffectDispatcher,
    WebhookProcessor,
    build_handler_registry,
    load_billing_config,
)
from ..billing.protocols import (
    AccountDirectory,
    BillingStore,
    NotificationGateway,
    PaymentProvider,
    ResourceSuspender,
)
from ..billing.repository import (
    PostgresAccountDirectory,
    PostgresBillingRepository,
    PostgresJobListingSuspender,
)

logger = logging.getLogger("billing")


class EmailNotificationGateway(NotificationGateway):
    """Renders a billing template and sends it within a bounded time budget.

    Every failure, including a send that outlives ``timeout_seconds``, comes
    back as an undelivered :class:`NotificationResult`. A timed-out send is
    cancelled if it is still queued; one already running is abandoned.
    """

    def __init__(
        self,
        *,
        provider_factory: Callable[[], EmailProvider],
        timeout_seconds: float,
        executor: Optional[Executor] = None,
    ) -> None:
        self._provider_factory = provider_factory
        self.timeout_seconds = timeout_seconds
        self._executor = executor or ThreadPoolExecutor(max_workers=4, thread_name_prefix="billing-email")

    def send(
        self,
        kind: NotificationKind,
        contact: AccountContact,
        context: Mapping[str, str],
    ) -> NotificationResult:
        if not contact.email:
            return NotificationResult(
                kind=kind, account_id=contact.account_id, delivered=False, error="missing recipient"
            )
        future: Optional[Future] = None
        try:
            subject, text_body, html_body = render_subject_body(kind.value, context)
            provider = self._provider_factory()
            future = self._executor.submit(provider.send_email, contact.email, subject, html_body, text_body)
            future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError:
            if future is not None:
                future.cancel()
            return NotificationResult(
                kind=kind,
                account_id=contact.account_id,
                delivered=False,
                error=f"timed out after {self.timeout_seconds:g}s",
            )
        except Exception as exc:
            return NotificationResult(
                kind=kind,
                account_id=contact.account_id,
                delivered=False,
                error=str(exc) or exc.__class__.__name__,
            )
        return NotificationResult(kind=kind, account_id=contact.account_id, delivered=True)


SUBSCRIPTION_PRODUCT_NAME = "LittleBridge Center Subscription"
SUBSCRIPTION_PRODUCT_DESCRIPTION = (
    "Monthly subscription for childcare center listing on LittleBridge. Includes unlimited family "
    "leads, 5 active job listings, AI translation, and match scores."
)
SUBSCRIPTION_UNIT_AMOUNT = 9900
SUBSCRIPTION_CURRENCY = "aud"
PLATFORM_METADATA = {"platform": "littlebridge"}


class StripePaymentProvider(PaymentProvider):
    """Creates hosted checkout and portal sessions through Stripe.

    Without a configured ``price_id`` the monthly subscription price is looked
    up on the subscription product, and both are created on first use.
    """

    def __init__(self, *, api_key: str, price_id: Optional[str] = None) -> None:
        self.api_key = api_key
        self.price_id = price_id or None
        self._price_lock = threading.Lock()

    def subscription_price_id(self) -> str:
        with self._price_lock:
            if self.price_id is None:
                self.price_id = self._find_or_create_price()
            return self.price_id

    def _find_or_create_price(self) -> str:
        products = stripe.Product.search(
            api_key=self.api_key,
            query=f"name:'{SUBSCRIPTION_PRODUCT_NAME}'",
        )
        if products.data:
            prices = stripe.Price.list(
                api_key=self.api_key,
                product=products.data[0].id,
                active=True,
                type="recurring",
                limit=1,
            )
            if prices.data:
                return prices.data[0].id

        product = stripe.Product.create(
            api_key=self.api_key,
            name=SUBSCRIPTION_PRODUCT_NAME,
            description=SUBSCRIPTION_PRODUCT_DESCRIPTION,
            metadata=PLATFORM_METADATA,
        )
        price = stripe.Price.create(
            api_key=self.api_key,
            product=product.id,
            unit_amount=SUBSCRIPTION_UNIT_AMOUNT,
            currency=SUBSCRIPTION_CURRENCY,
            recurring={"interval": "month"},
            metadata=PLATFORM_METADATA,
        )
        logger.info("Created subscription price", extra={"billing_price_id": price.id})
        return price.id

    def create_customer(self, *, email: Optional[str], name: str, metadata: Dict[str, str]) -> str:
        customer = stripe.Customer.create(api_key=self.api_key, email=email, name=name, metadata=metadata)
        return customer.id

    def create_checkout_session(
        self,
        *,
        customer_id: str,
        metadata: Dict[str, str],
        return_url: str,
        trial_days: int,
    ) -> Dict[str, object]:
        subscription_data: Dict[str, object] = {"metadata": metadata}
        if trial_days > 0:
            subscription_data["trial_period_days"] = trial_days
        session = stripe.checkout.Session.create(
            api_key=self.api_key,
            customer=customer_id,
            mode="subscription",
            line_items=[{"price": self.subscription_price_id(), "quantity": 1}],
            subscription_data=subscription_data,
            metadata=metadata,
            success_url=f"{return_url}?checkout=success&session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{return_url}?checkout=canceled",
            allow_promotion_codes=True,
        )
        return {"id": session.id, "url": session.url}

    def create_portal_session(self, *, customer_id: str, return_url: str) -> Dict[str, object]:
        session = stripe.billing_portal.Session.create(
            api_key=self.api_key,
            customer=customer_id,
            return_url=return_url,
        )
        return {"id": session.id, "url": session.url}


class LocalSandboxPaymentProvider(PaymentProvider):
    """Minimal provider implementation for local development and tests."""

    def create_customer(self, *, email: Optional[str], name: str, metadata: Dict[str, str]) -> str:
        return f"cus_{uuid4().hex[:14]}"

    def create_checkout_session(
        self,
        *,
        customer_id: str,
        metadata: Dict[str, str],
        return_url: str,
        trial_days: int,
    ) -> Dict[str, object]:
        session_id = f"cs_{uuid4().hex}"
        expires_at = datetime.now(timezone.utc) + timedelta(minutes=30)
        return {
            "id": session_id,
            "url": f"https://billing.local/checkout/{session_id}",
            "expires_at": expires_at,
            "metadata": metadata,
        }

    def create_portal_session(self, *, customer_id: str, return_url: str) -> Dict[str, object]:
        session_id = f"ps_{uuid4().hex}"
        return {"id": session_id, "url": f"https://billing.local/portal/{customer_id}"}


def build_webhook_processor(
    *,
    config: BillingConfig,
    store: BillingStore,
    suspender: ResourceSuspender,
    directory: AccountDirectory,
    gateway: NotificationGateway,
) -> WebhookProcessor:
    dispatcher = SideEffectDispatcher(
        suspender=suspender,
        directory=directory,
        gateway=gateway,
        app_base_url=config.app_base_url,
    )
    return WebhookProcessor(
        store=store,
        handlers=build_handler_registry(store, dispatcher, retry_attempts=config.status_retry_attempts),
        webhook_secret=config.webhook_secret,
        tolerance_seconds=config.webhook_tolerance_seconds,
    )


def create_payment_provider(config: BillingConfig) -> PaymentProvider:
    if config.stripe_secret_key:
        return StripePaymentProvider(api_key=config.stripe_secret_key, price_id=config.stripe_price_id)
    logger.warning("STRIPE_SECRET_KEY not set; using the local sandbox payment provider")
    return LocalSandboxPaymentProvider()


@lru_cache(maxsize=1)
def get_billing_config() -> BillingConfig:
    return load_billing_config()


@lru_cache(maxsize=1)
def get_webhook_processor() -> WebhookProcessor:
    config = get_billing_config()
    return build_webhook_processor(
        config=config,
        store=PostgresBillingRepository(conn_factory=app_context.get_conn),
        suspender=PostgresJobListingSuspender(conn_factory=app_context.get_conn),
        directory=PostgresAccountDirectory(conn_factory=app_context.get_conn),
        gateway=EmailNotificationGateway(
            provider_factory=app_context.get_email_provider,
            timeout_seconds=config.notification_timeout_seconds,
        ),
    )


@lru_cache(maxsize=1)
def get_session_service() -> BillingSessionService:
    config = get_billing_config()
    return BillingSessionService(
        store=PostgresBillingRepository(conn_factory=app_context.get_conn),
        provider=create_payment_provider(config),
        directory=PostgresAccountDirectory(conn_factory=app_context.get_conn),
        trial_days=config.trial_days,
    )


__all__ = [
    "EmailNotificationGateway",
    "LocalSandboxPaymentProvider",
    "StripePaymentProvider",
    "build_webhook_processor",
    "create_payment_provider",
    "get_billing_config",
    "get_session_service",
    "get_webhook_processor",
]
