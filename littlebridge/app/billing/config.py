"""Billing configuration helpers."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional


@dataclass(frozen=True)
class BillingConfig:
    """Configuration for webhook ingestion and session creation."""

    webhook_secret: str
    webhook_tolerance_seconds: int
    webhook_timeout_seconds: float
    notification_timeout_seconds: float
    status_retry_attempts: int
    event_retention_days: int
    stripe_secret_key: str
    stripe_price_id: Optional[str]
    trial_days: int
    app_base_url: str


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingConfig:
    """Load :class:`BillingConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    return BillingConfig(
        webhook_secret=env_mapping.get("BILLING_WEBHOOK_SECRET", ""),
        webhook_tolerance_seconds=max(1, _to_int(env_mapping.get("BILLING_WEBHOOK_TOLERANCE_SECONDS"), default=300)),
        webhook_timeout_seconds=max(0.1, _to_float(env_mapping.get("BILLING_WEBHOOK_TIMEOUT_SECONDS"), default=10.0)),
        notification_timeout_seconds=max(
            0.1, _to_float(env_mapping.get("BILLING_NOTIFICATION_TIMEOUT_SECONDS"), default=5.0)
        ),
        status_retry_attempts=max(1, _to_int(env_mapping.get("BILLING_STATUS_RETRY_ATTEMPTS"), default=3)),
        event_retention_days=max(1, _to_int(env_mapping.get("BILLING_EVENT_RETENTION_DAYS"), default=90)),
        stripe_secret_key=env_mapping.get("STRIPE_SECRET_KEY", ""),
        stripe_price_id=env_mapping.get("STRIPE_PRICE_ID") or None,
        trial_days=max(0, _to_int(env_mapping.get("BILLING_TRIAL_DAYS"), default=30)),
        app_base_url=env_mapping.get("APP_BASE_URL", "http://localhost:5173").rstrip("/"),
    )


__all__ = ["BillingConfig", "load_billing_config"]
