"""Translate processor-reported subscription states into internal statuses."""
from __future__ import annotations

import logging
from typing import Dict

from .models import BillingStatus

logger = logging.getLogger(__name__)

_PROCESSOR_STATUS_MAP: Dict[str, str] = {
    "active": BillingStatus.ACTIVE.value,
    "trialing": BillingStatus.ACTIVE.value,
    "past_due": BillingStatus.PAST_DUE.value,
    "canceled": BillingStatus.CANCELED.value,
    "unpaid": BillingStatus.CANCELED.value,
}


def map_processor_status(processor_status: str) -> str:
    """Return the internal status for ``processor_status``.

    Trialing subscriptions are reported as ``active``. Statuses the processor
    may add later are passed through unchanged so they remain visible on the
    record instead of being coerced into a known state.
    """

    mapped = _PROCESSOR_STATUS_MAP.get(processor_status)
    if mapped is not None:
        return mapped
    logger.warning(
        "Unrecognized processor subscription status",
        extra={"processor_status": processor_status},
    )
    return processor_status


__all__ = ["map_processor_status"]
