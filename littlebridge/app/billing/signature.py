"""Webhook signature verification over the raw request body."""
from __future__ import annotations

import hashlib
import hmac
import time
from typing import Optional

import stripe

from .errors import SignatureVerificationError

SIGNATURE_HEADER = "Stripe-Signature"
SIGNATURE_SCHEME = "v1"


def compute_signature(payload: bytes, *, secret: str, timestamp: int) -> str:
    """Return the hex HMAC-SHA256 of ``"{timestamp}." + payload``."""

    signed_payload = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def build_signature_header(payload: bytes, *, secret: str, timestamp: Optional[int] = None) -> str:
    """Produce a header value in the processor's ``t=...,v1=...`` format."""

    signed_at = int(time.time()) if timestamp is None else timestamp
    return f"t={signed_at},{SIGNATURE_SCHEME}={compute_signature(payload, secret=secret, timestamp=signed_at)}"


def verify_signature(
    payload: bytes,
    header: Optional[str],
    *,
    secret: str,
    tolerance_seconds: int,
) -> None:
    """Raise :class:`SignatureVerificationError` unless ``header`` signs ``payload``.

    ``payload`` must be the exact bytes received; any re-serialization
    invalidates the signature.
    """

    if not secret:
        raise SignatureVerificationError("Webhook secret is not configured")
    if not header:
        raise SignatureVerificationError("Missing signature header")

    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise SignatureVerificationError("Payload is not valid UTF-8") from exc

    try:
        stripe.WebhookSignature.verify_header(body, header, secret, tolerance=max(1, tolerance_seconds))
    except stripe.SignatureVerificationError as exc:
        raise SignatureVerificationError(str(exc) or "Signature mismatch") from exc


__all__ = [
    "SIGNATURE_HEADER",
    "build_signature_header",
    "compute_signature",
    "verify_signature",
]
