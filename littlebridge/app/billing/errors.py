"""Exceptions raised by the billing subsystem."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass
class BillingError(Exception):
    """Base class for billing failures that map onto an HTTP status."""

    code: str
    message: str
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        return self._payload

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


class SignatureVerificationError(BillingError):
    """The webhook body could not be authenticated against the shared secret."""

    def __init__(self, message: str) -> None:
        super().__init__(
            code="invalid_signature",
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
        )


class MalformedEventError(BillingError):
    """The webhook body is authentic but is not a usable event envelope."""

    def __init__(self, message: str) -> None:
        super().__init__(
            code="malformed_event",
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
        )


class ConcurrentUpdateError(BillingError):
    """A billing record kept changing underneath a handler."""

    def __init__(self, account_id: str, attempts: int) -> None:
        super().__init__(
            code="concurrent_update",
            message=f"Billing record {account_id} changed concurrently {attempts} times",
            detail={"account_id": account_id},
        )


class AccountNotFoundError(BillingError):
    def __init__(self, account_id: str) -> None:
        super().__init__(
            code="account_not_found",
            message="Account not found",
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"account_id": account_id},
        )


class MissingCustomerError(BillingError):
    """A portal session was requested for an account that never checked out."""

    def __init__(self, account_id: str) -> None:
        super().__init__(
            code="no_subscription",
            message="No subscription found for this account. Please subscribe first.",
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"account_id": account_id},
        )


class SubscriptionAlreadyActiveError(BillingError):
    def __init__(self, account_id: str) -> None:
        super().__init__(
            code="already_subscribed",
            message="This account already has an active subscription. Use the customer portal to manage it.",
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"account_id": account_id},
        )


__all__ = [
    "AccountNotFoundError",
    "BillingError",
    "ConcurrentUpdateError",
    "MalformedEventError",
    "MissingCustomerError",
    "SignatureVerificationError",
    "SubscriptionAlreadyActiveError",
]
