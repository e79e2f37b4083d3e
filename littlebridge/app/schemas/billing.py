"""API schemas for billing endpoints."""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing import CheckoutSession, PortalSession


class CheckoutSessionRequest(BaseModel):
    account_id: str = Field(alias="accountId", min_length=1)
    return_url: str = Field(alias="returnUrl", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class CheckoutSessionResponse(BaseModel):
    session_id: str = Field(alias="sessionId")
    checkout_url: str = Field(alias="checkoutUrl")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_checkout(cls, session: CheckoutSession) -> "CheckoutSessionResponse":
        return cls(session_id=session.session_id, checkout_url=session.checkout_url)


class PortalSessionRequest(BaseModel):
    account_id: str = Field(alias="accountId", min_length=1)
    return_url: str = Field(alias="returnUrl", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class PortalSessionResponse(BaseModel):
    url: str

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_portal(cls, session: PortalSession) -> "PortalSessionResponse":
        return cls(url=session.portal_url)


class WebhookAck(BaseModel):
    received: bool = True
    duplicate: Optional[bool] = None
