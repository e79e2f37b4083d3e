"""API routes exposing billing functionality."""
from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse

from ... import app_context
from ..billing import (
    SIGNATURE_HEADER,
    BillingConfig,
    BillingError,
    BillingSessionService,
    WebhookProcessor,
)
from ..schemas.billing import (
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    PortalSessionRequest,
    PortalSessionResponse,
    WebhookAck,
)
from ..services.billing import get_billing_config, get_session_service, get_webhook_processor

logger = logging.getLogger("billing")


def _get_current_account_id(authorization: Optional[str] = Header(None)) -> str:
    return app_context.get_current_account_id(authorization=authorization)


webhook_router = APIRouter(tags=["billing"])
router = APIRouter(prefix="/api/billing", tags=["billing"])


@webhook_router.post("/webhooks/billing", response_model=WebhookAck)
async def receive_billing_webhook(
    request: Request,
    processor: WebhookProcessor = Depends(get_webhook_processor),
    config: BillingConfig = Depends(get_billing_config),
) -> JSONResponse:
    payload = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    client_ip = request.client.host if request.client else None

    try:
        result = await asyncio.wait_for(
            asyncio.get_running_loop().run_in_executor(
                None, partial(processor.process, payload, signature, client_ip=client_ip)
            ),
            timeout=config.webhook_timeout_seconds,
        )
    except BillingError as exc:
        if exc.status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
            logger.error("Webhook handler failed: %s", exc.message, extra={"client_ip": client_ip})
        return JSONResponse(status_code=exc.status_code, content=dict(exc.payload))
    except asyncio.TimeoutError:
        logger.error(
            "Webhook handling exceeded %.1fs",
            config.webhook_timeout_seconds,
            extra={"client_ip": client_ip},
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "timeout", "message": "Webhook handling timed out"},
        )
    except Exception:
        logger.exception("Webhook handler failed", extra={"client_ip": client_ip})
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "internal_error", "message": "Webhook handler failed"},
        )

    ack = WebhookAck(**result)
    return JSONResponse(status_code=status.HTTP_200_OK, content=ack.model_dump(exclude_none=True))


@router.post("/checkout-session", response_model=CheckoutSessionResponse)
def create_checkout_session(
    payload: CheckoutSessionRequest,
    *,
    account_id: str = Depends(_get_current_account_id),
    service: BillingSessionService = Depends(get_session_service),
) -> CheckoutSessionResponse:
    if payload.account_id != account_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cannot create checkout session for another account",
        )

    try:
        session = service.create_checkout_session(payload.account_id, return_url=payload.return_url)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return CheckoutSessionResponse.from_checkout(session)


@router.post("/portal-session", response_model=PortalSessionResponse)
def create_portal_session(
    payload: PortalSessionRequest,
    *,
    account_id: str = Depends(_get_current_account_id),
    service: BillingSessionService = Depends(get_session_service),
) -> PortalSessionResponse:
    if payload.account_id != account_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cannot create portal session for another account",
        )

    try:
        session = service.create_portal_session(payload.account_id, return_url=payload.return_url)
    except BillingError as exc:
        raise exc.to_http_exception() from exc
    return PortalSessionResponse.from_portal(session)
