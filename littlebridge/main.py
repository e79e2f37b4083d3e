import logging
import math
import os
from typing import Optional

import psycopg2
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from jose import JWTError, jwt

from littlebridge import app_context
from littlebridge.app.billing import prune_processed_events
from littlebridge.app.billing.repository import PostgresBillingRepository
from littlebridge.app.routes.billing import router as billing_router
from littlebridge.app.routes.billing import webhook_router as billing_webhook_router
from littlebridge.app.services.billing import get_billing_config
from littlebridge.mail import EmailConfig, EmailProvider, create_email_provider, load_email_config

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("billing")


def _parse_connect_timeout(raw_value: str) -> int:
    try:
        timeout = float(raw_value)
    except ValueError as exc:
        raise ValueError("DB_CONNECT_TIMEOUT must be a number") from exc
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))

DB_CFG = dict(
    host=os.getenv("DB_HOST", "127.0.0.1"),
    port=int(os.getenv("DB_PORT", "5432")),
    dbname=os.getenv("DB_NAME", "littlebridge"),
    user=os.getenv("DB_USER", "littlebridge"),
    password=os.getenv("DB_PASSWORD", "littlebridge"),
    connect_timeout=_parse_connect_timeout(os.getenv("DB_CONNECT_TIMEOUT", "5")),
)

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-change-me")
JWT_ALGORITHM = "HS256"
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",")
    if origin.strip()
]

EMAIL_CONFIG: EmailConfig = load_email_config()

_email_provider: EmailProvider = create_email_provider(EMAIL_CONFIG)


def get_email_provider() -> EmailProvider:
    return _email_provider


def set_email_provider(provider: EmailProvider) -> None:
    global _email_provider
    _email_provider = provider


def get_conn():
    return psycopg2.connect(**DB_CFG)


def resolve_account_from_token(token: str) -> Optional[str]:
    try:
        payload = jwt.decode(
            token,
            JWT_SECRET_KEY,
            algorithms=[JWT_ALGORITHM],
            options={"verify_aud": False},
        )
    except JWTError:
        return None
    subject = payload.get("sub")
    return str(subject) if subject else None


def get_current_account_id(authorization: Optional[str] = None) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    account_id = resolve_account_from_token(token.strip())
    if account_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")
    return account_id


app_context.configure(
    get_conn=get_conn,
    get_current_account_id=get_current_account_id,
    get_email_provider=get_email_provider,
)

app = FastAPI(title="LittleBridge Billing API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(billing_webhook_router)
app.include_router(billing_router)


@app.on_event("startup")
def setup_billing() -> None:
    config = get_billing_config()
    if not config.webhook_secret:
        logger.warning("BILLING_WEBHOOK_SECRET is not set; every webhook delivery will be rejected")

    repository = PostgresBillingRepository(conn_factory=get_conn)
    try:
        repository.ensure_schema()
        prune_processed_events(repository, retention_days=config.event_retention_days)
    except psycopg2.Error:
        logger.exception("Billing schema setup failed")


@app.get("/healthz")
def healthcheck() -> dict:
    return {"status": "ok", "email_provider": _email_provider.name}
