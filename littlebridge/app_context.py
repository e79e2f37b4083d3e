"""Shared application context for reusable dependencies."""
from __future__ import annotations

from typing import Any, Callable, Optional

_get_conn: Optional[Callable[[], Any]] = None
_get_current_account_id: Optional[Callable[..., str]] = None
_get_email_provider: Optional[Callable[[], Any]] = None


def configure(
    *,
    get_conn: Callable[[], Any],
    get_current_account_id: Callable[..., str],
    get_email_provider: Callable[[], Any],
) -> None:
    """Register application-wide dependencies required by modular routers."""

    global _get_conn
    global _get_current_account_id
    global _get_email_provider

    _get_conn = get_conn
    _get_current_account_id = get_current_account_id
    _get_email_provider = get_email_provider


def _require(value: Optional[Any], name: str) -> Any:
    if value is None:
        raise RuntimeError(f"Application context has not been configured yet: {name}")
    return value


def get_conn() -> Any:
    conn_factory = _require(_get_conn, "get_conn")
    return conn_factory()


def get_current_account_id(*args: Any, **kwargs: Any) -> str:
    dependency = _require(_get_current_account_id, "get_current_account_id")
    return dependency(*args, **kwargs)


def get_email_provider() -> Any:
    factory = _require(_get_email_provider, "get_email_provider")
    return factory()
