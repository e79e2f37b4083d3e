"""Persistence layer for billing domain objects."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, Optional, Tuple

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from .models import AccountBillingRecord, AccountContact, BillingStatus, ProcessedEvent

SCHEMA_STATEMENTS: Tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS account_billing_records (
        account_id TEXT PRIMARY KEY,
        external_customer_id TEXT UNIQUE,
        external_subscription_id TEXT,
        status TEXT NOT NULL DEFAULT 'none',
        status_event_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS processed_billing_events (
        event_id TEXT PRIMARY KEY,
        event_type TEXT NOT NULL,
        account_id TEXT,
        amount BIGINT,
        currency TEXT,
        received_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS processed_billing_events_received_at_idx
        ON processed_billing_events (received_at)
    """,
)


@contextmanager
def managed_connection(
    conn_factory: Callable[[], PgConnection],
    conn: Optional[PgConnection] = None,
) -> Iterator[Tuple[PgConnection, bool]]:
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = conn_factory()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _row_to_record(row: dict) -> AccountBillingRecord:
    return AccountBillingRecord(
        account_id=row["account_id"],
        external_customer_id=row.get("external_customer_id"),
        external_subscription_id=row.get("external_subscription_id"),
        status=row["status"],
        status_event_at=row.get("status_event_at"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class _PostgresBase:
    def __init__(
        self,
        *,
        conn_factory: Callable[[], PgConnection],
        conn: Optional[PgConnection] = None,
    ) -> None:
        self._conn_factory = conn_factory
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterator[PgCursor]:
        with managed_connection(self._conn_factory, self._conn) as (connection, _managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
            finally:
                cursor.close()


class PostgresBillingRepository(_PostgresBase):
    """Stores billing records and the processed-event log in PostgreSQL."""

    def ensure_schema(self) -> None:
        with self._cursor() as cursor:
            for statement in SCHEMA_STATEMENTS:
                cursor.execute(statement)

    def has_processed_event(self, event_id: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT 1 FROM processed_billing_events WHERE event_id = %s LIMIT 1",
                (event_id,),
            )
            return cursor.fetchone() is not None

    def record_processed_event(self, event: ProcessedEvent) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO processed_billing_events (
                    event_id,
                    event_type,
                    account_id,
                    amount,
                    currency,
                    received_at
                )
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (event_id) DO NOTHING
                """,
                (
                    event.event_id,
                    event.event_type,
                    event.account_id,
                    event.amount,
                    event.currency,
                    event.received_at,
                ),
            )
            return cursor.rowcount > 0

    def prune_processed_events(self, older_than: datetime) -> int:
        with self._cursor() as cursor:
            cursor.execute(
                "DELETE FROM processed_billing_events WHERE received_at < %s",
                (older_than,),
            )
            return cursor.rowcount

    def get_record(self, account_id: str) -> Optional[AccountBillingRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM account_billing_records
                WHERE account_id = %s
                LIMIT 1
                """,
                (account_id,),
            )
            row = cursor.fetchone()
            return _row_to_record(row) if row else None

    def get_record_by_customer(self, external_customer_id: str) -> Optional[AccountBillingRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM account_billing_records
                WHERE external_customer_id = %s
                LIMIT 1
                """,
                (external_customer_id,),
            )
            row = cursor.fetchone()
            return _row_to_record(row) if row else None

    def save_record(
        self,
        record: AccountBillingRecord,
        *,
        expected_updated_at: Optional[datetime],
    ) -> Optional[AccountBillingRecord]:
        params = {
            "account_id": record.account_id,
            "external_customer_id": record.external_customer_id,
            "external_subscription_id": record.external_subscription_id,
            "status": record.status,
            "status_event_at": record.status_event_at,
            "expected_updated_at": expected_updated_at,
        }
        with self._cursor() as cursor:
            if expected_updated_at is None:
                cursor.execute(
                    """
                    INSERT INTO account_billing_records (
                        account_id,
                        external_customer_id,
                        external_subscription_id,
                        status,
                        status_event_at
                    )
                    VALUES (%(account_id)s, %(external_customer_id)s, %(external_subscription_id)s,
                            %(status)s, %(status_event_at)s)
                    ON CONFLICT (account_id) DO NOTHING
                    RETURNING *
                    """,
                    params,
                )
            else:
                cursor.execute(
                    """
                    UPDATE account_billing_records
                    SET external_customer_id = COALESCE(external_customer_id, %(external_customer_id)s),
                        external_subscription_id = %(external_subscription_id)s,
                        status = %(status)s,
                        status_event_at = %(status_event_at)s,
                        updated_at = clock_timestamp()
                    WHERE account_id = %(account_id)s
                      AND updated_at = %(expected_updated_at)s
                    RETURNING *
                    """,
                    params,
                )
            row = cursor.fetchone()
            return _row_to_record(row) if row else None

    def ensure_record(self, account_id: str) -> AccountBillingRecord:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO account_billing_records (account_id, status)
                VALUES (%s, %s)
                ON CONFLICT (account_id) DO UPDATE SET account_id = EXCLUDED.account_id
                RETURNING *
                """,
                (account_id, BillingStatus.NONE.value),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist billing record")
            return _row_to_record(row)

    def assign_customer_id(self, account_id: str, external_customer_id: str) -> AccountBillingRecord:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE account_billing_records
                SET external_customer_id = COALESCE(external_customer_id, %s),
                    updated_at = clock_timestamp()
                WHERE account_id = %s
                RETURNING *
                """,
                (external_customer_id, account_id),
            )
            row = cursor.fetchone()
            if not row:
                raise LookupError("Billing record not found")
            return _row_to_record(row)


class PostgresJobListingSuspender(_PostgresBase):
    """Pauses an account's active job listings."""

    def suspend_account_resources(self, account_id: str) -> int:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE job_listings
                SET status = 'paused'
                WHERE center_profile_id = %s AND status = 'active'
                """,
                (account_id,),
            )
            return cursor.rowcount


class PostgresAccountDirectory(_PostgresBase):
    """Resolves billing contacts from center profiles."""

    def get_contact(self, account_id: str) -> Optional[AccountContact]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT cp.profile_id, cp.center_name, COALESCE(NULLIF(cp.email, ''), p.email) AS email
                FROM center_profiles AS cp
                LEFT JOIN profiles AS p ON p.id = cp.profile_id
                WHERE cp.profile_id::text = %s
                LIMIT 1
                """,
                (account_id,),
            )
            row = cursor.fetchone()
            if not row:
                return None
            return AccountContact(
                account_id=str(row["profile_id"]),
                display_name=row["center_name"],
                email=row.get("email") or None,
            )


__all__ = [
    "PostgresAccountDirectory",
    "PostgresBillingRepository",
    "PostgresJobListingSuspender",
    "SCHEMA_STATEMENTS",
    "managed_connection",
]
