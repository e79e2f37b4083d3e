"""Shared in-memory collaborators for the billing tests."""
from __future__ import annotations

import json
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

import pytest

from littlebridge.app.billing import (
    AccountBillingRecord,
    AccountContact,
    BillingConfig,
    NotificationKind,
    NotificationResult,
    ProcessedEvent,
    WebhookProcessor,
    build_signature_header,
    load_billing_config,
)
from littlebridge.app.services.billing import build_webhook_processor

WEBHOOK_SECRET = "whsec_test_secret"
APP_BASE_URL = "https://app.littlebridge.test"


class InMemoryBillingStore:
    def __init__(self) -> None:
        self.records: Dict[str, AccountBillingRecord] = {}
        self.events: Dict[str, ProcessedEvent] = {}
        self.save_error: Optional[Exception] = None
        self.conflicts_remaining = 0
        self.save_calls = 0
        self._lock = threading.Lock()
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def _tick(self) -> datetime:
        self._clock += timedelta(microseconds=1)
        return self._clock

    def seed(
        self,
        account_id: str,
        *,
        customer_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
        status: str = "none",
        status_event_at: Optional[datetime] = None,
    ) -> AccountBillingRecord:
        with self._lock:
            record = AccountBillingRecord(
                account_id=account_id,
                external_customer_id=customer_id,
                external_subscription_id=subscription_id,
                status=status,
                status_event_at=status_event_at,
                updated_at=self._tick(),
            )
            self.records[account_id] = record
            return record

    def has_processed_event(self, event_id: str) -> bool:
        return event_id in self.events

    def record_processed_event(self, event: ProcessedEvent) -> bool:
        with self._lock:
            if event.event_id in self.events:
                return False
            self.events[event.event_id] = event
            return True

    def prune_processed_events(self, older_than: datetime) -> int:
        with self._lock:
            expired = [key for key, event in self.events.items() if event.received_at < older_than]
            for key in expired:
                del self.events[key]
            return len(expired)

    def get_record(self, account_id: str) -> Optional[AccountBillingRecord]:
        return self.records.get(account_id)

    def get_record_by_customer(self, external_customer_id: str) -> Optional[AccountBillingRecord]:
        for record in self.records.values():
            if record.external_customer_id == external_customer_id:
                return record
        return None

    def save_record(
        self,
        record: AccountBillingRecord,
        *,
        expected_updated_at: Optional[datetime],
    ) -> Optional[AccountBillingRecord]:
        with self._lock:
            self.save_calls += 1
            if self.save_error is not None:
                raise self.save_error

            current = self.records.get(record.account_id)
            if self.conflicts_remaining > 0:
                # Simulate another writer landing between read and write.
                self.conflicts_remaining -= 1
                if current is not None:
                    self.records[record.account_id] = current.model_copy(update={"updated_at": self._tick()})
                return None

            if expected_updated_at is None:
                if current is not None:
                    return None
            elif current is None or current.updated_at != expected_updated_at:
                return None

            stored = record.model_copy(update={"updated_at": self._tick()})
            self.records[record.account_id] = stored
            return stored

    def ensure_record(self, account_id: str) -> AccountBillingRecord:
        with self._lock:
            record = self.records.get(account_id)
            if record is None:
                record = AccountBillingRecord(account_id=account_id, updated_at=self._tick())
                self.records[account_id] = record
            return record

    def assign_customer_id(self, account_id: str, external_customer_id: str) -> AccountBillingRecord:
        with self._lock:
            record = self.records[account_id]
            if not record.external_customer_id:
                record = record.model_copy(
                    update={"external_customer_id": external_customer_id, "updated_at": self._tick()}
                )
                self.records[account_id] = record
            return record


class RecordingSuspender:
    def __init__(self, journal: List[Tuple[str, ...]]) -> None:
        self.journal = journal
        self.suspended: List[str] = []
        self.error: Optional[Exception] = None

    def suspend_account_resources(self, account_id: str) -> int:
        if self.error is not None:
            raise self.error
        self.suspended.append(account_id)
        self.journal.append(("suspend", account_id))
        return 2


class InMemoryDirectory:
    def __init__(self) -> None:
        self.contacts: Dict[str, AccountContact] = {}

    def add(self, account_id: str, display_name: str, email: Optional[str]) -> None:
        self.contacts[account_id] = AccountContact(account_id=account_id, display_name=display_name, email=email)

    def get_contact(self, account_id: str) -> Optional[AccountContact]:
        return self.contacts.get(account_id)


class RecordingGateway:
    def __init__(self, journal: List[Tuple[str, ...]]) -> None:
        self.journal = journal
        self.sent: List[Tuple[NotificationKind, AccountContact, Dict[str, str]]] = []
        self.error: Optional[Exception] = None
        self.delivered = True

    def send(
        self,
        kind: NotificationKind,
        contact: AccountContact,
        context: Mapping[str, str],
    ) -> NotificationResult:
        self.journal.append(("notify", kind.value, contact.account_id))
        if self.error is not None:
            raise self.error
        self.sent.append((kind, contact, dict(context)))
        return NotificationResult(
            kind=kind,
            account_id=contact.account_id,
            delivered=self.delivered,
            error=None if self.delivered else "provider rejected message",
        )

    def kinds(self) -> List[NotificationKind]:
        return [kind for kind, _contact, _context in self.sent]


@pytest.fixture
def journal() -> List[Tuple[str, ...]]:
    return []


@pytest.fixture
def store() -> InMemoryBillingStore:
    return InMemoryBillingStore()


@pytest.fixture
def suspender(journal) -> RecordingSuspender:
    return RecordingSuspender(journal)


@pytest.fixture
def directory() -> InMemoryDirectory:
    directory = InMemoryDirectory()
    directory.add("A-1", "Sunny Days Early Learning", "owner@sunnydays.test")
    return directory


@pytest.fixture
def gateway(journal) -> RecordingGateway:
    return RecordingGateway(journal)


@pytest.fixture
def billing_config() -> BillingConfig:
    return load_billing_config(
        env={
            "BILLING_WEBHOOK_SECRET": WEBHOOK_SECRET,
            "APP_BASE_URL": APP_BASE_URL,
        }
    )


@pytest.fixture
def processor(billing_config, store, suspender, directory, gateway) -> WebhookProcessor:
    return build_webhook_processor(
        config=billing_config,
        store=store,
        suspender=suspender,
        directory=directory,
        gateway=gateway,
    )


@pytest.fixture
def make_event():
    counter = {"value": 0}

    def _make(
        event_type: str,
        obj: Dict[str, Any],
        *,
        event_id: Optional[str] = None,
        created: int = 1_700_000_000,
    ) -> bytes:
        counter["value"] += 1
        envelope = {
            "id": event_id or f"evt_{counter['value']:04d}",
            "type": event_type,
            "created": created,
            "data": {"object": obj},
        }
        return json.dumps(envelope).encode("utf-8")

    return _make


@pytest.fixture
def sign():
    def _sign(payload: bytes, *, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
        return build_signature_header(payload, secret=secret, timestamp=timestamp)

    return _sign


@pytest.fixture
def deliver(processor, sign):
    def _deliver(payload: bytes) -> Dict[str, bool]:
        return processor.process(payload, sign(payload), client_ip="203.0.113.10")

    return _deliver
