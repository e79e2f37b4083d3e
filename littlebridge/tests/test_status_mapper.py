import logging
from datetime import datetime, timezone

import pytest

from littlebridge.app.billing import AccountBillingRecord, invoice_status_is_stale, map_processor_status


@pytest.mark.parametrize(
    ("processor_status", "expected"),
    [
        ("active", "active"),
        ("trialing", "active"),
        ("past_due", "past_due"),
        ("canceled", "canceled"),
        ("unpaid", "canceled"),
    ],
)
def test_known_statuses_are_mapped(processor_status, expected):
    assert map_processor_status(processor_status) == expected


def test_unknown_status_passes_through_with_warning(caplog):
    with caplog.at_level(logging.WARNING):
        assert map_processor_status("incomplete_expired") == "incomplete_expired"

    [record] = [entry for entry in caplog.records if entry.levelno == logging.WARNING]
    assert record.processor_status == "incomplete_expired"


@pytest.mark.parametrize(
    ("status", "enabled"),
    [
        ("active", True),
        ("trialing", True),
        ("past_due", True),
        ("none", False),
        ("canceled", False),
        ("incomplete", False),
    ],
)
def test_service_enabled_statuses(status, enabled):
    assert AccountBillingRecord(account_id="A-1", status=status).is_service_enabled is enabled


EARLIER = datetime(2024, 1, 1, tzinfo=timezone.utc)
LATER = datetime(2024, 1, 2, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    ("status", "status_event_at", "target", "invoice_created", "expected"),
    [
        ("past_due", None, "active", LATER, True),
        ("past_due", EARLIER, "active", LATER, True),
        ("past_due", LATER, "active", EARLIER, False),
        ("past_due", LATER, "active", LATER, False),
        ("active", EARLIER, "active", LATER, False),
        ("canceled", EARLIER, "active", LATER, False),
        ("canceled", None, "past_due", LATER, False),
        ("none", None, "past_due", LATER, True),
    ],
)
def test_invoice_status_staleness(status, status_event_at, target, invoice_created, expected):
    record = AccountBillingRecord(account_id="A-1", status=status, status_event_at=status_event_at)

    assert invoice_status_is_stale(record, target, invoice_created) is expected
