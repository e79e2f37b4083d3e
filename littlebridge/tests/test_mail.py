import json
import threading
from concurrent.futures import ThreadPoolExecutor

import httpx
import pytest

from littlebridge.app.billing import AccountContact, NotificationKind
from littlebridge.app.services.billing import EmailNotificationGateway
from littlebridge.mail import (
    DevPrintProvider,
    EmailProvider,
    ResendProvider,
    SMTPProvider,
    create_email_provider,
    load_email_config,
    render_subject_body,
)
from littlebridge.mail.providers import RESEND_API_URL

CONTACT = AccountContact(account_id="A-1", display_name="Sunny Days", email="owner@sunnydays.test")


class _RecordingProvider(EmailProvider):
    name = "recording"

    def __init__(self) -> None:
        super().__init__(from_email="hello@littlebridge.test")
        self.messages = []

    def send_email(self, to: str, subject: str, html_body: str, text_body: str) -> None:  # type: ignore[override]
        self.messages.append({"to": to, "subject": subject, "html": html_body, "text": text_body})


class _FailingProvider(EmailProvider):
    name = "failing"

    def __init__(self, exc: Exception) -> None:
        super().__init__(from_email="hello@littlebridge.test")
        self._exc = exc

    def send_email(self, to: str, subject: str, html_body: str, text_body: str) -> None:  # type: ignore[override]
        raise self._exc


class _BlockingProvider(EmailProvider):
    name = "blocking"

    def __init__(self) -> None:
        super().__init__(from_email="hello@littlebridge.test")
        self.release = threading.Event()

    def send_email(self, to: str, subject: str, html_body: str, text_body: str) -> None:  # type: ignore[override]
        self.release.wait(timeout=5)


def test_render_payment_confirmation():
    subject, text_body, html_body = render_subject_body(
        "payment_confirmation",
        {
            "display_name": "Sunny Days",
            "amount_paid": "49.00 AUD",
            "invoice_date": "14/11/2023",
            "next_billing_date": "14/12/2023",
            "app_url": "https://app.littlebridge.test",
        },
    )

    assert "49.00 AUD" in subject
    assert "Hi Sunny Days team" in text_body
    assert "14/12/2023" in text_body
    assert 'href="https://app.littlebridge.test/dashboard"' in html_body
    assert "{{" not in subject + text_body + html_body


def test_render_escapes_html_values_only():
    _subject, text_body, html_body = render_subject_body(
        "subscription_canceled",
        {"display_name": "<b>Tom & Jerry</b>", "end_date": "15/11/2023", "app_url": "https://app.test"},
    )

    assert "&lt;b&gt;Tom &amp; Jerry&lt;/b&gt;" in html_body
    assert "<b>Tom & Jerry</b>" not in html_body
    assert "<b>Tom & Jerry</b>" in text_body


@pytest.mark.parametrize("kind", list(NotificationKind))
def test_every_notification_kind_has_templates(kind):
    subject, text_body, html_body = render_subject_body(kind.value, {})

    assert subject and text_body and html_body


def test_provider_factory_selects_by_name():
    assert isinstance(create_email_provider(load_email_config(env={})), DevPrintProvider)

    smtp = create_email_provider(
        load_email_config(env={"EMAIL_PROVIDER": "smtp", "SMTP_HOST": "mail.test", "SMTP_PORT": "2525"})
    )
    assert isinstance(smtp, SMTPProvider)
    assert (smtp.host, smtp.port) == ("mail.test", 2525)

    resend = create_email_provider(load_email_config(env={"EMAIL_PROVIDER": "resend", "RESEND_API_KEY": "re_1"}))
    assert isinstance(resend, ResendProvider)
    assert resend.describe() == {"email_provider": "resend", "email_sender": resend.from_email}


def test_resend_provider_requires_api_key():
    with pytest.raises(ValueError):
        create_email_provider(load_email_config(env={"EMAIL_PROVIDER": "resend"}))


def test_resend_provider_posts_message():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["auth"] = request.headers["Authorization"]
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "email_1"})

    client = httpx.Client(transport=httpx.MockTransport(handler))
    provider = ResendProvider(from_email="LittleBridge <hello@littlebridge.test>", api_key="re_key", client=client)

    provider.send_email("owner@sunnydays.test", "Subject", "<p>Hi</p>", "Hi")

    assert captured["url"] == RESEND_API_URL
    assert captured["auth"] == "Bearer re_key"
    assert captured["body"]["to"] == ["owner@sunnydays.test"]
    assert captured["body"]["from"] == "LittleBridge <hello@littlebridge.test>"


def test_resend_provider_raises_on_rejection():
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(422, json={})))
    provider = ResendProvider(from_email="hello@littlebridge.test", api_key="re_key", client=client)

    with pytest.raises(httpx.HTTPStatusError):
        provider.send_email("owner@sunnydays.test", "Subject", "<p>Hi</p>", "Hi")


def test_gateway_delivers_rendered_message():
    provider = _RecordingProvider()
    gateway = EmailNotificationGateway(provider_factory=lambda: provider, timeout_seconds=1)

    result = gateway.send(
        NotificationKind.PAYMENT_FAILED,
        CONTACT,
        {"display_name": "Sunny Days", "amount_due": "49.00 AUD", "next_retry_date": "—", "app_url": "https://app.test"},
    )

    assert result.delivered is True
    [message] = provider.messages
    assert message["to"] == "owner@sunnydays.test"
    assert "49.00 AUD" in message["text"]


def test_gateway_reports_provider_failure():
    gateway = EmailNotificationGateway(
        provider_factory=lambda: _FailingProvider(RuntimeError("mailbox full")),
        timeout_seconds=1,
    )

    result = gateway.send(NotificationKind.PAYMENT_CONFIRMATION, CONTACT, {})

    assert result.delivered is False
    assert result.error == "mailbox full"


def test_gateway_times_out_slow_provider():
    provider = _BlockingProvider()
    gateway = EmailNotificationGateway(provider_factory=lambda: provider, timeout_seconds=0.05)

    try:
        result = gateway.send(NotificationKind.SUBSCRIPTION_CANCELED, CONTACT, {})
    finally:
        provider.release.set()

    assert result.delivered is False
    assert "timed out" in result.error


def test_gateway_cancels_queued_send_after_timeout():
    blocking = _BlockingProvider()
    queued = _RecordingProvider()
    providers = iter([blocking, queued])
    executor = ThreadPoolExecutor(max_workers=1)
    gateway = EmailNotificationGateway(
        provider_factory=lambda: next(providers),
        timeout_seconds=0.05,
        executor=executor,
    )

    try:
        first = gateway.send(NotificationKind.SUBSCRIPTION_CANCELED, CONTACT, {})
        second = gateway.send(NotificationKind.PAYMENT_CONFIRMATION, CONTACT, {})
    finally:
        blocking.release.set()
        executor.shutdown(wait=True)

    assert "timed out" in first.error
    assert "timed out" in second.error
    assert queued.messages == []


def test_gateway_skips_contact_without_email():
    provider = _RecordingProvider()
    gateway = EmailNotificationGateway(provider_factory=lambda: provider, timeout_seconds=1)

    result = gateway.send(
        NotificationKind.PAYMENT_CONFIRMATION,
        AccountContact(account_id="A-2", display_name="No Email"),
        {},
    )

    assert result.delivered is False
    assert provider.messages == []
