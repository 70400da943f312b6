"""
Tests for the email notifier: audience selection and partial delivery.
"""
import smtplib

import pytest

from noticewatch.models import Item
from noticewatch.publisher import EmailNotifier

ITEMS = [Item.create("Road closure <Main St>", "http://x/a", date="2026-10-01")]


def capture_deliveries(notifier, monkeypatch, fail_for=(), transient_once=()):
    delivered = []
    attempts = {}

    def deliver(email):
        to = email["To"]
        attempts[to] = attempts.get(to, 0) + 1
        if to in fail_for:
            raise smtplib.SMTPRecipientsRefused({to: (550, b"mailbox unavailable")})
        if to in transient_once and attempts[to] == 1:
            raise smtplib.SMTPResponseException(451, b"try again later")
        delivered.append(email)

    monkeypatch.setattr(notifier, "_deliver", deliver)
    return delivered, attempts


@pytest.mark.asyncio
async def test_sends_to_all_recipients(email_config, monkeypatch):
    notifier = EmailNotifier(email_config, retry_wait=0)
    delivered, _ = capture_deliveries(notifier, monkeypatch)

    result = await notifier.send_notification("News update", "Found 1", ITEMS)

    assert result.success
    assert [email["To"] for email in delivered] == email_config.to_emails
    assert delivered[0]["Subject"] == "News update"


@pytest.mark.asyncio
async def test_restricted_send_goes_to_dev_only(email_config, monkeypatch):
    notifier = EmailNotifier(email_config, retry_wait=0)
    delivered, _ = capture_deliveries(notifier, monkeypatch)

    result = await notifier.send_notification("[First run]", "init", ITEMS, restrict_to_dev=True)

    assert result.success
    assert [email["To"] for email in delivered] == ["dev@example.com"]


@pytest.mark.asyncio
async def test_restricted_send_falls_back_when_deployment_notification_off(email_config, monkeypatch):
    email_config.deployment_notification.enabled = False
    notifier = EmailNotifier(email_config, retry_wait=0)
    delivered, _ = capture_deliveries(notifier, monkeypatch)

    await notifier.send_notification("[First run]", "init", ITEMS, restrict_to_dev=True)

    assert len(delivered) == 3


@pytest.mark.asyncio
async def test_partial_delivery_is_success_with_failures(email_config, monkeypatch):
    notifier = EmailNotifier(email_config, retry_wait=0)
    capture_deliveries(notifier, monkeypatch, fail_for=("b@example.com",))

    result = await notifier.send_notification("News update", "Found 1", ITEMS)

    assert result.success is True
    assert result.message == "Email sent to 2/3 recipients"
    assert len(result.recipient_failures) == 1
    assert result.recipient_failures[0].startswith("b@example.com")


@pytest.mark.asyncio
async def test_total_failure_is_reported(email_config, monkeypatch):
    notifier = EmailNotifier(email_config, retry_wait=0)
    capture_deliveries(notifier, monkeypatch, fail_for=tuple(email_config.to_emails))

    result = await notifier.send_notification("News update", "Found 1", ITEMS)

    assert result.success is False
    assert len(result.recipient_failures) == 3
    assert result.error.startswith("Failed to send to all recipients")


@pytest.mark.asyncio
async def test_transient_smtp_error_retried(email_config, monkeypatch):
    notifier = EmailNotifier(email_config, retry_wait=0)
    delivered, attempts = capture_deliveries(notifier, monkeypatch, transient_once=("a@example.com",))

    result = await notifier.send_notification("News update", "Found 1", ITEMS)

    assert result.success
    assert attempts["a@example.com"] == 2
    assert len(delivered) == 3


@pytest.mark.asyncio
async def test_disabled_notifier_does_not_send(email_config, monkeypatch):
    email_config.enabled = False
    notifier = EmailNotifier(email_config)
    delivered, _ = capture_deliveries(notifier, monkeypatch)

    result = await notifier.send_notification("News update", "Found 1", ITEMS)

    assert result.success is False
    assert delivered == []


def test_bodies_list_items_and_escape_html(email_config):
    notifier = EmailNotifier(email_config)

    text = notifier._prepare_text("Title", "Message", ITEMS)
    html = notifier._prepare_html("Title", "Message", ITEMS)

    assert "1. Road closure <Main St>" in text
    assert "Date: 2026-10-01" in text
    assert "Road closure &lt;Main St&gt;" in html
    assert 'href="http://x/a"' in html


@pytest.mark.asyncio
async def test_encoding_error_counts_as_recipient_failure(email_config, monkeypatch):
    notifier = EmailNotifier(email_config, retry_wait=0)

    def deliver(email):
        raise UnicodeEncodeError("ascii", "päss", 1, 2, "ordinal not in range(128)")

    monkeypatch.setattr(notifier, "_deliver", deliver)

    result = await notifier.send_notification("News update", "Found 1", ITEMS)

    assert result.success is False
    assert len(result.recipient_failures) == 3
