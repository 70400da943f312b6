from datetime import datetime, timezone

import pytest

from noticewatch.config import CrawlerConfig, DeploymentNotificationConfig, EmailConfig

TARGET_URL = "https://www.example.gov.tw/Pages/List.aspx?nodeid=1"


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def crawler_config(tmp_path):
    return CrawlerConfig(
        target_url=TARGET_URL,
        timeout_seconds=5,
        max_retries=3,
        user_agents=["test-agent/1.0"],
        cache_dir=str(tmp_path / "cache"),
        backoff_base_seconds=0,
        backoff_max_seconds=0,
    )


@pytest.fixture
def email_config():
    return EmailConfig(
        enabled=True,
        smtp_server="smtp.example.com",
        smtp_port=587,
        username="bot",
        password="secret",
        from_email="bot@example.com",
        to_emails=["a@example.com", "b@example.com", "c@example.com"],
        deployment_notification=DeploymentNotificationConfig(enabled=True, dev_email="dev@example.com"),
    )


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def listing_html():
    rows = []
    for idx in range(1, 4):
        rows.append(
            f'<li class="row"><a href="/Pages/Detail.aspx?nodeid=1&amp;pid={idx}">Public notice number {idx}</a>'
            f'<span class="list-date">2026-10-0{idx}</span></li>'
        )
    padding = "<p>" + "filler text " * 120 + "</p>"
    return f"<html><body><ul>{''.join(rows)}</ul>{padding}</body></html>"
