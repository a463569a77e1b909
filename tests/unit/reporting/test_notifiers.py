"""
Unit tests for alert notifiers.
"""

import logging

import aiohttp
import pytest

from tiervault.models import Alert
from tiervault.reporting import (
    InMemoryNotifier,
    LoggingNotifier,
    Notifier,
    WebhookNotifier,
)
from tiervault.types import AlertSeverity


@pytest.fixture
def alert() -> Alert:
    return Alert(AlertSeverity.CRITICAL, "backup_age", "no verified full backup exists")


class _Response:
    def __init__(self, status: int) -> None:
        self.status = status

    def raise_for_status(self) -> None:
        if self.status >= 400:
            raise aiohttp.ClientConnectionError(f"server returned {self.status}")

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class _Session:
    """Stands in for aiohttp.ClientSession; records posted payloads."""

    def __init__(self, status: int = 200) -> None:
        self.status = status
        self.posted: list[tuple[str, dict]] = []
        self.closed = False

    def post(self, url, json=None, timeout=None):
        self.posted.append((url, json))
        return _Response(self.status)

    async def close(self) -> None:
        self.closed = True


class TestProtocol:
    """Tests for Notifier protocol conformance."""

    def test_implementations(self):
        """Test every sink satisfies the Notifier protocol."""
        assert isinstance(LoggingNotifier(), Notifier)
        assert isinstance(InMemoryNotifier(), Notifier)
        assert isinstance(WebhookNotifier("http://localhost/hook"), Notifier)


class TestLoggingNotifier:
    """Tests for LoggingNotifier."""

    async def test_logs_at_severity_level(self, alert, caplog):
        """Test critical alerts are logged at CRITICAL."""
        with caplog.at_level(logging.INFO, logger="tiervault.alerts"):
            await LoggingNotifier().notify(alert)

        record = caplog.records[-1]
        assert record.levelno == logging.CRITICAL
        assert "backup_age" in record.getMessage()


class TestWebhookNotifier:
    """Tests for WebhookNotifier."""

    async def test_posts_alert_json(self, alert):
        """Test the alert is posted as JSON."""
        session = _Session()
        notifier = WebhookNotifier("http://hooks.local/tv", session=session)

        await notifier.notify(alert)

        url, payload = session.posted[0]
        assert url == "http://hooks.local/tv"
        assert payload["source"] == "tiervault"
        assert payload["key"] == "backup_age"
        assert payload["severity"] == "critical"

    async def test_http_error_logged_not_raised(self, alert, caplog):
        """Test delivery failures never propagate."""
        notifier = WebhookNotifier("http://hooks.local/tv", session=_Session(status=500))

        with caplog.at_level(logging.ERROR):
            await notifier.notify(alert)

        assert "Failed to send webhook notification" in caplog.text

    async def test_close_leaves_injected_session_open(self):
        """Test a caller-provided session is not closed by the notifier."""
        session = _Session()
        notifier = WebhookNotifier("http://hooks.local/tv", session=session)

        await notifier.close()

        assert session.closed is False


class TestInMemoryNotifier:
    """Tests for InMemoryNotifier."""

    async def test_collects_and_clears(self, alert):
        """Test alerts are kept in order and can be cleared."""
        notifier = InMemoryNotifier()
        await notifier.notify(alert)

        assert notifier.keys == ["backup_age"]

        notifier.clear()
        assert notifier.alerts == []
