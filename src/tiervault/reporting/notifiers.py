"""
Notification sinks for alerts.

A notifier has one method, ``notify(alert)``. Delivery failures are logged
and never raised: losing a notification must not fail a tiering or backup
run.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol, runtime_checkable

import aiohttp

from tiervault.models import Alert
from tiervault.types import AlertSeverity

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    AlertSeverity.INFO: logging.INFO,
    AlertSeverity.WARNING: logging.WARNING,
    AlertSeverity.CRITICAL: logging.CRITICAL,
}


@runtime_checkable
class Notifier(Protocol):
    """Protocol for alert sinks."""

    async def notify(self, alert: Alert) -> None:
        """Deliver one alert. Must not raise for delivery failures."""
        ...


class LoggingNotifier:
    """Writes alerts to the log at a level matching their severity."""

    def __init__(self, logger_name: str = "tiervault.alerts") -> None:
        self._logger = logging.getLogger(logger_name)

    async def notify(self, alert: Alert) -> None:
        self._logger.log(
            _LOG_LEVELS[alert.severity],
            "[%s] %s: %s",
            alert.severity.value.upper(),
            alert.key,
            alert.message,
        )


class WebhookNotifier:
    """
    Posts alerts as JSON to an HTTP endpoint.

    Example:
        >>> notifier = WebhookNotifier("https://hooks.example.com/tiervault")
        >>> await notifier.notify(alert)
        >>> await notifier.close()
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._url = url
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    @property
    def url(self) -> str:
        return self._url

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def notify(self, alert: Alert) -> None:
        payload = {"source": "tiervault", **alert.to_dict()}
        try:
            session = self._get_session()
            async with session.post(self._url, json=payload, timeout=self._timeout) as response:
                response.raise_for_status()
            logger.debug("Webhook accepted alert %s (status %d)", alert.key, response.status)
        except aiohttp.ClientError as e:
            logger.error("Failed to send webhook notification for %s: %s", alert.key, e)
        except asyncio.TimeoutError:
            logger.error("Timeout sending webhook notification for %s", alert.key)

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()


class InMemoryNotifier:
    """Collects alerts in a list. Intended for tests."""

    def __init__(self) -> None:
        self.alerts: list[Alert] = []

    async def notify(self, alert: Alert) -> None:
        self.alerts.append(alert)

    @property
    def keys(self) -> list[str]:
        return [alert.key for alert in self.alerts]

    def clear(self) -> None:
        self.alerts.clear()


__all__ = [
    "Notifier",
    "LoggingNotifier",
    "WebhookNotifier",
    "InMemoryNotifier",
]
