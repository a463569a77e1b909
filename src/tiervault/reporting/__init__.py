"""
Reporting for tiervault.

Provides:
- Reporter and Thresholds: alert evaluation, de-duplication, run history
- Notifier protocol with logging, webhook and in-memory sinks
"""

from tiervault.reporting.notifiers import (
    InMemoryNotifier,
    LoggingNotifier,
    Notifier,
    WebhookNotifier,
)
from tiervault.reporting.reporter import Reporter, Thresholds

__all__ = [
    "Reporter",
    "Thresholds",
    "Notifier",
    "LoggingNotifier",
    "WebhookNotifier",
    "InMemoryNotifier",
]
