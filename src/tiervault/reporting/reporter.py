"""
Reporter: alert evaluation, de-duplication, run history and status output.

The Reporter is the only component that talks to notifiers. Other
components hand it alerts; it decides which ones are actually sent:

- An alert with the same key and severity as one sent within the
  cool-down window is suppressed (still attached to the run report, not
  sent again)
- Storage usage above the warning/critical thresholds raises alerts
- A latest verified full backup older than the age threshold raises a
  warning; having none at all is critical
- Every failed tiering action raises a warning
"""

from __future__ import annotations

import json
import logging
import os
from collections import deque
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from tiervault.engine.interface import CompressionSummary
from tiervault.models import Alert, BackupRecord, RunReport, TierUsage
from tiervault.reporting.notifiers import LoggingNotifier, Notifier
from tiervault.types import ActionOutcome, AlertSeverity, StorageTier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Thresholds:
    """
    Alert thresholds.

    Attributes:
        usage_warning_percent: Tier usage above this raises a warning
        usage_critical_percent: Tier usage above this raises a critical alert
        backup_max_age: Latest verified full backup older than this raises a warning
    """

    usage_warning_percent: float = 85.0
    usage_critical_percent: float = 95.0
    backup_max_age: timedelta = timedelta(hours=25)

    def __post_init__(self) -> None:
        if not 0 < self.usage_warning_percent < self.usage_critical_percent <= 100:
            raise ValueError(
                "thresholds must satisfy 0 < usage_warning_percent < usage_critical_percent <= 100, "
                f"got {self.usage_warning_percent} and {self.usage_critical_percent}"
            )
        if self.backup_max_age <= timedelta(0):
            raise ValueError(f"backup_max_age must be positive, got {self.backup_max_age}")


class Reporter:
    """
    Aggregates run outcomes and sends alerts.

    Example:
        >>> reporter = Reporter(Thresholds(), [LoggingNotifier()])
        >>> await reporter.evaluate_usage(inventory.usage, report)
        >>> await reporter.record_run(report)
        >>> reporter.last_report("tiering").status
        <RunStatus.SUCCEEDED: 'succeeded'>
    """

    def __init__(
        self,
        thresholds: Thresholds | None = None,
        notifiers: Sequence[Notifier] | None = None,
        *,
        history_size: int = 50,
        cooldown: timedelta = timedelta(hours=1),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if history_size < 1:
            raise ValueError(f"history_size must be >= 1, got {history_size}")
        self._thresholds = thresholds or Thresholds()
        self._notifiers: list[Notifier] = list(notifiers) if notifiers is not None else [LoggingNotifier()]
        self._history: deque[RunReport] = deque(maxlen=history_size)
        self._cooldown = cooldown
        self._clock = clock or (lambda: datetime.now(UTC))
        self._last_sent: dict[tuple[str, AlertSeverity], datetime] = {}

    @property
    def thresholds(self) -> Thresholds:
        return self._thresholds

    @property
    def notifiers(self) -> list[Notifier]:
        return list(self._notifiers)

    # -------------------------------------------------------------------------
    # Alerts
    # -------------------------------------------------------------------------

    def is_suppressed(self, alert: Alert) -> bool:
        last = self._last_sent.get((alert.key, alert.severity))
        return last is not None and self._clock() - last < self._cooldown

    async def raise_alert(self, alert: Alert, report: RunReport | None = None) -> bool:
        """
        Attach an alert to the report and send it unless suppressed.

        Returns:
            True if the alert was sent to the notifiers
        """
        if report is not None:
            report.alerts.append(alert)

        if self.is_suppressed(alert):
            logger.debug("Suppressed duplicate alert %s (%s)", alert.key, alert.severity.value)
            return False

        self._last_sent[(alert.key, alert.severity)] = self._clock()
        for notifier in self._notifiers:
            try:
                await notifier.notify(alert)
            except Exception:
                logger.exception("Notifier %s failed for alert %s", type(notifier).__name__, alert.key)
        return True

    async def evaluate_usage(
        self,
        usage: Iterable[TierUsage],
        report: RunReport | None = None,
    ) -> list[Alert]:
        """Raise alerts for tiers above the usage thresholds."""
        alerts = []
        for tier_usage in usage:
            percent = tier_usage.percent_used
            if percent is None:
                continue
            if percent > self._thresholds.usage_critical_percent:
                severity = AlertSeverity.CRITICAL
            elif percent > self._thresholds.usage_warning_percent:
                severity = AlertSeverity.WARNING
            else:
                continue
            alert = Alert(
                severity=severity,
                key=f"tier_usage:{tier_usage.tier.value}",
                message=f"{tier_usage.tier.value} storage is {percent:.1f}% full",
                raised_at=self._clock(),
                context={
                    "tier": tier_usage.tier.value,
                    "percent_used": round(percent, 1),
                    "used_bytes": tier_usage.used_bytes,
                    "capacity_bytes": tier_usage.capacity_bytes,
                },
            )
            await self.raise_alert(alert, report)
            alerts.append(alert)
        return alerts

    def exhausted_tiers(self, usage: Iterable[TierUsage]) -> set[StorageTier]:
        """Tiers above the critical threshold; migrations into them are skipped."""
        return {
            u.tier
            for u in usage
            if u.percent_used is not None and u.percent_used > self._thresholds.usage_critical_percent
        }

    async def evaluate_backup_age(
        self,
        latest: BackupRecord | None,
        now: datetime | None = None,
        report: RunReport | None = None,
    ) -> Alert | None:
        """Raise an alert if the latest verified full backup is missing or too old."""
        now = now or self._clock()
        if latest is None:
            alert = Alert(
                severity=AlertSeverity.CRITICAL,
                key="backup_age",
                message="no verified full backup exists",
                raised_at=now,
            )
        else:
            age = latest.age(now)
            if age <= self._thresholds.backup_max_age:
                return None
            hours = age.total_seconds() / 3600
            alert = Alert(
                severity=AlertSeverity.WARNING,
                key="backup_age",
                message=f"latest verified full backup is {hours:.1f}h old",
                raised_at=now,
                context={"backup_id": latest.backup_id, "created_at": latest.created_at.isoformat()},
            )
        await self.raise_alert(alert, report)
        return alert

    # -------------------------------------------------------------------------
    # Runs
    # -------------------------------------------------------------------------

    async def record_run(self, report: RunReport) -> None:
        """Raise alerts for failed actions, log the summary and keep the report."""
        for result in report.results:
            if result.outcome is not ActionOutcome.FAILED:
                continue
            action = result.action
            await self.raise_alert(
                Alert(
                    severity=AlertSeverity.WARNING,
                    key=f"action_failed:{action.kind.value}:{action.chunk_id}",
                    message=f"{action.describe()} failed: {result.error}",
                    raised_at=self._clock(),
                    context={"run_id": report.run_id, "attempts": result.attempts},
                ),
                report,
            )

        for chunk_id in report.unmanaged_chunks:
            logger.info("unmanaged chunk %s", chunk_id)

        self._history.append(report)
        logger.info(
            "Run %s (%s) %s: %d attempted, %d succeeded, %d failed, %d skipped",
            report.run_id,
            report.job,
            report.status.value,
            report.attempted,
            report.succeeded,
            report.failed,
            report.skipped,
        )

    def history(self) -> list[RunReport]:
        """Recent run reports, oldest first."""
        return list(self._history)

    def last_report(self, job: str | None = None) -> RunReport | None:
        for report in reversed(self._history):
            if job is None or report.job == job:
                return report
        return None

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def status_document(
        self,
        *,
        usage: Iterable[TierUsage] = (),
        chunks_by_tier: dict[StorageTier, int] | None = None,
        compression: Iterable[CompressionSummary] = (),
        latest_full: BackupRecord | None = None,
        latest_incremental: BackupRecord | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Build the JSON-serializable status document."""
        now = now or self._clock()

        backup_age_hours = None
        if latest_full is not None:
            backup_age_hours = round(latest_full.age(now).total_seconds() / 3600, 1)

        last_runs = {}
        for job in ("tiering", "backup"):
            report = self.last_report(job)
            last_runs[job] = report.to_dict() if report else None

        return {
            "generated_at": now.isoformat(),
            "tiers": [
                {
                    "tier": u.tier.value,
                    "location": u.location,
                    "used_bytes": u.used_bytes,
                    "capacity_bytes": u.capacity_bytes,
                    "percent_used": round(u.percent_used, 1) if u.percent_used is not None else None,
                    "chunks": (chunks_by_tier or {}).get(u.tier),
                }
                for u in usage
            ],
            "compression": [summary.to_dict() for summary in compression],
            "backups": {
                "latest_full": latest_full.to_dict() if latest_full else None,
                "latest_incremental": latest_incremental.to_dict() if latest_incremental else None,
                "full_backup_age_hours": backup_age_hours,
                "healthy": backup_age_hours is not None
                and backup_age_hours * 3600 <= self._thresholds.backup_max_age.total_seconds(),
            },
            "last_runs": last_runs,
        }

    def write_status(self, path: str | Path, document: dict[str, Any]) -> Path:
        """Write the status document as JSON, replacing the file atomically."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(json.dumps(document, indent=2, default=str) + "\n", encoding="utf-8")
        os.replace(tmp, path)
        logger.debug("Status written to %s", path)
        return path


__all__ = [
    "Thresholds",
    "Reporter",
]
