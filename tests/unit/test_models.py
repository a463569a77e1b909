"""
Unit tests for the data model.

Tests chunk validation, policy rule ordering constraints, backup record
state transitions and run report aggregation.
"""

from datetime import timedelta

import pytest

from tests.fixtures import NOW, days, make_chunk, metrics_rule
from tiervault.exceptions import ConfigurationError, DumpError, InvalidTransitionError, VerificationError
from tiervault.models import (
    ActionResult,
    BackupRecord,
    ChunkRecord,
    PendingAction,
    PolicyRule,
    RunReport,
    TierStage,
    TierUsage,
    is_forward_transition,
)
from tiervault.types import (
    ActionKind,
    ActionOutcome,
    BackupKind,
    RunStatus,
    StorageTier,
    VerificationStatus,
)


class TestStorageTier:
    """Tests for tier ordering."""

    def test_rank_order(self):
        """Test hot < warm < cold."""
        assert StorageTier.HOT.rank < StorageTier.WARM.rank < StorageTier.COLD.rank

    def test_is_after(self):
        """Test is_after is strict."""
        assert StorageTier.COLD.is_after(StorageTier.WARM)
        assert not StorageTier.WARM.is_after(StorageTier.WARM)
        assert not StorageTier.HOT.is_after(StorageTier.COLD)

    def test_forward_transition(self):
        """Test only forward or same-tier transitions are forward."""
        assert is_forward_transition(StorageTier.HOT, StorageTier.COLD)
        assert is_forward_transition(StorageTier.WARM, StorageTier.WARM)
        assert not is_forward_transition(StorageTier.COLD, StorageTier.WARM)


class TestChunkRecord:
    """Tests for ChunkRecord."""

    def test_age_measured_from_range_end(self):
        """Test age is the age of the newest data."""
        chunk = make_chunk("c1", age=days(10))

        assert chunk.age(NOW) == days(10)

    def test_range_must_be_ordered(self):
        """Test range_start must precede range_end."""
        with pytest.raises(ValueError, match="must be before range_end"):
            ChunkRecord(
                chunk_id="c1",
                table_name="metrics",
                range_start=NOW,
                range_end=NOW,
            )

    def test_negative_size_rejected(self):
        """Test negative sizes are rejected."""
        with pytest.raises(ValueError, match="size_bytes"):
            ChunkRecord(
                chunk_id="c1",
                table_name="metrics",
                range_start=NOW - days(1),
                range_end=NOW,
                size_bytes=-1,
            )

    def test_with_tier_returns_copy(self):
        """Test with_tier does not mutate the original."""
        chunk = make_chunk("c1")
        moved = chunk.with_tier(StorageTier.WARM)

        assert chunk.tier is StorageTier.HOT
        assert moved.tier is StorageTier.WARM
        assert moved.chunk_id == chunk.chunk_id


class TestTierUsage:
    """Tests for TierUsage."""

    def test_percent_used(self):
        """Test percentage calculation."""
        usage = TierUsage(StorageTier.HOT, used_bytes=850, capacity_bytes=1000)

        assert usage.percent_used == pytest.approx(85.0)
        assert usage.free_bytes == 150

    def test_unknown_capacity(self):
        """Test usage without a capacity has no percentage."""
        usage = TierUsage(StorageTier.COLD, used_bytes=10)

        assert usage.percent_used is None
        assert usage.free_bytes is None


class TestPolicyRule:
    """Tests for PolicyRule validation."""

    def test_valid_rule(self):
        """Test a well ordered rule is accepted."""
        rule = metrics_rule(cold_after=days(180))

        assert rule.migrate_after == days(30)
        assert [stage.tier for stage in rule.tiers] == [StorageTier.WARM, StorageTier.COLD]

    def test_matches_glob(self):
        """Test table_pattern is a shell-style glob."""
        rule = metrics_rule(table_pattern="*_logs")

        assert rule.matches("audit_logs")
        assert not rule.matches("audit_logs_archive")

    def test_stage_before_compress_rejected(self):
        """Test migrating before compressing is rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            metrics_rule(compress_after=days(30), warm_after=days(7))

        assert exc_info.value.field == "metrics"
        assert "earlier than compress_after" in str(exc_info.value)

    def test_stage_after_retention_rejected(self):
        """Test a stage later than retention is rejected."""
        with pytest.raises(ConfigurationError, match="later than retain_for"):
            metrics_rule(warm_after=days(30), retain_for=days(14))

    def test_compress_after_retention_rejected(self):
        """Test compressing after expiry is rejected."""
        with pytest.raises(ConfigurationError, match="compress_after"):
            metrics_rule(compress_after=days(30), warm_after=None, retain_for=days(7))

    def test_hot_stage_rejected(self):
        """Test hot is not a migration target."""
        with pytest.raises(ConfigurationError, match="entry tier"):
            PolicyRule(
                name="bad",
                table_pattern="x",
                tiers=(TierStage(StorageTier.HOT, days(1)),),
            )

    def test_stages_must_increase(self):
        """Test stages must go deeper with increasing age."""
        with pytest.raises(ConfigurationError, match="strictly increasing"):
            PolicyRule(
                name="bad",
                table_pattern="x",
                tiers=(
                    TierStage(StorageTier.COLD, days(30)),
                    TierStage(StorageTier.WARM, days(60)),
                ),
            )

    def test_empty_pattern_rejected(self):
        """Test an empty table pattern is rejected."""
        with pytest.raises(ConfigurationError, match="table_pattern"):
            PolicyRule(name="bad", table_pattern="")

    def test_target_tier_is_deepest_reached(self):
        """Test target_tier picks the deepest stage reached."""
        rule = metrics_rule(cold_after=days(180))

        assert rule.target_tier(days(10)) is None
        assert rule.target_tier(days(30)) is StorageTier.WARM
        assert rule.target_tier(days(400)) is StorageTier.COLD


class TestPendingAction:
    """Tests for PendingAction."""

    def test_migrate_requires_target(self):
        """Test a migrate action needs a target tier."""
        with pytest.raises(ValueError, match="target tier"):
            PendingAction("c1", "metrics", ActionKind.MIGRATE, "metrics")

    def test_expire_requires_retention(self):
        """Test an expire action carries the retention window."""
        with pytest.raises(ValueError, match="retention window"):
            PendingAction("c1", "metrics", ActionKind.EXPIRE, "metrics")

    def test_describe(self):
        """Test human readable description."""
        action = PendingAction(
            "c1", "metrics", ActionKind.MIGRATE, "metrics", target_tier=StorageTier.WARM
        )

        assert action.describe() == "migrate c1 -> warm"


class TestBackupRecord:
    """Tests for BackupRecord status transitions."""

    def _record(self) -> BackupRecord:
        return BackupRecord(kind=BackupKind.FULL, source="metrics", local_path="/b/full.dump")

    def test_unverified_to_verified(self):
        """Test unverified -> verified."""
        record = self._record()
        record.mark_verified(NOW)

        assert record.status is VerificationStatus.VERIFIED
        assert record.verified_at == NOW

    def test_unverified_to_failed(self):
        """Test unverified -> failed keeps the error."""
        record = self._record()
        record.mark_failed("checksum mismatch", NOW)

        assert record.status is VerificationStatus.FAILED
        assert record.error == "checksum mismatch"

    def test_verified_cannot_revert(self):
        """Test a verified record cannot move again."""
        record = self._record()
        record.mark_verified(NOW)

        with pytest.raises(InvalidTransitionError) as exc_info:
            record.mark_failed("late corruption")

        assert exc_info.value.current == "verified"
        assert exc_info.value.requested == "failed"
        assert record.status is VerificationStatus.VERIFIED

    def test_failed_cannot_be_verified(self):
        """Test a failed record cannot be verified later."""
        record = self._record()
        record.mark_failed("too small")

        with pytest.raises(InvalidTransitionError):
            record.mark_verified()

    def test_to_dict(self):
        """Test serialized form."""
        record = self._record()
        data = record.to_dict()

        assert data["kind"] == "full"
        assert data["status"] == "unverified"
        assert data["verified_at"] is None


class TestRunReport:
    """Tests for RunReport aggregation."""

    def _result(self, outcome: ActionOutcome) -> ActionResult:
        action = PendingAction("c1", "metrics", ActionKind.COMPRESS, "metrics")
        return ActionResult(action=action, outcome=outcome)

    def test_counts(self):
        """Test attempted excludes skipped actions."""
        report = RunReport(job="tiering")
        report.results.extend(
            [
                self._result(ActionOutcome.SUCCEEDED),
                self._result(ActionOutcome.FAILED),
                self._result(ActionOutcome.SKIPPED),
            ]
        )

        assert report.attempted == 2
        assert report.succeeded == 1
        assert report.failed == 1
        assert report.skipped == 1

    def test_finalize_partial_on_failures(self):
        """Test a run with failed actions finishes partial."""
        report = RunReport(job="tiering", started_at=NOW)
        report.results.append(self._result(ActionOutcome.FAILED))
        report.finalize(NOW + timedelta(seconds=5))

        assert report.status is RunStatus.PARTIAL
        assert report.duration_seconds == 5.0

    def test_finalize_succeeded(self):
        """Test a clean run finishes succeeded."""
        report = RunReport(job="tiering").finalize()

        assert report.status is RunStatus.SUCCEEDED

    def test_finalize_keeps_terminal_status(self):
        """Test finalize does not override a failed run."""
        report = RunReport(job="backup")
        report.fail("disk full")
        report.finalize()

        assert report.status is RunStatus.FAILED
        assert report.error == "disk full"
        assert report.error_type is None

    def test_fail_with_exception_records_type(self):
        """Test failing with an exception records its class name."""
        report = RunReport(job="backup")
        report.fail(VerificationError("checksum mismatch", backup_id="b1"))

        assert report.error == "checksum mismatch"
        assert report.error_type == "VerificationError"
        assert report.to_dict()["error_type"] == "VerificationError"

    def test_degrade_is_partial(self):
        """Test a degraded run keeps its error but finishes partial."""
        report = RunReport(job="backup")
        report.degrade(DumpError("WAL directory missing"))
        report.finalize()

        assert report.status is RunStatus.PARTIAL
        assert report.error_type == "DumpError"
