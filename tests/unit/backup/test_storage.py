"""
Unit tests for the backup storage targets.

Mount commands are replaced by harmless executables (``true``, ``sleep``)
through a RemoteStorageTarget subclass.
"""

import stat
import time
from datetime import timedelta
from pathlib import Path

import pytest

from tiervault.backup import BackupCoordinator, RemoteStorageTarget
from tiervault.exceptions import ReplicationError
from tiervault.types import AlertSeverity, BackupKind


class ScriptedRemote(RemoteStorageTarget):
    """Remote target whose mount command is replaced and recorded."""

    def __init__(self, root, command, **kwargs):
        super().__init__(root, host="nas.local", **kwargs)
        self.command = command
        self.seen_commands: list[list[str]] = []
        self.seen_credentials: list[tuple[str, int]] = []

    def _mount_command(self, credentials=None):
        real = super()._mount_command(credentials)
        self.seen_commands.append(real)
        if credentials is not None:
            mode = stat.S_IMODE(credentials.stat().st_mode)
            self.seen_credentials.append((credentials.read_text(encoding="utf-8"), mode))
        return self.command


class SlowCopyRemote(RemoteStorageTarget):
    """Remote target whose copy hangs."""

    @staticmethod
    def _copy(source, destination):
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(b"partial")
        time.sleep(1.0)


def artifact(tmp_path: Path) -> Path:
    path = tmp_path / "local" / "full" / "metrics_full.dump"
    path.parent.mkdir(parents=True)
    path.write_bytes(b"x" * 2048)
    return path


class TestMount:
    """Tests for mounting the share."""

    async def test_hanging_mount_times_out(self, tmp_path):
        """Test a mount command that never returns is killed and reported."""
        nas = ScriptedRemote(
            tmp_path / "nas",
            ["sleep", "30"],
            mount_timeout=timedelta(milliseconds=200),
        )

        started = time.monotonic()
        with pytest.raises(ReplicationError, match="timed out"):
            await nas.ensure_available()

        assert time.monotonic() - started < 10
        assert not nas.is_mounted()

    async def test_hanging_mount_is_degraded_mode(
        self, tmp_path, dumper, catalog, local_target, backup_policy, reporter, notifier, clock
    ):
        """Test a backup cycle survives a hung share with a warning."""
        nas = ScriptedRemote(
            tmp_path / "nas",
            ["sleep", "30"],
            mount_timeout=timedelta(milliseconds=200),
        )
        coordinator = BackupCoordinator(
            dumper,
            catalog,
            local_target,
            nas,
            policy=backup_policy,
            reporter=reporter,
            clock=clock,
            enable_tracing=False,
        )

        record = await coordinator.run_backup_cycle(BackupKind.FULL)

        assert record.remote_path is None
        assert [(a.key, a.severity) for a in notifier.alerts] == [
            ("remote_unavailable", AlertSeverity.WARNING)
        ]

    async def test_cifs_password_not_in_argv(self, tmp_path):
        """Test CIFS credentials go through a private file, not the command line."""
        nas = ScriptedRemote(tmp_path / "nas", ["true"], username="backup", password="s3cret")

        await nas.ensure_available()

        command = nas.seen_commands[0]
        assert command[:3] == ["mount", "-t", "cifs"]
        assert not any("s3cret" in part for part in command)
        assert [opt for opt in command[-1].split(",") if opt.startswith("credentials=")]
        content, mode = nas.seen_credentials[0]
        assert content == "username=backup\npassword=s3cret\n"
        assert mode == 0o600

    async def test_temporary_credentials_removed(self, tmp_path):
        """Test the temporary credentials file is gone after mounting."""
        nas = ScriptedRemote(tmp_path / "nas", ["false"], username="backup", password="s3cret")

        with pytest.raises(ReplicationError, match="CIFS/SMB"):
            await nas.ensure_available()

        path = nas.seen_commands[0][-1].split(",")[0].removeprefix("credentials=")
        assert not Path(path).exists()

    async def test_configured_credentials_file(self, tmp_path):
        """Test a configured credentials file is passed through unchanged."""
        credentials = tmp_path / "nas.cred"
        credentials.write_text("username=backup\npassword=s3cret\n", encoding="utf-8")
        nas = ScriptedRemote(tmp_path / "nas", ["true"], credentials_file=credentials)

        await nas.ensure_available()

        assert nas.seen_commands[0][-1].startswith(f"credentials={credentials},")
        assert credentials.exists()

    async def test_nfs_without_credentials(self, tmp_path):
        """Test a share without credentials is mounted over NFS."""
        nas = ScriptedRemote(tmp_path / "nas", ["true"])

        await nas.ensure_available()

        assert nas.seen_commands[0] == [
            "mount",
            "-t",
            "nfs",
            "nas.local:/backups",
            str(tmp_path / "nas"),
        ]
        assert nas.seen_credentials == []

    async def test_unmounted_share_without_mounting(self, tmp_path):
        """Test a missing share directory is unavailable when mounting is off."""
        nas = RemoteStorageTarget(tmp_path / "missing", mount=False)

        with pytest.raises(ReplicationError, match="not available"):
            await nas.ensure_available()


class TestCopyIn:
    """Tests for copying artifacts onto the share."""

    async def test_copy_with_sidecar(self, tmp_path, remote_target):
        """Test the artifact and its sidecar are copied."""
        source = artifact(tmp_path)
        source.with_name(source.name + ".sha256").write_text("abc  metrics_full.dump\n", encoding="utf-8")

        destination = await remote_target.copy_in(source, BackupKind.FULL)

        assert destination == remote_target.root / "full" / source.name
        assert destination.read_bytes() == source.read_bytes()
        assert destination.with_name(destination.name + ".sha256").is_file()

    async def test_hanging_copy_times_out(self, tmp_path):
        """Test a copy that does not finish in time is removed and reported."""
        root = tmp_path / "nas"
        root.mkdir()
        nas = SlowCopyRemote(root, mount=False, copy_timeout=timedelta(milliseconds=100))
        source = artifact(tmp_path)

        with pytest.raises(ReplicationError, match="timed out"):
            await nas.copy_in(source, BackupKind.FULL)

        assert not (root / "full" / source.name).exists()
