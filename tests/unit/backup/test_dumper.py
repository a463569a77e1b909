"""
Unit tests for PgDumpDumper and the WAL helpers.

The PostgreSQL client tools are replaced by small shell scripts written to
tmp_path.
"""

import os
import tarfile
from datetime import timedelta
from pathlib import Path

import pytest

from tests.fixtures import NOW
from tiervault.backup.dumper import PgDumpDumper, wal_segments, wal_segments_before
from tiervault.exceptions import DumpError

URL = "postgresql+asyncpg://backup:pw@db:5433/metrics"

LISTING = """\
;
; Archive created at 2025-06-01 12:00:00 UTC
;     dbname: metrics
;
215; 1259 16385 TABLE public metrics backup
216; 0 16385 TABLE DATA public metrics backup
217; 2606 16390 CONSTRAINT public metrics metrics_pkey backup
"""


def script(tmp_path: Path, name: str, body: str) -> str:
    path = tmp_path / name
    path.write_text(f"#!/bin/sh\n{body}\n", encoding="utf-8")
    path.chmod(0o755)
    return str(path)


def segment(wal_dir: Path, name: str, age: timedelta) -> Path:
    path = wal_dir / name
    path.write_bytes(b"wal")
    mtime = (NOW - age).timestamp()
    os.utime(path, (mtime, mtime))
    return path


@pytest.fixture
def wal_dir(tmp_path) -> Path:
    path = tmp_path / "wal"
    path.mkdir()
    segment(path, "000000010000000000000001", timedelta(days=10))
    segment(path, "000000010000000000000002", timedelta(days=8))
    segment(path, "000000010000000000000003", timedelta(days=1))
    segment(path, "000000010000000000000004.partial", timedelta(days=9))
    return path


class TestWalHelpers:
    """Tests for wal_segments and wal_segments_before."""

    def test_segments_since(self, wal_dir):
        """Test only newer complete segments are selected."""
        names = [p.name for p in wal_segments(wal_dir, NOW - timedelta(days=9))]

        assert names == ["000000010000000000000002", "000000010000000000000003"]

    def test_segments_before(self, wal_dir):
        """Test older complete segments are selected, oldest first."""
        names = [p.name for p in wal_segments_before(wal_dir, NOW - timedelta(days=7))]

        assert names == ["000000010000000000000001", "000000010000000000000002"]


class TestPruneWal:
    """Tests for PgDumpDumper.prune_wal."""

    async def test_prunes_old_segments(self, wal_dir):
        """Test segments older than the cutoff are deleted and reported."""
        dumper = PgDumpDumper(URL, wal_dir=wal_dir)

        deleted = await dumper.prune_wal(NOW - timedelta(days=7))

        assert [p.name for p in deleted] == ["000000010000000000000001", "000000010000000000000002"]
        assert sorted(p.name for p in wal_dir.iterdir()) == [
            "000000010000000000000003",
            "000000010000000000000004.partial",
        ]

    async def test_nothing_to_prune(self, wal_dir):
        """Test a cutoff older than every segment deletes nothing."""
        dumper = PgDumpDumper(URL, wal_dir=wal_dir)

        assert await dumper.prune_wal(NOW - timedelta(days=30)) == []
        assert len(list(wal_dir.iterdir())) == 4

    async def test_without_wal_dir(self, tmp_path):
        """Test pruning is a no-op without a WAL directory."""
        assert await PgDumpDumper(URL).prune_wal(NOW) == []
        assert await PgDumpDumper(URL, wal_dir=tmp_path / "missing").prune_wal(NOW) == []


class TestArchiveWal:
    """Tests for PgDumpDumper.archive_wal."""

    async def test_archives_newer_segments(self, wal_dir, tmp_path):
        """Test the archive holds the segments written since the base backup."""
        destination = tmp_path / "incremental.tar.gz"
        dumper = PgDumpDumper(URL, wal_dir=wal_dir)

        count = await dumper.archive_wal(destination, since=NOW - timedelta(days=9))

        assert count == 2
        with tarfile.open(destination, "r:gz") as archive:
            assert archive.getnames() == ["000000010000000000000002", "000000010000000000000003"]

    async def test_missing_wal_dir(self, tmp_path):
        """Test a missing WAL directory is a dump failure."""
        dumper = PgDumpDumper(URL, wal_dir=tmp_path / "missing")

        with pytest.raises(DumpError, match="does not exist"):
            await dumper.archive_wal(tmp_path / "x.tar.gz", since=NOW)


class TestDumpFull:
    """Tests for PgDumpDumper.dump_full."""

    async def test_command_and_password(self, tmp_path):
        """Test pg_dump gets connection options and the password only via the environment."""
        seen = tmp_path / "seen"
        pg_dump = script(tmp_path, "pg_dump", f'echo "$@" > {seen}\necho "$PGPASSWORD" >> {seen}')

        await PgDumpDumper(URL, pg_dump_path=pg_dump).dump_full(tmp_path / "full.dump")

        args, password = seen.read_text(encoding="utf-8").splitlines()
        assert args == (
            f"--format=custom --no-password --file {tmp_path / 'full.dump'} "
            "--host db --port 5433 --username backup --dbname metrics"
        )
        assert "pw" not in args.split()
        assert password == "pw"

    async def test_failure(self, tmp_path):
        """Test a non-zero exit carries pg_dump's message."""
        pg_dump = script(tmp_path, "pg_dump", 'echo "connection refused" >&2\nexit 1')

        with pytest.raises(DumpError, match="exited with status 1: connection refused"):
            await PgDumpDumper(URL, pg_dump_path=pg_dump).dump_full(tmp_path / "full.dump")

    async def test_timeout(self, tmp_path):
        """Test a hung pg_dump is killed."""
        pg_dump = script(tmp_path, "pg_dump", "exec sleep 30")
        dumper = PgDumpDumper(URL, pg_dump_path=pg_dump, timeout=timedelta(milliseconds=200))

        with pytest.raises(DumpError, match="timed out"):
            await dumper.dump_full(tmp_path / "full.dump")


class TestInspectDump:
    """Tests for PgDumpDumper.inspect_dump."""

    async def test_counts_toc_entries(self, tmp_path):
        """Test comment lines are ignored and entries counted."""
        listing = tmp_path / "listing.txt"
        listing.write_text(LISTING, encoding="utf-8")
        pg_restore = script(tmp_path, "pg_restore", f'[ "$1" = "--list" ] || exit 2\ncat {listing}')
        dumper = PgDumpDumper(URL, pg_restore_path=pg_restore)

        assert await dumper.inspect_dump(tmp_path / "full.dump") == 3

    async def test_invalid_archive(self, tmp_path):
        """Test a dump pg_restore cannot read is a dump failure."""
        pg_restore = script(
            tmp_path,
            "pg_restore",
            'echo "pg_restore: error: input file does not appear to be a valid archive" >&2\nexit 1',
        )
        dumper = PgDumpDumper(URL, pg_restore_path=pg_restore)

        with pytest.raises(DumpError, match="valid archive"):
            await dumper.inspect_dump(tmp_path / "full.dump")

    async def test_missing_tool(self, tmp_path):
        """Test a missing pg_restore binary is a dump failure."""
        dumper = PgDumpDumper(URL, pg_restore_path=str(tmp_path / "no-such-pg_restore"))

        with pytest.raises(DumpError, match="cannot start"):
            await dumper.inspect_dump(tmp_path / "full.dump")
