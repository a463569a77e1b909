"""
Backup artifact producers.

- PgDumpDumper: full dumps with ``pg_dump --format=custom``, their
  ``pg_restore --list`` structural check, WAL pruning, and incremental
  archives of the WAL segments written since the last full backup
- Dumper: protocol the Backup Coordinator depends on, so tests can replace
  the subprocess with a fake
"""

from __future__ import annotations

import asyncio
import logging
import os
import tarfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import Protocol, runtime_checkable

from sqlalchemy.engine import make_url

from tiervault.exceptions import DumpError

logger = logging.getLogger(__name__)


@runtime_checkable
class Dumper(Protocol):
    """Protocol for producing backup artifacts."""

    @property
    def source(self) -> str:
        """Name of the database being backed up."""
        ...

    async def dump_full(self, destination: Path) -> None:
        """
        Write a complete dump to `destination`.

        Raises:
            DumpError: If the dump could not be produced
        """
        ...

    async def archive_wal(self, destination: Path, since: datetime) -> int:
        """
        Archive WAL segments modified after `since` into `destination`.

        Returns:
            Number of segments archived

        Raises:
            DumpError: If the archive could not be produced
        """
        ...

    async def inspect_dump(self, path: Path) -> int:
        """
        List a full dump's table of contents.

        Returns:
            Number of entries

        Raises:
            DumpError: If the dump cannot be read as an archive
        """
        ...

    async def prune_wal(self, before: datetime) -> list[Path]:
        """Delete archived WAL segments last modified before `before`."""
        ...


def wal_segments(wal_dir: Path, since: datetime) -> list[Path]:
    """WAL files in `wal_dir` modified after `since`, oldest first."""
    return [p for p, mtime in _wal_files(wal_dir) if mtime > since.timestamp()]


def wal_segments_before(wal_dir: Path, before: datetime) -> list[Path]:
    """WAL files in `wal_dir` last modified before `before`, oldest first."""
    return [p for p, mtime in _wal_files(wal_dir) if mtime < before.timestamp()]


def _wal_files(wal_dir: Path) -> list[tuple[Path, float]]:
    files = []
    for entry in os.scandir(wal_dir):
        if not entry.is_file() or entry.name.endswith((".partial", ".tmp")):
            continue
        files.append((Path(entry.path), entry.stat().st_mtime))
    return sorted(files, key=lambda item: (item[1], item[0].name))


def write_tar_gz(destination: Path, members: list[Path]) -> None:
    with tarfile.open(destination, "w:gz") as archive:
        for member in members:
            archive.add(member, arcname=member.name)


def _delete_all(paths: list[Path]) -> list[Path]:
    deleted = []
    for path in paths:
        try:
            path.unlink()
        except FileNotFoundError:
            continue
        deleted.append(path)
    return deleted


class PgDumpDumper:
    """
    Dumper backed by the PostgreSQL client tools.

    Example:
        >>> dumper = PgDumpDumper(
        ...     "postgresql+asyncpg://backup@db/metrics",
        ...     wal_dir="/mnt/hdd/wal-archive",
        ... )
        >>> await dumper.dump_full(Path("/var/backups/full/metrics_full_20250101.dump"))
        >>> await dumper.inspect_dump(Path("/var/backups/full/metrics_full_20250101.dump"))
        214
    """

    def __init__(
        self,
        database_url: str,
        *,
        pg_dump_path: str = "pg_dump",
        pg_restore_path: str = "pg_restore",
        wal_dir: str | Path | None = None,
        timeout: timedelta | None = timedelta(hours=2),
    ) -> None:
        url = make_url(database_url)
        self._host = url.host
        self._port = url.port
        self._username = url.username
        self._password = url.password
        self._database = url.database or "postgres"
        self._pg_dump_path = pg_dump_path
        self._pg_restore_path = pg_restore_path
        self._wal_dir = Path(wal_dir) if wal_dir else None
        self._timeout = timeout

    @property
    def source(self) -> str:
        return self._database

    def _command(self, destination: Path) -> list[str]:
        cmd = [self._pg_dump_path, "--format=custom", "--no-password", "--file", str(destination)]
        if self._host:
            cmd += ["--host", self._host]
        if self._port:
            cmd += ["--port", str(self._port)]
        if self._username:
            cmd += ["--username", self._username]
        cmd += ["--dbname", self._database]
        return cmd

    async def _exec(self, cmd: list[str], env: dict[str, str] | None = None) -> tuple[bytes, str]:
        """
        Run a client tool under the configured timeout.

        Returns:
            (stdout, stderr) of a successful run

        Raises:
            DumpError: If the tool cannot start, times out or exits non-zero
        """
        tool = Path(cmd[0]).name
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise DumpError(f"cannot start {cmd[0]}: {e}") from e

        timeout = self._timeout.total_seconds() if self._timeout else None
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except TimeoutError as e:
            process.kill()
            await process.wait()
            raise DumpError(f"{tool} timed out after {timeout:.0f}s") from e

        message = stderr.decode("utf-8", errors="replace").strip() if stderr else ""
        if process.returncode != 0:
            raise DumpError(f"{tool} exited with status {process.returncode}: {message or 'no output'}")
        return stdout, message

    async def dump_full(self, destination: Path) -> None:
        env = os.environ.copy()
        if self._password:
            env["PGPASSWORD"] = self._password

        logger.info("Running %s for database %s", self._pg_dump_path, self._database)
        await self._exec(self._command(destination), env=env)

    async def inspect_dump(self, path: Path) -> int:
        stdout, _ = await self._exec([self._pg_restore_path, "--list", str(path)])
        entries = [
            line for line in stdout.decode("utf-8", errors="replace").splitlines()
            if line.strip() and not line.startswith(";")
        ]
        return len(entries)

    async def archive_wal(self, destination: Path, since: datetime) -> int:
        if self._wal_dir is None:
            raise DumpError("no WAL archive directory configured")
        if not self._wal_dir.is_dir():
            raise DumpError(f"WAL archive directory {self._wal_dir} does not exist")

        try:
            segments = await asyncio.to_thread(wal_segments, self._wal_dir, since)
            await asyncio.to_thread(write_tar_gz, destination, segments)
        except (OSError, tarfile.TarError) as e:
            raise DumpError(f"cannot archive WAL segments: {e}") from e

        logger.info("Archived %d WAL segment(s) newer than %s", len(segments), since.isoformat())
        return len(segments)

    async def prune_wal(self, before: datetime) -> list[Path]:
        if self._wal_dir is None or not self._wal_dir.is_dir():
            return []
        segments = await asyncio.to_thread(wal_segments_before, self._wal_dir, before)
        deleted = await asyncio.to_thread(_delete_all, segments)
        if deleted:
            logger.info("Pruned %d WAL segment(s) older than %s", len(deleted), before.isoformat())
        return deleted


__all__ = [
    "Dumper",
    "PgDumpDumper",
    "wal_segments",
    "wal_segments_before",
    "write_tar_gz",
]
