"""
Backup storage targets.

- LocalStorageTarget: directory on a local disk, where backups are produced
- RemoteStorageTarget: network share (NAS) that verified backups are
  replicated to. Mounted over CIFS/SMB when credentials are configured,
  over NFS otherwise.

Artifacts are laid out as ``<root>/<kind>/<file>`` with the ``.sha256``
sidecar next to each file.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shutil
import tempfile
from collections.abc import Awaitable, Iterator
from datetime import timedelta
from pathlib import Path
from typing import TypeVar

from tiervault.backup.checksum import sidecar_path
from tiervault.exceptions import ReplicationError
from tiervault.types import BackupKind

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _existing_ancestor(path: Path) -> Path:
    for candidate in (path, *path.parents):
        if candidate.exists():
            return candidate
    return Path("/")


class StorageTarget:
    """Directory-backed storage shared by the local and remote targets."""

    name = "storage"

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, kind: BackupKind, filename: str) -> Path:
        return self._root / kind.value / filename

    def free_bytes(self) -> int:
        """Free space on the filesystem holding the root."""
        return shutil.disk_usage(_existing_ancestor(self._root)).free

    def exists(self, path: str | Path) -> bool:
        return Path(path).is_file()

    async def delete(self, path: str | Path) -> None:
        """Delete an artifact and its sidecar. Missing files are ignored."""
        for target in (Path(path), sidecar_path(path)):
            try:
                await asyncio.to_thread(target.unlink)
            except FileNotFoundError:
                pass
        logger.debug("Deleted %s from %s storage", path, self.name)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(root={str(self._root)!r})"


class LocalStorageTarget(StorageTarget):
    """Local backup directory."""

    name = "local"

    async def ensure_available(self) -> None:
        for kind in BackupKind:
            (self._root / kind.value).mkdir(parents=True, exist_ok=True)


class RemoteStorageTarget(StorageTarget):
    """
    Network share for replicated backups.

    Every call that touches the share is bounded: ``mount``/``umount`` by
    `mount_timeout`, copies by `copy_timeout`. A call that runs out of time
    raises ReplicationError, which the coordinator treats as degraded mode.

    CIFS credentials never appear on the ``mount`` command line. They are
    read from `credentials_file` when one is configured, otherwise written
    to a private temporary file for the duration of the mount.

    Example:
        >>> nas = RemoteStorageTarget(
        ...     "/mnt/nas-backup",
        ...     host="nas.local",
        ...     share="backups",
        ...     username="backup",
        ...     password="secret",
        ... )
        >>> await nas.ensure_available()  # mount -t cifs //nas.local/backups ...
        >>> await nas.copy_in(Path("/var/backups/full/db_full.dump"), BackupKind.FULL)
        >>> await nas.unmount()
    """

    name = "remote"

    def __init__(
        self,
        root: str | Path,
        *,
        host: str | None = None,
        share: str = "backups",
        username: str | None = None,
        password: str | None = None,
        credentials_file: str | Path | None = None,
        mount: bool = True,
        low_space_bytes: int = 10 * 1024**3,
        mount_timeout: timedelta | None = timedelta(seconds=60),
        copy_timeout: timedelta | None = timedelta(hours=1),
    ) -> None:
        super().__init__(root)
        self._host = host
        self._share = share
        self._username = username
        self._password = password
        self._credentials_file = Path(credentials_file) if credentials_file else None
        self._mount = mount
        self._low_space_bytes = low_space_bytes
        self._mount_timeout = mount_timeout
        self._copy_timeout = copy_timeout
        self._mounted_by_us = False

    @property
    def low_space_bytes(self) -> int:
        return self._low_space_bytes

    @property
    def uses_cifs(self) -> bool:
        return bool(self._username or self._credentials_file)

    def is_mounted(self) -> bool:
        return os.path.ismount(self._root)

    def _mount_command(self, credentials: Path | None = None) -> list[str]:
        if credentials is not None:
            options = f"credentials={credentials},iocharset=utf8"
            return ["mount", "-t", "cifs", f"//{self._host}/{self._share}", str(self._root), "-o", options]
        return ["mount", "-t", "nfs", f"{self._host}:/{self._share}", str(self._root)]

    @contextlib.contextmanager
    def _credentials(self) -> Iterator[Path | None]:
        """Path of a 0600 CIFS credentials file, or None for NFS."""
        if not self.uses_cifs:
            yield None
            return
        if self._credentials_file is not None:
            yield self._credentials_file
            return

        fd, name = tempfile.mkstemp(prefix="tiervault-cifs-", suffix=".cred")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(f"username={self._username}\n")
                if self._password:
                    f.write(f"password={self._password}\n")
            yield Path(name)
        finally:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(name)

    async def _bounded(self, awaitable: Awaitable[T], timeout: timedelta | None, what: str) -> T:
        seconds = timeout.total_seconds() if timeout else None
        try:
            return await asyncio.wait_for(awaitable, timeout=seconds)
        except TimeoutError as e:
            raise ReplicationError(f"{what} timed out after {seconds:.0f}s") from e

    async def _run(self, cmd: list[str]) -> tuple[int, str]:
        """
        Run a command under `mount_timeout`.

        Raises:
            ReplicationError: If the command is still running at the timeout;
                it is killed first
        """
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            return 127, str(e)
        try:
            _, stderr = await self._bounded(process.communicate(), self._mount_timeout, cmd[0])
        except ReplicationError:
            process.kill()
            await process.wait()
            raise
        return process.returncode or 0, stderr.decode("utf-8", errors="replace").strip()

    async def ensure_available(self) -> None:
        """
        Make sure the share is reachable, mounting it if needed.

        Raises:
            ReplicationError: If the share cannot be reached or mounted in time
        """
        if not self._mount:
            available = await self._bounded(
                asyncio.to_thread(self._root.is_dir), self._mount_timeout, "remote storage check"
            )
            if not available:
                raise ReplicationError(f"remote storage {self._root} is not available")
            return

        mounted = await self._bounded(
            asyncio.to_thread(self.is_mounted), self._mount_timeout, "mount point check"
        )
        if mounted:
            logger.debug("Remote storage already mounted at %s", self._root)
            return
        if not self._host:
            raise ReplicationError("remote storage host is not configured")

        self._root.mkdir(parents=True, exist_ok=True)
        protocol = "CIFS/SMB" if self.uses_cifs else "NFS"
        with self._credentials() as credentials:
            returncode, stderr = await self._run(self._mount_command(credentials))
        if returncode != 0:
            raise ReplicationError(f"failed to mount remote storage via {protocol}: {stderr}")
        self._mounted_by_us = True
        logger.info("Remote storage mounted at %s via %s", self._root, protocol)

    async def copy_in(self, source: Path, kind: BackupKind) -> Path:
        """
        Copy an artifact and its sidecar onto the share.

        The copy is checked by size; a short or timed out copy is removed.

        Returns:
            Path of the copy on the share

        Raises:
            ReplicationError: If the copy fails, is incomplete or runs out of time
        """
        destination = self.path_for(kind, source.name)
        try:
            await self._bounded(
                asyncio.to_thread(self._copy, source, destination),
                self._copy_timeout,
                f"copy of {source.name} to remote storage",
            )
        except ReplicationError:
            await self.delete(destination)
            raise
        except OSError as e:
            raise ReplicationError(f"copy of {source.name} to remote storage failed: {e}") from e

        expected = source.stat().st_size
        actual = destination.stat().st_size
        if actual != expected:
            await self.delete(destination)
            raise ReplicationError(
                f"size mismatch for {source.name} on remote storage: {actual} != {expected} bytes"
            )
        return destination

    @staticmethod
    def _copy(source: Path, destination: Path) -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, destination)
        sidecar = sidecar_path(source)
        if sidecar.is_file():
            shutil.copy2(sidecar, sidecar_path(destination))

    async def unmount(self) -> None:
        """Unmount the share if this target mounted it."""
        if not self._mounted_by_us:
            return
        try:
            returncode, stderr = await self._run(["umount", str(self._root)])
        except ReplicationError as e:
            logger.warning("Failed to unmount %s: %s", self._root, e)
            return
        if returncode != 0:
            logger.warning("Failed to unmount %s: %s", self._root, stderr)
            return
        self._mounted_by_us = False
        logger.info("Remote storage unmounted from %s", self._root)


__all__ = [
    "StorageTarget",
    "LocalStorageTarget",
    "RemoteStorageTarget",
]
