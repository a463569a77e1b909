"""
Run-locks that keep a job from overlapping with itself.

A RunLock combines two guards:
- An in-process asyncio.Lock, so two triggers inside one scheduler never
  run concurrently
- An exclusive ``flock`` on a lock file, so a manual CLI run and the
  long-running scheduler never run the same job at the same time

The kernel drops the flock when its holder exits, crashed or not, so a
lock file left behind by a dead process never blocks the next run. The
file also records the holder's PID, for messages only.

Usage:
    >>> lock = RunLock("tiering", "/tmp/tiervault")
    >>> async with lock.acquire():
    ...     await run_tiering()
"""

from __future__ import annotations

import asyncio
import fcntl
import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from tiervault.exceptions import AlreadyRunningError
from tiervault.observability import ATTR_LOCK_KEY, Tracer, create_tracer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockInfo:
    """
    Information about an acquired run-lock.

    Attributes:
        name: Lock name (one per job)
        path: Lock file location
        pid: Process that holds the lock
        acquired_at: When the lock was acquired
    """

    name: str
    path: Path
    pid: int
    acquired_at: datetime


def _read_pid(fd: int) -> int | None:
    os.lseek(fd, 0, os.SEEK_SET)
    content = os.read(fd, 64).decode("utf-8", errors="replace").strip()
    try:
        return int(content)
    except ValueError:
        return None


class RunLock:
    """
    Named run-lock backed by an flock'd lock file.

    Example:
        >>> lock = RunLock("backup", lock_dir)
        >>> info = await lock.try_acquire()
        >>> if info is None:
        ...     print("backup already running")
        ... else:
        ...     try:
        ...         await run_backup()
        ...     finally:
        ...         await lock.release()
    """

    def __init__(
        self,
        name: str,
        lock_dir: str | Path,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        if not name:
            raise ValueError("lock name must not be empty")
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._name = name
        self._path = Path(lock_dir) / f"{name}.lock"
        self._mutex = asyncio.Lock()
        self._fd: int | None = None
        self._info: LockInfo | None = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def path(self) -> Path:
        return self._path

    @property
    def held(self) -> bool:
        """True if this instance currently holds the lock."""
        return self._info is not None

    def holder_pid(self) -> int | None:
        """PID recorded in the lock file, or None if absent, empty or unreadable."""
        try:
            content = self._path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("Cannot read lock file %s: %s", self._path, e)
            return None
        try:
            return int(content)
        except ValueError:
            return None

    def _take_lock_file(self) -> int | None:
        """Open and flock the lock file. Returns the locked fd, or None if held elsewhere."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        # No O_TRUNC: the holder's PID stays readable until we own the lock
        fd = os.open(self._path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            return None
        except OSError:
            os.close(fd)
            raise

        try:
            previous = _read_pid(fd)
            if previous is not None and previous != os.getpid():
                logger.info(
                    "Run-lock %s was left by pid %s, which no longer holds it",
                    self._name,
                    previous,
                )
            os.ftruncate(fd, 0)
            os.lseek(fd, 0, os.SEEK_SET)
            os.write(fd, f"{os.getpid()}\n".encode())
        except OSError:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)
            raise
        return fd

    async def try_acquire(self) -> LockInfo | None:
        """
        Try to acquire the lock without waiting.

        Returns:
            LockInfo if acquired, None if another run holds the lock
        """
        with self._tracer.span("tiervault.lock.try_acquire", {ATTR_LOCK_KEY: self._name}):
            if self._mutex.locked():
                return None
            await self._mutex.acquire()

            try:
                fd = self._take_lock_file()
            except OSError:
                self._mutex.release()
                raise

            if fd is None:
                self._mutex.release()
                logger.debug("Run-lock %s held by pid %s", self._name, self.holder_pid())
                return None

            self._fd = fd
            self._info = LockInfo(
                name=self._name,
                path=self._path,
                pid=os.getpid(),
                acquired_at=datetime.now(UTC),
            )
            logger.debug("Acquired run-lock %s (%s)", self._name, self._path)
            return self._info

    async def release(self) -> None:
        """
        Release the lock. Releasing a lock that is not held does nothing.

        The lock file is emptied, not removed, so every process always
        locks the same inode.
        """
        if self._info is None:
            return
        fd = self._fd
        try:
            if fd is not None:
                os.ftruncate(fd, 0)
        except OSError as e:
            logger.warning("Error clearing lock file %s: %s", self._path, e)
        finally:
            if fd is not None:
                fcntl.flock(fd, fcntl.LOCK_UN)
                os.close(fd)
            self._fd = None
            self._info = None
            self._mutex.release()
            logger.debug("Released run-lock %s", self._name)

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[LockInfo]:
        """
        Hold the lock for the duration of the block.

        Raises:
            AlreadyRunningError: If another run holds the lock
        """
        info = await self.try_acquire()
        if info is None:
            raise AlreadyRunningError(self._name, self.holder_pid())
        try:
            yield info
        finally:
            await self.release()

    def __repr__(self) -> str:
        return f"RunLock(name={self._name!r}, path={str(self._path)!r}, held={self.held})"


__all__ = [
    "LockInfo",
    "RunLock",
]
