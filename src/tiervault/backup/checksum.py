"""
SHA-256 checksums and ``.sha256`` sidecar files.

Sidecars use the ``sha256sum`` format (``<hex digest>  <file name>``) so an
operator can check an artifact by hand with ``sha256sum -c``.
"""

from __future__ import annotations

import asyncio
import hashlib
from pathlib import Path

CHUNK_SIZE = 1024 * 1024
SIDECAR_SUFFIX = ".sha256"


def sha256_file(path: str | Path) -> str:
    """Hex SHA-256 digest of a file, read in 1 MiB blocks."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(block)
    return digest.hexdigest()


async def compute_checksum(path: str | Path) -> str:
    """Hash a file without blocking the event loop."""
    return await asyncio.to_thread(sha256_file, path)


def sidecar_path(path: str | Path) -> Path:
    path = Path(path)
    return path.with_name(path.name + SIDECAR_SUFFIX)


def write_sidecar(path: str | Path, checksum: str) -> Path:
    """Write ``<path>.sha256`` next to the artifact."""
    path = Path(path)
    sidecar = sidecar_path(path)
    sidecar.write_text(f"{checksum}  {path.name}\n", encoding="utf-8")
    return sidecar


def read_sidecar(path: str | Path) -> str | None:
    """Digest recorded in the artifact's sidecar, or None if there is none."""
    sidecar = sidecar_path(path)
    try:
        content = sidecar.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    if not content:
        return None
    return content.split()[0].lower()


__all__ = [
    "SIDECAR_SUFFIX",
    "compute_checksum",
    "read_sidecar",
    "sha256_file",
    "sidecar_path",
    "write_sidecar",
]
