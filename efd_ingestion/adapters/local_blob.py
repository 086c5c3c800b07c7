"""Filesystem-backed BlobStore."""

from __future__ import annotations

from pathlib import Path
from typing import Iterator

from efd_kernel.exceptions import BlobReadError, SourceUnavailableError


class LocalBlobStore:
    """
    Serves files below ``root``.

    Paths are relative to ``root``; a path resolving outside it is refused.
    A missing or unreadable file raises ``SourceUnavailableError``; any other
    I/O failure is a retryable ``BlobReadError``.
    """

    def __init__(self, root: Path | str):
        self._root = Path(root).resolve()

    def _resolve(self, path: str) -> Path:
        target = (self._root / path).resolve()
        if target != self._root and self._root not in target.parents:
            raise SourceUnavailableError(path, "path escapes the blob root")
        return target

    def size(self, path: str) -> int:
        try:
            return self._resolve(path).stat().st_size
        except OSError as exc:
            raise _read_error(path, exc) from exc

    def read_range(self, path: str, offset: int, length: int) -> bytes:
        try:
            with open(self._resolve(path), "rb") as f:
                f.seek(offset)
                return f.read(length)
        except OSError as exc:
            raise _read_error(path, exc) from exc

    def iter_blocks(self, path: str, offset: int, block_size: int) -> Iterator[bytes]:
        try:
            with open(self._resolve(path), "rb") as f:
                f.seek(offset)
                while True:
                    block = f.read(block_size)
                    if not block:
                        return
                    yield block
        except OSError as exc:
            raise _read_error(path, exc) from exc


def _read_error(path: str, exc: OSError) -> Exception:
    if isinstance(exc, FileNotFoundError):
        return SourceUnavailableError(path, "file not found")
    if isinstance(exc, (PermissionError, IsADirectoryError)):
        return SourceUnavailableError(path, str(exc))
    return BlobReadError(path, str(exc))
