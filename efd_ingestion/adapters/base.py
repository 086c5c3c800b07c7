"""
Collaborator protocols of the pipeline.

Contract:
    BlobStore gives ranged, forward-only access to an immutable uploaded
    file.  ``iter_blocks`` streams from an offset and never loads the whole
    file.  All read failures surface as ``BlobReadError``.

    ViewRefresher asks the downstream aggregation layer to rebuild; the
    pipeline only logs its failures.
"""

from __future__ import annotations

from typing import Iterator, Protocol, runtime_checkable
from uuid import UUID


@runtime_checkable
class BlobStore(Protocol):
    """Read access to uploaded ledger files."""

    def size(self, path: str) -> int:
        """Total size in bytes."""
        ...

    def read_range(self, path: str, offset: int, length: int) -> bytes:
        """Up to ``length`` bytes starting at ``offset`` (short at end of file)."""
        ...

    def iter_blocks(self, path: str, offset: int, block_size: int) -> Iterator[bytes]:
        """Stream the file from ``offset`` in blocks of at most ``block_size`` bytes."""
        ...


@runtime_checkable
class ViewRefresher(Protocol):
    """Downstream aggregate refresh ("refresh now")."""

    def refresh(self, job_id: UUID) -> None:
        ...
