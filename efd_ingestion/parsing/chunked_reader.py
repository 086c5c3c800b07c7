"""
Restartable forward-only line reader over a BlobStore.

Contract:
    Reading starts at ``start_offset`` (a line boundary persisted as the
    job's resume cursor) and proceeds strictly forward.  Memory holds at most
    one block plus the trailing fragment of the previous block.

Guarantees:
    - Each yielded ``RawLine.end_offset`` is the offset of the first byte of
      the following line, so it is a valid resume cursor once the line's rows
      are committed.
    - ``ordinal`` continues from ``start_ordinal``: a resumed read numbers
      lines exactly as a single uninterrupted read would.
    - A final line without a terminating newline is still yielded.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator

from efd_ingestion.adapters.base import BlobStore

_BOM = "\ufeff"
_UTF8_BOM = b"\xef\xbb\xbf"


@dataclass(frozen=True)
class RawLine:
    text: str
    offset: int
    end_offset: int
    ordinal: int


class ChunkedLineReader:
    """Iterates ``RawLine`` objects lazily from a durable byte offset."""

    def __init__(
        self,
        blob_store: BlobStore,
        path: str,
        start_offset: int = 0,
        start_ordinal: int = 0,
        block_bytes: int = 64 * 1024,
        encoding: str = "latin-1",
    ):
        if start_offset < 0:
            raise ValueError("start_offset must be >= 0")
        if block_bytes <= 0:
            raise ValueError("block_bytes must be > 0")
        self._blob_store = blob_store
        self._path = path
        self._start_offset = start_offset
        self._start_ordinal = start_ordinal
        self._block_bytes = block_bytes
        self._encoding = encoding

    def __iter__(self) -> Iterator[RawLine]:
        fragment = b""
        fragment_offset = self._start_offset
        ordinal = self._start_ordinal

        for block in self._blob_store.iter_blocks(self._path, self._start_offset, self._block_bytes):
            buffer = fragment + block
            start = 0
            while True:
                newline = buffer.find(b"\n", start)
                if newline < 0:
                    break
                ordinal += 1
                line_offset = fragment_offset + start
                yield RawLine(
                    text=self._decode(buffer[start:newline], line_offset),
                    offset=line_offset,
                    end_offset=fragment_offset + newline + 1,
                    ordinal=ordinal,
                )
                start = newline + 1
            fragment = buffer[start:]
            fragment_offset += start

        if fragment:
            ordinal += 1
            yield RawLine(
                text=self._decode(fragment, fragment_offset),
                offset=fragment_offset,
                end_offset=fragment_offset + len(fragment),
                ordinal=ordinal,
            )

    def _decode(self, raw: bytes, offset: int) -> str:
        if offset == 0 and raw.startswith(_UTF8_BOM):
            raw = raw[len(_UTF8_BOM):]
        text = raw.decode(self._encoding, errors="replace").rstrip("\r")
        return text.lstrip(_BOM) if offset == 0 else text
