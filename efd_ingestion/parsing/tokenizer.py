"""Turns one raw ledger line into a FiscalRecordLine."""

from __future__ import annotations

import re

from efd_ingestion.domain.types import FiscalRecordLine
from efd_ingestion.parsing.chunked_reader import RawLine
from efd_kernel.exceptions import MalformedRecordError

_RECORD_TYPE = re.compile(r"^[0-9A-Z]\d{3}$")


def tokenize(line: RawLine) -> FiscalRecordLine | None:
    """
    Split ``line`` on ``|``.

    Returns:
        None for a blank line.

    Raises:
        MalformedRecordError: the line does not start with ``|`` or its first
            field is not a record type code.
    """
    text = line.text.strip()
    if not text:
        return None
    if not text.startswith("|"):
        raise MalformedRecordError(line.ordinal, "line does not start with '|'")
    fields = tuple(text.split("|"))
    record_type = fields[1].strip().upper()
    if not _RECORD_TYPE.match(record_type):
        raise MalformedRecordError(line.ordinal, f"invalid record type {fields[1]!r}")
    return FiscalRecordLine(
        record_type=record_type,
        fields=fields,
        offset=line.offset,
        ordinal=line.ordinal,
    )
