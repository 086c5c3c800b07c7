"""
Header extraction from a bounded prefix of the uploaded file.

Contract:
    Reads at most ``probe_bytes`` bytes, finds the first 0000 record, and
    returns the ledger kind, taxpayer id, registrant name and period.  The
    remainder of the file is never touched here.

Failure modes:
    - HeaderNotFoundError: no 0000 line in the prefix.
    - InvalidTaxpayerIdError: the CNPJ field is not 14 usable digits.
    - MalformedRecordError: DT_INI/DT_FIN are not DDMMYYYY dates.
    - SourceUnavailableError: the file is missing or access is denied.
    - BlobReadError: the ranged read failed (transient).
"""

from __future__ import annotations

from efd_ingestion.adapters.base import BlobStore
from efd_ingestion.domain import layout as L
from efd_ingestion.domain.types import FiscalRecordLine, LedgerHeader
from efd_ingestion.domain.values import parse_ledger_date
from efd_ingestion.parsing.chunked_reader import RawLine
from efd_ingestion.parsing.record_interpreter import detect_ledger_kind
from efd_ingestion.parsing.tokenizer import tokenize
from efd_kernel.domain.taxpayer import normalize_cnpj
from efd_kernel.exceptions import HeaderNotFoundError, MalformedRecordError
from efd_kernel.logging_config import get_logger

logger = get_logger("ingestion.header")

_HEADER_PREFIX = f"|{L.HEADER}|"
_UTF8_BOM = b"\xef\xbb\xbf"


class HeaderExtractor:
    """Parses the 0000 record out of a file prefix."""

    def __init__(self, blob_store: BlobStore, probe_bytes: int = 8192, encoding: str = "latin-1"):
        self._blob_store = blob_store
        self._probe_bytes = probe_bytes
        self._encoding = encoding

    def extract(self, file_path: str) -> LedgerHeader:
        prefix = self._blob_store.read_range(file_path, 0, self._probe_bytes)
        if prefix.startswith(_UTF8_BOM):
            prefix = prefix[len(_UTF8_BOM):]
        text = prefix.decode(self._encoding, errors="replace")

        offset = 0
        for ordinal, raw in enumerate(text.split("\n"), start=1):
            stripped = raw.strip()
            if stripped.startswith(_HEADER_PREFIX):
                line = tokenize(RawLine(stripped, offset, offset + len(raw) + 1, ordinal))
                header = self._parse(line)
                logger.info(
                    "header_extracted",
                    extra={
                        "ledger_kind": header.ledger_kind.value,
                        "taxpayer_id": header.taxpayer_id,
                        "period": header.period,
                    },
                )
                return header
            offset += len(raw) + 1

        raise HeaderNotFoundError(file_path, self._probe_bytes)

    @staticmethod
    def _parse(line: FiscalRecordLine) -> LedgerHeader:
        kind = detect_ledger_kind(line)
        layout = L.layout_for(kind, L.HEADER)
        if len(line.fields) < layout.min_length:
            raise MalformedRecordError(line.ordinal, "header record is too short", line.record_type)
        cnpj = normalize_cnpj(line.field(layout["cnpj"]))
        try:
            start = parse_ledger_date(line.field(layout["start"]))
            end = parse_ledger_date(line.field(layout["end"]))
        except ValueError as exc:
            raise MalformedRecordError(line.ordinal, str(exc), line.record_type) from exc
        return LedgerHeader(
            ledger_kind=kind,
            taxpayer_id=cnpj,
            registrant_name=line.field(layout["name"]),
            period_start=start,
            period_end=end,
        )
