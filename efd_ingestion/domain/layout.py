"""
Record layouts of the two EFD variants.

Only the fields the pipeline reads are listed.  Positions follow the
published layout numbering (REG is field 1), which is also the index into
``FiscalRecordLine.fields``.  ``min_length`` is the smallest
``len(fields)`` for which the record is read; shorter records are skipped.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from efd_ingestion.domain.types import ImportScope, LedgerKind

HEADER = "0000"
ESTABLISHMENT = "0140"
PARTICIPANT = "0150"
SERVICE_BRANCH, GOODS_BRANCH, FREIGHT_BRANCH = "A010", "C010", "D010"
SERVICE_DOCUMENT = "A100"
GOODS_DOCUMENT = "C100"
GOODS_ITEM = "C170"
UTILITY_DOCUMENT = "C500"
CONSOLIDATED_SALES = "C600"
FREIGHT_DOCUMENT, FREIGHT_PIS, FREIGHT_COFINS = "D100", "D101", "D105"
COMMUNICATION_DOCUMENT, COMMUNICATION_PIS, COMMUNICATION_COFINS = "D500", "D501", "D505"
TRAILER = "9999"

BRANCH_SWITCHES = frozenset({SERVICE_BRANCH, GOODS_BRANCH, FREIGHT_BRANCH})

# Registry records are read in every scope.
_REGISTRY = frozenset({HEADER, ESTABLISHMENT, PARTICIPANT, TRAILER})
_BLOCK_A = frozenset({SERVICE_BRANCH, SERVICE_DOCUMENT})
_BLOCK_C = frozenset({GOODS_BRANCH, GOODS_DOCUMENT, GOODS_ITEM, UTILITY_DOCUMENT, CONSOLIDATED_SALES})
_BLOCK_D = frozenset(
    {
        FREIGHT_BRANCH,
        FREIGHT_DOCUMENT,
        FREIGHT_PIS,
        FREIGHT_COFINS,
        COMMUNICATION_DOCUMENT,
        COMMUNICATION_PIS,
        COMMUNICATION_COFINS,
    }
)

SCOPE_RECORD_TYPES: Mapping[ImportScope, frozenset[str]] = MappingProxyType(
    {
        ImportScope.ALL: _REGISTRY | _BLOCK_A | _BLOCK_C | _BLOCK_D,
        ImportScope.ONLY_A: _REGISTRY | _BLOCK_A,
        ImportScope.ONLY_C: _REGISTRY | _BLOCK_C,
        ImportScope.ONLY_D: _REGISTRY | _BLOCK_D,
        ImportScope.USAGE_CONSUMPTION: _REGISTRY | {GOODS_BRANCH, GOODS_DOCUMENT, GOODS_ITEM},
    }
)

# Record types whose rows count against a per-block record limit.
LIMITED_RECORD_TYPES: Mapping[ImportScope, frozenset[str]] = MappingProxyType(
    {
        ImportScope.ALL: frozenset(
            {SERVICE_DOCUMENT, GOODS_DOCUMENT, UTILITY_DOCUMENT, CONSOLIDATED_SALES,
             FREIGHT_DOCUMENT, COMMUNICATION_DOCUMENT}
        ),
        ImportScope.ONLY_A: frozenset({SERVICE_DOCUMENT}),
        ImportScope.ONLY_C: frozenset({GOODS_DOCUMENT, UTILITY_DOCUMENT, CONSOLIDATED_SALES}),
        ImportScope.ONLY_D: frozenset({FREIGHT_DOCUMENT, COMMUNICATION_DOCUMENT}),
        ImportScope.USAGE_CONSUMPTION: frozenset({GOODS_ITEM}),
    }
)

# C500 COD_MOD -> utility service type
UTILITY_SERVICE_TYPES: Mapping[str, str] = MappingProxyType(
    {
        "06": "energy",
        "21": "communication",
        "22": "communication",
        "28": "gas",
        "29": "water",
    }
)
UTILITY_SERVICE_DEFAULT = "other"

FINAL_CONSUMER_CODE = "9999999999"
UNIDENTIFIED_SUPPLIER_CODE = "8888888888"


@dataclass(frozen=True)
class RecordLayout:
    record_type: str
    min_length: int
    positions: Mapping[str, int] = field(default_factory=dict)

    def __getitem__(self, name: str) -> int:
        return self.positions[name]


def _layout(record_type: str, min_length: int, **positions: int) -> RecordLayout:
    return RecordLayout(record_type, min_length, MappingProxyType(positions))


_COMMON_LAYOUTS = (
    _layout(ESTABLISHMENT, 5, code=2, name=3, cnpj=4),
    _layout(PARTICIPANT, 4, code=2, name=3, cnpj=5, cpf=6, state_registration=7, municipality=8),
    _layout(SERVICE_BRANCH, 3, cnpj=2),
    _layout(GOODS_BRANCH, 3, cnpj=2),
    _layout(FREIGHT_BRANCH, 3, cnpj=2),
    _layout(SERVICE_DOCUMENT, 13, direction=2, document_number=8, amount=12, pis=16, cofins=18, iss=21),
    _layout(
        GOODS_ITEM, 12,
        item_number=2, item_code=3, description=4, quantity=5, unit=6, amount=7,
        cst_icms=10, fiscal_code=11, icms_base=13, icms_rate=14, icms=15, ipi=24, pis=30, cofins=36,
    ),
    _layout(TRAILER, 3, line_count=2),
)

_ICMS_IPI_LAYOUTS = (
    _layout(HEADER, 10, start=4, end=5, name=6, cnpj=7),
    _layout(
        GOODS_DOCUMENT, 28,
        direction=2, participant=4, document_number=8, amount=12, icms=22, ipi=25, pis=26, cofins=27,
    ),
    _layout(UTILITY_DOCUMENT, 11, direction=2, supplier=4, model=5, amount=10, icms=13, pis=16, cofins=18),
    _layout(CONSOLIDATED_SALES, 17, amount=7, icms=12, pis=15, cofins=16),
    _layout(FREIGHT_DOCUMENT, 27, direction=2, carrier=5, amount=14, icms=23, pis=24, cofins=26),
    _layout(COMMUNICATION_DOCUMENT, 20, direction=2, supplier=4, amount=11, icms=14, pis=17, cofins=19),
)

_CONTRIBUTIONS_LAYOUTS = (
    _layout(HEADER, 10, start=6, end=7, name=8, cnpj=9),
    _layout(
        GOODS_DOCUMENT, 13,
        direction=2, participant=4, document_number=8, amount=12, icms=22, ipi=25, pis=26, cofins=27,
    ),
    _layout(UTILITY_DOCUMENT, 11, supplier=2, model=3, amount=10, icms=11, pis=13, cofins=14),
    _layout(CONSOLIDATED_SALES, 23, amount=10, icms=18, pis=21, cofins=22),
    _layout(FREIGHT_DOCUMENT, 21, direction=2, access_key=10, amount=15, icms=20),
    _layout(FREIGHT_PIS, 9, pis=8),
    _layout(FREIGHT_COFINS, 9, cofins=8),
    _layout(COMMUNICATION_DOCUMENT, 20, direction=2, supplier=4, amount=12, icms=19),
    _layout(COMMUNICATION_PIS, 8, pis=7),
    _layout(COMMUNICATION_COFINS, 8, cofins=7),
)

LAYOUTS: Mapping[LedgerKind, Mapping[str, RecordLayout]] = MappingProxyType(
    {
        LedgerKind.ICMS_IPI: MappingProxyType(
            {l.record_type: l for l in _COMMON_LAYOUTS + _ICMS_IPI_LAYOUTS}
        ),
        LedgerKind.CONTRIBUTIONS: MappingProxyType(
            {l.record_type: l for l in _COMMON_LAYOUTS + _CONTRIBUTIONS_LAYOUTS}
        ),
    }
)


def layout_for(kind: LedgerKind, record_type: str) -> RecordLayout | None:
    return LAYOUTS[kind].get(record_type)
