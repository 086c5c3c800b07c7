"""
Record interpreter: tokenized lines -> classified rows.

Contract:
    ``RecordInterpreter.interpret`` consumes lines strictly in file order and
    returns the rows each line completes.  All cross-line context lives in
    ``ParseState``, which round-trips through JSON so a continuation resumes
    with exactly the context the previous invocation checkpointed.

Cross-line context:
    - ledger kind and period (from 0000, normally seeded by header extraction)
    - current branch (switched by A010/C010/D010) and the known branch map
    - the current goods document (C100) that C170 items belong to
    - freight documents (D100/D500 in EFD Contribuições) still collecting
      their PIS/COFINS child records
    - rows accepted per record type, for the per-block record limit
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Protocol
from uuid import UUID

from efd_config.schema import TrailerPolicy
from efd_ingestion.domain import layout as L
from efd_ingestion.domain.classification import ClassificationRuleTable
from efd_ingestion.domain.types import (
    ClassifiedRow,
    FiscalRecordLine,
    ImportScope,
    LedgerKind,
    RowCategory,
)
from efd_ingestion.domain.values import ZERO, is_ledger_date, parse_amount, parse_ledger_date
from efd_kernel.domain.taxpayer import digits_only, normalize_cnpj
from efd_kernel.exceptions import MalformedRecordError, TrailerMismatchError
from efd_kernel.logging_config import get_logger

logger = get_logger("ingestion.interpreter")

INBOUND, OUTBOUND = "inbound", "outbound"
CREDIT, DEBIT = "credit", "debit"

_PENDING_CHILDREN = {
    L.FREIGHT_DOCUMENT: frozenset({L.FREIGHT_PIS, L.FREIGHT_COFINS}),
    L.COMMUNICATION_DOCUMENT: frozenset({L.COMMUNICATION_PIS, L.COMMUNICATION_COFINS}),
}


class BranchResolver(Protocol):
    def __call__(
        self, taxpayer_id: str, name: str | None, establishment_code: str | None
    ) -> UUID:
        ...


def detect_ledger_kind(line: FiscalRecordLine) -> LedgerKind:
    """EFD ICMS/IPI carries DT_INI in field 4; Contribuições has it in field 6."""
    if is_ledger_date(line.field(4)):
        return LedgerKind.ICMS_IPI
    return LedgerKind.CONTRIBUTIONS


@dataclass
class ParseState:
    """Serializable cross-line context of one job."""

    ledger_kind: LedgerKind | None = None
    period: date | None = None
    branch_id: UUID | None = None
    taxpayer_id: str | None = None
    branches: dict[str, str] = field(default_factory=dict)
    establishments: dict[str, str] = field(default_factory=dict)
    current_document: dict[str, Any] | None = None
    pending_freight: dict[str, dict[str, Any]] = field(default_factory=dict)
    block_counts: dict[str, int] = field(default_factory=dict)
    declared_lines: int | None = None
    limit_reached: bool = False

    def to_json(self) -> dict[str, Any]:
        return {
            "ledger_kind": self.ledger_kind.value if self.ledger_kind else None,
            "period": self.period.isoformat() if self.period else None,
            "branch_id": str(self.branch_id) if self.branch_id else None,
            "taxpayer_id": self.taxpayer_id,
            "branches": dict(self.branches),
            "establishments": dict(self.establishments),
            "current_document": dict(self.current_document) if self.current_document else None,
            "pending_freight": {k: dict(v) for k, v in self.pending_freight.items()},
            "block_counts": dict(self.block_counts),
            "declared_lines": self.declared_lines,
            "limit_reached": self.limit_reached,
        }

    @classmethod
    def from_json(cls, data: dict[str, Any] | None) -> ParseState:
        if not data:
            return cls()
        return cls(
            ledger_kind=LedgerKind(data["ledger_kind"]) if data.get("ledger_kind") else None,
            period=date.fromisoformat(data["period"]) if data.get("period") else None,
            branch_id=UUID(data["branch_id"]) if data.get("branch_id") else None,
            taxpayer_id=data.get("taxpayer_id"),
            branches=dict(data.get("branches") or {}),
            establishments=dict(data.get("establishments") or {}),
            current_document=data.get("current_document"),
            pending_freight={k: dict(v) for k, v in (data.get("pending_freight") or {}).items()},
            block_counts={k: int(v) for k, v in (data.get("block_counts") or {}).items()},
            declared_lines=data.get("declared_lines"),
            limit_reached=bool(data.get("limit_reached", False)),
        )


class RecordInterpreter:
    """Translates in-scope records into rows for the Batch Persister."""

    def __init__(
        self,
        state: ParseState,
        rules: ClassificationRuleTable,
        resolve_branch: BranchResolver,
        scope: ImportScope = ImportScope.ALL,
        record_limit: int | None = None,
        trailer_policy: TrailerPolicy = TrailerPolicy.WARN,
    ):
        self.state = state
        self._rules = rules
        self._resolve_branch = resolve_branch
        self._scope = scope
        self._record_types = L.SCOPE_RECORD_TYPES[scope]
        self._limited_types = L.LIMITED_RECORD_TYPES[scope]
        self._record_limit = record_limit
        self._trailer_policy = trailer_policy
        self.skipped_records = 0
        self._handlers = {
            L.HEADER: self._header,
            L.ESTABLISHMENT: self._establishment,
            L.PARTICIPANT: self._participant,
            L.SERVICE_BRANCH: self._branch_switch,
            L.GOODS_BRANCH: self._branch_switch,
            L.FREIGHT_BRANCH: self._branch_switch,
            L.SERVICE_DOCUMENT: self._service_document,
            L.GOODS_DOCUMENT: self._goods_document,
            L.GOODS_ITEM: self._goods_item,
            L.UTILITY_DOCUMENT: self._utility_document,
            L.CONSOLIDATED_SALES: self._consolidated_sales,
            L.FREIGHT_DOCUMENT: self._freight_document,
            L.COMMUNICATION_DOCUMENT: self._freight_document,
            L.FREIGHT_PIS: self._freight_child,
            L.FREIGHT_COFINS: self._freight_child,
            L.COMMUNICATION_PIS: self._freight_child,
            L.COMMUNICATION_COFINS: self._freight_child,
            L.TRAILER: self._trailer,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def in_scope(self, record_type: str) -> bool:
        return record_type in self._record_types

    def interpret(self, line: FiscalRecordLine) -> list[ClassifiedRow]:
        """Rows completed by ``line`` (possibly a pending document it closes)."""
        if not self.in_scope(line.record_type):
            return []

        rows = self._close_pending(line.record_type)
        if line.record_type != L.GOODS_ITEM:
            self.state.current_document = None

        handler = self._handlers[line.record_type]
        layout = self._layout(line.record_type)
        if layout is not None and len(line.fields) < layout.min_length:
            self.skipped_records += 1
            logger.debug(
                "short_record_skipped",
                extra={"record_type": line.record_type, "line": line.ordinal},
            )
            return rows

        rows.extend(handler(line, layout))
        return rows

    def finish(self) -> list[ClassifiedRow]:
        """Rows still pending at end of input."""
        rows = [self._pending_row(rt) for rt in sorted(self.state.pending_freight)]
        self.state.pending_freight.clear()
        self.state.current_document = None
        return rows

    # ------------------------------------------------------------------
    # Registry records
    # ------------------------------------------------------------------

    def _header(self, line: FiscalRecordLine, _layout) -> list[ClassifiedRow]:
        if self.state.ledger_kind is None:
            self.state.ledger_kind = detect_ledger_kind(line)
        layout = self._layout(L.HEADER)
        if self.state.period is None and layout is not None:
            try:
                self.state.period = parse_ledger_date(line.field(layout["start"])).replace(day=1)
            except ValueError as exc:
                raise MalformedRecordError(line.ordinal, str(exc), line.record_type) from exc
        return []

    def _establishment(self, line: FiscalRecordLine, layout) -> list[ClassifiedRow]:
        code = line.field(layout["code"])
        raw_cnpj = line.field(layout["cnpj"])
        if not code or not raw_cnpj:
            self.skipped_records += 1
            return []
        cnpj = self._cnpj(raw_cnpj)
        branch_id = self._resolve_branch(cnpj, line.field(layout["name"]) or None, code)
        self.state.branches[cnpj] = str(branch_id)
        self.state.establishments[cnpj] = code
        # 0150 participants that follow belong to this establishment.
        self.state.branch_id = UUID(str(branch_id))
        self.state.taxpayer_id = cnpj
        return []

    def _branch_switch(self, line: FiscalRecordLine, layout) -> list[ClassifiedRow]:
        raw_cnpj = line.field(layout["cnpj"])
        if not raw_cnpj:
            return []
        cnpj = self._cnpj(raw_cnpj)
        known = self.state.branches.get(cnpj)
        if known is None:
            branch_id = self._resolve_branch(cnpj, None, self.state.establishments.get(cnpj))
            known = str(branch_id)
            self.state.branches[cnpj] = known
        self.state.branch_id = UUID(known)
        self.state.taxpayer_id = cnpj
        return []

    def _participant(self, line: FiscalRecordLine, layout) -> list[ClassifiedRow]:
        code = line.field(layout["code"])
        name = line.field(layout["name"])[:100]
        if not code or not name or self.state.branch_id is None:
            self.skipped_records += 1
            return []
        return [
            ClassifiedRow(
                category=RowCategory.PARTICIPANTS,
                source_line=line.ordinal,
                values={
                    "branch_id": self.state.branch_id,
                    "participant_code": code,
                    "name": name,
                    "cnpj": digits_only(line.field(layout["cnpj"]))[:14] or None,
                    "cpf": digits_only(line.field(layout["cpf"]))[:11] or None,
                    "state_registration": line.field(layout["state_registration"])[:20] or None,
                    "municipality_code": line.field(layout["municipality"])[:7] or None,
                },
            )
        ]

    def _trailer(self, line: FiscalRecordLine, layout) -> list[ClassifiedRow]:
        text = line.field(layout["line_count"])
        if not text.isdigit():
            raise MalformedRecordError(line.ordinal, f"QTD_LIN is not a number: {text!r}", line.record_type)
        declared = int(text)
        self.state.declared_lines = declared
        if declared != line.ordinal:
            if self._trailer_policy is TrailerPolicy.FAIL:
                raise TrailerMismatchError(declared, line.ordinal)
            logger.warning(
                "trailer_line_count_mismatch",
                extra={"declared_lines": declared, "counted_lines": line.ordinal},
            )
        return []

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def _service_document(self, line: FiscalRecordLine, layout) -> list[ClassifiedRow]:
        amount = self._amount(line, layout, "amount")
        if amount <= ZERO or not self._accept(line.record_type):
            return []
        return [
            self._row(
                RowCategory.SERVICES,
                line,
                direction=self._direction(line, layout),
                document_number=line.field(layout["document_number"]) or None,
                amount=amount,
                pis=self._amount(line, layout, "pis"),
                cofins=self._amount(line, layout, "cofins"),
                iss=self._amount(line, layout, "iss"),
            )
        ]

    def _goods_document(self, line: FiscalRecordLine, layout) -> list[ClassifiedRow]:
        direction = self._direction(line, layout)
        participant = line.field(layout["participant"])
        if not participant or participant == "0":
            participant = L.FINAL_CONSUMER_CODE if direction == OUTBOUND else L.UNIDENTIFIED_SUPPLIER_CODE
        document_number = line.field(layout["document_number"]) or None
        self.state.current_document = {
            "direction": direction,
            "participant_code": participant,
            "document_number": document_number,
        }

        if self._scope is ImportScope.USAGE_CONSUMPTION:
            return []
        amount = self._amount(line, layout, "amount")
        if amount <= ZERO or not self._accept(line.record_type):
            return []
        return [
            self._row(
                RowCategory.GOODS,
                line,
                source_record=line.record_type,
                direction=direction,
                participant_code=participant,
                document_number=document_number,
                amount=amount,
                pis=self._amount(line, layout, "pis"),
                cofins=self._amount(line, layout, "cofins"),
                icms=self._amount(line, layout, "icms"),
                ipi=self._amount(line, layout, "ipi"),
            )
        ]

    def _goods_item(self, line: FiscalRecordLine, layout) -> list[ClassifiedRow]:
        document = self.state.current_document
        if document is None:
            self.skipped_records += 1
            return []
        fiscal_code = line.field(layout["fiscal_code"])
        decision = self._rules.classify(line.record_type, fiscal_code)
        if decision.ignored or not self._accept(line.record_type):
            return []
        return [
            self._row(
                decision.category,
                line,
                category=decision.category.value,
                direction=document["direction"],
                participant_code=document["participant_code"],
                document_number=document["document_number"],
                item_number=line.field(layout["item_number"]) or None,
                item_code=line.field(layout["item_code"]) or None,
                description=line.field(layout["description"])[:255] or None,
                fiscal_code=fiscal_code,
                amount=self._amount(line, layout, "amount"),
                icms=self._amount(line, layout, "icms"),
                ipi=self._amount(line, layout, "ipi"),
                pis=self._amount(line, layout, "pis"),
                cofins=self._amount(line, layout, "cofins"),
            )
        ]

    def _utility_document(self, line: FiscalRecordLine, layout) -> list[ClassifiedRow]:
        amount = self._amount(line, layout, "amount")
        if amount <= ZERO or not self._accept(line.record_type):
            return []
        if "direction" in layout.positions:
            operation = CREDIT if line.field(layout["direction"]) == "0" else DEBIT
        else:
            operation = CREDIT
        model = line.field(layout["model"])
        return [
            self._row(
                RowCategory.ENERGY_WATER,
                line,
                operation_type=operation,
                service_type=L.UTILITY_SERVICE_TYPES.get(model, L.UTILITY_SERVICE_DEFAULT),
                supplier_taxpayer_id=digits_only(line.field(layout["supplier"]))[:14] or None,
                amount=amount,
                pis=self._amount(line, layout, "pis"),
                cofins=self._amount(line, layout, "cofins"),
                icms=self._amount(line, layout, "icms"),
            )
        ]

    def _consolidated_sales(self, line: FiscalRecordLine, layout) -> list[ClassifiedRow]:
        amount = self._amount(line, layout, "amount")
        if amount <= ZERO or not self._accept(line.record_type):
            return []
        return [
            self._row(
                RowCategory.GOODS,
                line,
                source_record=line.record_type,
                direction=OUTBOUND,
                participant_code=None,
                document_number=None,
                amount=amount,
                pis=self._amount(line, layout, "pis"),
                cofins=self._amount(line, layout, "cofins"),
                icms=self._amount(line, layout, "icms"),
                ipi=ZERO,
            )
        ]

    # ------------------------------------------------------------------
    # Freight
    # ------------------------------------------------------------------

    def _freight_document(self, line: FiscalRecordLine, layout) -> list[ClassifiedRow]:
        amount = self._amount(line, layout, "amount")
        if amount <= ZERO or self._missing_context() or not self._accept(line.record_type):
            return []
        if "access_key" in layout.positions:
            key = line.field(layout["access_key"])
            carrier = key[6:20] if len(key) >= 20 else None
        else:
            field_name = "carrier" if "carrier" in layout.positions else "supplier"
            carrier = digits_only(line.field(layout[field_name]))[:14] or None

        values = {
            "source_record": line.record_type,
            "direction": self._direction(line, layout),
            "carrier_taxpayer_id": carrier,
            "amount": amount,
            "icms": self._amount(line, layout, "icms"),
        }
        if "pis" in layout.positions:
            values["pis"] = self._amount(line, layout, "pis")
            values["cofins"] = self._amount(line, layout, "cofins")
            return [self._row(RowCategory.FREIGHT, line, **values)]

        # Contribuições: PIS/COFINS arrive on the child records.
        self.state.pending_freight[line.record_type] = {
            **{k: str(v) if isinstance(v, Decimal) else v for k, v in values.items()},
            "branch_id": str(self.state.branch_id),
            "period": self.state.period.isoformat(),
            "source_line": line.ordinal,
            "pis": "0",
            "cofins": "0",
        }
        return []

    def _freight_child(self, line: FiscalRecordLine, layout) -> list[ClassifiedRow]:
        parent = (
            L.FREIGHT_DOCUMENT
            if line.record_type in _PENDING_CHILDREN[L.FREIGHT_DOCUMENT]
            else L.COMMUNICATION_DOCUMENT
        )
        pending = self.state.pending_freight.get(parent)
        if pending is None:
            return []
        tax = "pis" if "pis" in layout.positions else "cofins"
        pending[tax] = str(Decimal(pending[tax]) + self._amount(line, layout, tax))
        return []

    def _close_pending(self, record_type: str) -> list[ClassifiedRow]:
        rows = []
        for parent in sorted(self.state.pending_freight):
            if record_type not in _PENDING_CHILDREN[parent]:
                rows.append(self._pending_row(parent))
        for row in rows:
            self.state.pending_freight.pop(row.values["source_record"], None)
        return rows

    def _pending_row(self, parent: str) -> ClassifiedRow:
        pending = self.state.pending_freight[parent]
        return ClassifiedRow(
            category=RowCategory.FREIGHT,
            source_line=pending["source_line"],
            values={
                "branch_id": UUID(pending["branch_id"]),
                "period": date.fromisoformat(pending["period"]),
                "source_record": pending["source_record"],
                "direction": pending["direction"],
                "carrier_taxpayer_id": pending["carrier_taxpayer_id"],
                "amount": Decimal(pending["amount"]),
                "icms": Decimal(pending["icms"]),
                "pis": Decimal(pending["pis"]),
                "cofins": Decimal(pending["cofins"]),
            },
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _layout(self, record_type: str) -> L.RecordLayout | None:
        kind = self.state.ledger_kind or LedgerKind.ICMS_IPI
        return L.layout_for(kind, record_type)

    def _missing_context(self) -> bool:
        return self.state.branch_id is None or self.state.period is None

    def _accept(self, record_type: str) -> bool:
        """Count a row against the record limit; False once the limit is hit."""
        if self._missing_context():
            self.skipped_records += 1
            return False
        count = self.state.block_counts.get(record_type, 0)
        if self._record_limit is not None and count >= self._record_limit:
            return False
        self.state.block_counts[record_type] = count + 1
        if self._record_limit is not None and all(
            self.state.block_counts.get(rt, 0) >= self._record_limit for rt in self._limited_types
        ):
            self.state.limit_reached = True
        return True

    def _row(self, row_category: RowCategory, line: FiscalRecordLine, **values: Any) -> ClassifiedRow:
        values["branch_id"] = self.state.branch_id
        values["period"] = self.state.period
        return ClassifiedRow(category=row_category, source_line=line.ordinal, values=values)

    @staticmethod
    def _direction(line: FiscalRecordLine, layout) -> str:
        return INBOUND if line.field(layout["direction"]) == "0" else OUTBOUND

    @staticmethod
    def _amount(line: FiscalRecordLine, layout, name: str) -> Decimal:
        try:
            return parse_amount(line.field(layout[name]))
        except ValueError as exc:
            raise MalformedRecordError(line.ordinal, f"{name}: {exc}", line.record_type) from exc

    @staticmethod
    def _cnpj(raw: str) -> str:
        return normalize_cnpj(raw)
