"""Pure domain layer of the import pipeline (no I/O)."""

from efd_ingestion.domain.classification import (
    ClassificationDecision,
    ClassificationRuleTable,
)
from efd_ingestion.domain.types import (
    ClassifiedRow,
    FiscalRecordLine,
    ImportJobStatus,
    ImportJobStatusView,
    ImportScope,
    IntakeRequest,
    InvocationOutcome,
    InvocationResult,
    LedgerHeader,
    LedgerKind,
    RowCategory,
)

__all__ = [
    "ClassificationDecision",
    "ClassificationRuleTable",
    "ClassifiedRow",
    "FiscalRecordLine",
    "ImportJobStatus",
    "ImportJobStatusView",
    "ImportScope",
    "IntakeRequest",
    "InvocationOutcome",
    "InvocationResult",
    "LedgerHeader",
    "LedgerKind",
    "RowCategory",
]
