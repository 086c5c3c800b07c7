"""
efd_ingestion.domain.types -- Pure frozen dataclasses and enums of the import
pipeline.  ZERO I/O.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any
from uuid import UUID

from efd_kernel.exceptions import InvalidJobTransitionError

# =============================================================================
# Job status state machine
# =============================================================================


class ImportJobStatus(str, Enum):
    """Job Record lifecycle status."""

    PENDING = "pending"  # Created, no invocation has claimed it yet
    PROCESSING = "processing"  # Parsing; may span many invocations
    REFRESHING_VIEWS = "refreshing_views"  # File exhausted, aggregates requested
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"  # Stopped by an external request

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: frozenset[ImportJobStatus] = frozenset(
    {ImportJobStatus.COMPLETED, ImportJobStatus.FAILED, ImportJobStatus.CANCELLED}
)

ALLOWED_TRANSITIONS: dict[ImportJobStatus, frozenset[ImportJobStatus]] = {
    ImportJobStatus.PENDING: frozenset(
        {ImportJobStatus.PROCESSING, ImportJobStatus.FAILED, ImportJobStatus.CANCELLED}
    ),
    ImportJobStatus.PROCESSING: frozenset(
        {
            ImportJobStatus.PROCESSING,
            ImportJobStatus.REFRESHING_VIEWS,
            ImportJobStatus.FAILED,
            ImportJobStatus.CANCELLED,
        }
    ),
    ImportJobStatus.REFRESHING_VIEWS: frozenset(
        {ImportJobStatus.COMPLETED, ImportJobStatus.FAILED, ImportJobStatus.CANCELLED}
    ),
    ImportJobStatus.COMPLETED: frozenset(),
    ImportJobStatus.FAILED: frozenset(),
    ImportJobStatus.CANCELLED: frozenset(),
}


def check_transition(job_id: UUID, current: ImportJobStatus, target: ImportJobStatus) -> None:
    """
    Raises:
        InvalidJobTransitionError: ``target`` is not reachable from ``current``.
    """
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidJobTransitionError(job_id, current.value, target.value)


# Prefixes that keep failure classes distinguishable in error_message.
VALIDATION_FAILURE_PREFIX = "Validation failed:"
TRANSIENT_FAILURE_PREFIX = "Transient failure:"
PERSISTENCE_FAILURE_PREFIX = "Persistence failed:"
SOURCE_FAILURE_PREFIX = "Source unavailable:"


# =============================================================================
# Scope, ledger kind and row categories
# =============================================================================


class ImportScope(str, Enum):
    """Subset of the ledger blocks an import covers."""

    ALL = "all"
    ONLY_A = "only_a"  # services
    ONLY_C = "only_c"  # goods and energy/water
    ONLY_D = "only_d"  # freight and communication
    USAGE_CONSUMPTION = "icms_uso_consumo"  # C170 CFOP classification only


class LedgerKind(str, Enum):
    """The two EFD layouts share record codes but not field positions."""

    ICMS_IPI = "icms_ipi"
    CONTRIBUTIONS = "contribuicoes"


class RowCategory(str, Enum):
    """Destination category of a persisted row."""

    GOODS = "goods"
    SERVICES = "services"
    ENERGY_WATER = "energy_water"
    FREIGHT = "freight"
    FIXED_ASSET = "fixed_asset"
    USAGE_CONSUMPTION = "usage_consumption"
    PARTICIPANTS = "participants"


# =============================================================================
# Parsed units
# =============================================================================


@dataclass(frozen=True)
class FiscalRecordLine:
    """
    One tokenized ledger line.

    ``fields[n]`` is field ``n`` of the layout tables (REG is field 1); index
    0 holds the empty text before the leading pipe.
    """

    record_type: str
    fields: tuple[str, ...]
    offset: int  # byte offset of the first byte of the line
    ordinal: int  # 1-based physical line number

    def field(self, index: int) -> str:
        if index < len(self.fields):
            return self.fields[index].strip()
        return ""

    @property
    def block(self) -> str:
        return self.record_type[0]


@dataclass(frozen=True)
class LedgerHeader:
    """Content of the 0000 record."""

    ledger_kind: LedgerKind
    taxpayer_id: str
    registrant_name: str
    period_start: date
    period_end: date

    @property
    def period(self) -> date:
        return self.period_start.replace(day=1)


@dataclass(frozen=True)
class ClassifiedRow:
    """A row accepted for persistence in ``category``."""

    category: RowCategory
    source_line: int
    values: dict[str, Any]


# =============================================================================
# Intake and status DTOs
# =============================================================================


@dataclass(frozen=True)
class IntakeRequest:
    """Payload of the intake contract."""

    company_id: UUID
    owner_id: UUID
    file_path: str
    file_name: str
    file_size: int
    record_limit: int | None = None
    import_scope: ImportScope = ImportScope.ALL


@dataclass(frozen=True)
class ImportJobStatusView:
    """Snapshot exposed to status pollers."""

    job_id: UUID
    status: ImportJobStatus
    progress: int
    status_message: str | None
    processed_lines: int
    total_lines: int | None
    counts: dict[RowCategory, int] = field(default_factory=dict)
    error_message: str | None = None
    branch_id: UUID | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class InvocationOutcome(str, Enum):
    """What one pipeline invocation did."""

    SKIPPED = "skipped"  # Claim refused: terminal, owned elsewhere, or unknown job
    CONTINUE = "continue"  # Budget exhausted with lines remaining
    RETRY = "retry"  # Transient write/read failure; cursor not advanced
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class InvocationResult:
    job_id: UUID
    outcome: InvocationOutcome
    lines_processed: int = 0
    resume_cursor: int = 0
    retry_count: int = 0
    message: str | None = None

    @property
    def needs_continuation(self) -> bool:
        return self.outcome in (InvocationOutcome.CONTINUE, InvocationOutcome.RETRY)
