"""
Pipeline configuration schema.

Every tunable of the import pipeline lives in one immutable
``PipelineConfig`` passed into the services at construction.  YAML files are
parsed into these types by ``efd_config.loader``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

# ---------------------------------------------------------------------------
# Invocation budget
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChunkBudget:
    """Limits of one pipeline invocation."""

    max_lines: int = 100_000
    max_bytes: int | None = None
    max_seconds: float = 45.0
    deadline_margin_seconds: float = 5.0
    read_block_bytes: int = 64 * 1024
    encoding: str = "latin-1"

    @property
    def time_budget_seconds(self) -> float:
        return max(0.0, self.max_seconds - self.deadline_margin_seconds)


@dataclass(frozen=True)
class BatchPolicy:
    size: int = 1000


@dataclass(frozen=True)
class ProgressPolicy:
    """Checkpoint cadence and the progress values of each phase."""

    checkpoint_interval_lines: int = 5000
    parse_ceiling: int = 90
    refresh_progress: int = 95


@dataclass(frozen=True)
class RetryPolicy:
    """Continuation dispatch backoff and the persistence failure cap."""

    max_dispatch_attempts: int = 5
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 60.0
    max_consecutive_failures: int = 3


@dataclass(frozen=True)
class ClaimPolicy:
    lease_seconds: int = 120


@dataclass(frozen=True)
class HeaderPolicy:
    probe_bytes: int = 8192


class TrailerPolicy(str, Enum):
    """What a 9999 line-count mismatch does to the job."""

    WARN = "warn"  # log and continue
    FAIL = "fail"  # validation failure


@dataclass(frozen=True)
class ViewRefreshPolicy:
    enabled: bool = True
    views: tuple[str, ...] = ()
    timeout_seconds: float = 30.0


# ---------------------------------------------------------------------------
# Fiscal-code rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FiscalCodeRuleDef:
    """One category of the item-line classification table."""

    category: str
    codes: tuple[str, ...] = ()
    ranges: tuple[tuple[str, str], ...] = ()  # inclusive (low, high)
    description: str = ""


@dataclass(frozen=True)
class FiscalCodeTableDef:
    record_types: tuple[str, ...]
    rules: tuple[FiscalCodeRuleDef, ...]
    ignore_reason: str = "resale"


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PipelineConfig:
    """Immutable configuration of the import pipeline."""

    chunk: ChunkBudget = field(default_factory=ChunkBudget)
    batch: BatchPolicy = field(default_factory=BatchPolicy)
    progress: ProgressPolicy = field(default_factory=ProgressPolicy)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    claim: ClaimPolicy = field(default_factory=ClaimPolicy)
    header: HeaderPolicy = field(default_factory=HeaderPolicy)
    trailer_policy: TrailerPolicy = TrailerPolicy.WARN
    view_refresh: ViewRefreshPolicy = field(default_factory=ViewRefreshPolicy)
    database_url: str | None = None
