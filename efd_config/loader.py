"""
Configuration Loader (``efd_config.loader``).

Responsibility
--------------
Loads the YAML configuration files and parses them into the frozen
dataclasses of ``efd_config.schema``.  Runtime callers use
``efd_config.get_pipeline_config()`` / ``get_fiscal_code_table()``.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Values out of range or of the wrong type -> ``ConfigurationError``.
"""

from __future__ import annotations

import hashlib
import json
import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from efd_config.schema import (
    BatchPolicy,
    ChunkBudget,
    ClaimPolicy,
    FiscalCodeRuleDef,
    FiscalCodeTableDef,
    HeaderPolicy,
    PipelineConfig,
    ProgressPolicy,
    RetryPolicy,
    TrailerPolicy,
    ViewRefreshPolicy,
)
from efd_kernel.exceptions import ConfigurationError

DATA_DIR = Path(__file__).parent / "data"
DEFAULT_PIPELINE_FILE = DATA_DIR / "pipeline.yaml"
DEFAULT_FISCAL_CODES_FILE = DATA_DIR / "fiscal_codes.yaml"

ENV_DATABASE_URL = "EFD_DATABASE_URL"
ENV_TRAILER_POLICY = "EFD_TRAILER_POLICY"

_FISCAL_CODE = re.compile(r"^\d{4}$")
_VIEW_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path, encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def compute_checksum(data: Mapping[str, Any]) -> str:
    """Deterministic SHA-256 of a parsed configuration document."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------


def _positive_int(section: Mapping[str, Any], key: str, default: int, path: str) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigurationError(f"{path}.{key}", f"must be a positive integer, got {value!r}")
    return value


def _positive_number(section: Mapping[str, Any], key: str, default: float, path: str) -> float:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise ConfigurationError(f"{path}.{key}", f"must be a non-negative number, got {value!r}")
    return float(value)


def _section(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = data.get(key) or {}
    if not isinstance(value, Mapping):
        raise ConfigurationError(key, "must be a mapping")
    return value


# ---------------------------------------------------------------------------
# Pipeline config
# ---------------------------------------------------------------------------


def parse_chunk_budget(data: Mapping[str, Any]) -> ChunkBudget:
    default = ChunkBudget()
    max_bytes = data.get("max_bytes")
    if max_bytes is not None:
        max_bytes = _positive_int(data, "max_bytes", 1, "chunk")
    budget = ChunkBudget(
        max_lines=_positive_int(data, "max_lines", default.max_lines, "chunk"),
        max_bytes=max_bytes,
        max_seconds=_positive_number(data, "max_seconds", default.max_seconds, "chunk"),
        deadline_margin_seconds=_positive_number(
            data, "deadline_margin_seconds", default.deadline_margin_seconds, "chunk"
        ),
        read_block_bytes=_positive_int(data, "read_block_bytes", default.read_block_bytes, "chunk"),
        encoding=str(data.get("encoding", default.encoding)),
    )
    if budget.deadline_margin_seconds >= budget.max_seconds:
        raise ConfigurationError("chunk.deadline_margin_seconds", "must be below chunk.max_seconds")
    return budget


def parse_progress_policy(data: Mapping[str, Any]) -> ProgressPolicy:
    default = ProgressPolicy()
    policy = ProgressPolicy(
        checkpoint_interval_lines=_positive_int(
            data, "checkpoint_interval_lines", default.checkpoint_interval_lines, "progress"
        ),
        parse_ceiling=_positive_int(data, "parse_ceiling", default.parse_ceiling, "progress"),
        refresh_progress=_positive_int(data, "refresh_progress", default.refresh_progress, "progress"),
    )
    if not policy.parse_ceiling <= policy.refresh_progress < 100:
        raise ConfigurationError(
            "progress", "expected parse_ceiling <= refresh_progress < 100"
        )
    return policy


def parse_retry_policy(data: Mapping[str, Any]) -> RetryPolicy:
    default = RetryPolicy()
    policy = RetryPolicy(
        max_dispatch_attempts=_positive_int(
            data, "max_dispatch_attempts", default.max_dispatch_attempts, "retry"
        ),
        backoff_base_seconds=_positive_number(
            data, "backoff_base_seconds", default.backoff_base_seconds, "retry"
        ),
        backoff_max_seconds=_positive_number(
            data, "backoff_max_seconds", default.backoff_max_seconds, "retry"
        ),
        max_consecutive_failures=_positive_int(
            data, "max_consecutive_failures", default.max_consecutive_failures, "retry"
        ),
    )
    if policy.backoff_max_seconds < policy.backoff_base_seconds:
        raise ConfigurationError("retry.backoff_max_seconds", "must be >= backoff_base_seconds")
    return policy


def parse_view_refresh_policy(data: Mapping[str, Any]) -> ViewRefreshPolicy:
    default = ViewRefreshPolicy()
    views = tuple(str(v) for v in data.get("views", ()) or ())
    for view in views:
        if not _VIEW_NAME.match(view):
            raise ConfigurationError("view_refresh.views", f"invalid view name {view!r}")
    return ViewRefreshPolicy(
        enabled=bool(data.get("enabled", default.enabled)),
        views=views,
        timeout_seconds=_positive_number(
            data, "timeout_seconds", default.timeout_seconds, "view_refresh"
        ),
    )


def parse_trailer_policy(value: Any) -> TrailerPolicy:
    try:
        return TrailerPolicy(str(value).lower())
    except ValueError:
        allowed = ", ".join(p.value for p in TrailerPolicy)
        raise ConfigurationError("trailer_policy", f"expected one of {allowed}, got {value!r}") from None


def parse_pipeline_config(data: Mapping[str, Any]) -> PipelineConfig:
    """Parse a ``PipelineConfig`` from a dict (missing sections use defaults)."""
    batch = _section(data, "batch")
    claim = _section(data, "claim")
    header = _section(data, "header")
    return PipelineConfig(
        chunk=parse_chunk_budget(_section(data, "chunk")),
        batch=BatchPolicy(size=_positive_int(batch, "size", BatchPolicy().size, "batch")),
        progress=parse_progress_policy(_section(data, "progress")),
        retry=parse_retry_policy(_section(data, "retry")),
        claim=ClaimPolicy(
            lease_seconds=_positive_int(claim, "lease_seconds", ClaimPolicy().lease_seconds, "claim")
        ),
        header=HeaderPolicy(
            probe_bytes=_positive_int(header, "probe_bytes", HeaderPolicy().probe_bytes, "header")
        ),
        trailer_policy=parse_trailer_policy(data.get("trailer_policy", TrailerPolicy.WARN.value)),
        view_refresh=parse_view_refresh_policy(_section(data, "view_refresh")),
        database_url=data.get("database_url"),
    )


def apply_env_overrides(data: dict[str, Any], env: Mapping[str, str]) -> dict[str, Any]:
    """Return a copy of ``data`` with environment overrides applied."""
    merged = dict(data)
    if env.get(ENV_DATABASE_URL):
        merged["database_url"] = env[ENV_DATABASE_URL]
    if env.get(ENV_TRAILER_POLICY):
        merged["trailer_policy"] = env[ENV_TRAILER_POLICY]
    return merged


def load_pipeline_config(
    path: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> PipelineConfig:
    """Load ``PipelineConfig`` from YAML, then apply environment overrides."""
    data = load_yaml_file(path or DEFAULT_PIPELINE_FILE)
    data = apply_env_overrides(data, os.environ if env is None else env)
    return parse_pipeline_config(data)


# ---------------------------------------------------------------------------
# Fiscal code table
# ---------------------------------------------------------------------------


def _fiscal_code(value: Any, where: str) -> str:
    code = str(value).strip()
    if not _FISCAL_CODE.match(code):
        raise ConfigurationError(where, f"fiscal code must have 4 digits, got {value!r}")
    return code


def parse_fiscal_code_rule(data: Mapping[str, Any], index: int) -> FiscalCodeRuleDef:
    where = f"rules[{index}]"
    if not data.get("category"):
        raise ConfigurationError(where, "category is required")
    ranges = []
    for bounds in data.get("ranges", ()) or ():
        if len(bounds) != 2:
            raise ConfigurationError(f"{where}.ranges", f"expected [low, high], got {bounds!r}")
        low, high = (_fiscal_code(b, f"{where}.ranges") for b in bounds)
        if low > high:
            raise ConfigurationError(f"{where}.ranges", f"empty range {low}-{high}")
        ranges.append((low, high))
    return FiscalCodeRuleDef(
        category=str(data["category"]),
        codes=tuple(_fiscal_code(c, f"{where}.codes") for c in data.get("codes", ()) or ()),
        ranges=tuple(ranges),
        description=str(data.get("description", "")),
    )


def parse_fiscal_code_table(data: Mapping[str, Any]) -> FiscalCodeTableDef:
    record_types = tuple(str(r) for r in data.get("record_types", ()) or ())
    if not record_types:
        raise ConfigurationError("record_types", "at least one record type is required")
    rules = tuple(
        parse_fiscal_code_rule(rule, i) for i, rule in enumerate(data.get("rules", ()) or ())
    )
    return FiscalCodeTableDef(
        record_types=record_types,
        rules=rules,
        ignore_reason=str(data.get("ignore_reason", "resale")),
    )


def load_fiscal_code_table(path: Path | None = None) -> FiscalCodeTableDef:
    return parse_fiscal_code_table(load_yaml_file(path or DEFAULT_FISCAL_CODES_FILE))
