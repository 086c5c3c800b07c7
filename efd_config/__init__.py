"""
efd_config -- configuration entrypoints of the import pipeline.

``get_pipeline_config()`` returns the immutable ``PipelineConfig``;
``get_fiscal_code_table()`` returns the item-line classification table
definition.  Both emit an ``efd_config_trace`` log entry with the checksum of
the source document so every import can be tied to the configuration that
governed it.
"""

from __future__ import annotations

import os
from pathlib import Path

from efd_config.loader import (
    DEFAULT_FISCAL_CODES_FILE,
    DEFAULT_PIPELINE_FILE,
    apply_env_overrides,
    compute_checksum,
    load_yaml_file,
    parse_fiscal_code_table,
    parse_pipeline_config,
)
from efd_config.schema import FiscalCodeTableDef, PipelineConfig, TrailerPolicy
from efd_kernel.logging_config import get_logger

_logger = get_logger("config")


def get_pipeline_config(path: Path | None = None) -> PipelineConfig:
    """Load the pipeline configuration (default file + environment overrides)."""
    source = path or DEFAULT_PIPELINE_FILE
    data = apply_env_overrides(load_yaml_file(source), os.environ)
    config = parse_pipeline_config(data)
    _logger.info(
        "efd_config_trace",
        extra={
            "config_file": str(source),
            "checksum": compute_checksum({k: v for k, v in data.items() if k != "database_url"}),
            "trailer_policy": config.trailer_policy.value,
            "batch_size": config.batch.size,
            "chunk_max_lines": config.chunk.max_lines,
        },
    )
    return config


def get_fiscal_code_table(path: Path | None = None) -> FiscalCodeTableDef:
    """Load the fiscal-code classification table definition."""
    source = path or DEFAULT_FISCAL_CODES_FILE
    data = load_yaml_file(source)
    table = parse_fiscal_code_table(data)
    _logger.info(
        "efd_config_trace",
        extra={
            "config_file": str(source),
            "checksum": compute_checksum(data),
            "rules": len(table.rules),
        },
    )
    return table


__all__ = [
    "PipelineConfig",
    "FiscalCodeTableDef",
    "TrailerPolicy",
    "get_pipeline_config",
    "get_fiscal_code_table",
]
