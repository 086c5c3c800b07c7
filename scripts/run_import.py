#!/usr/bin/env python3
"""
Import a SPED EFD file end to end, in-process.

Registers the file as an import job, then drains the in-process continuation
queue (one bounded invocation per chunk) until the job is terminal, and prints
the final status.

Usage:
    python3 scripts/run_import.py --file <path> [options]

Examples:
    # Import into a local SQLite database
    python3 scripts/run_import.py --file efd_icms_2024_01.txt --db-url sqlite:///efd.db

    # Only block C, at most 500 records per record type
    python3 scripts/run_import.py --file efd.txt --scope only_c --record-limit 500

    # Print the ledger header and exit (no DB writes)
    python3 scripts/run_import.py --file efd.txt --probe-only
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path
from uuid import UUID, uuid4

# Project root on sys.path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

DB_URL = "sqlite:///efd_import.db"
SCOPES = ("all", "only_a", "only_c", "only_d", "icms_uso_consumo")


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Import a SPED EFD ledger file (ICMS/IPI or Contribuicoes).",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--file", required=True, type=Path, help="Path to the EFD text file.")
    parser.add_argument(
        "--company-id",
        default=None,
        help="Company UUID owning the branches (default: EFD_COMPANY_ID env or new UUID).",
    )
    parser.add_argument(
        "--owner-id",
        default=None,
        help="Actor UUID for audit (default: EFD_OWNER_ID env or new UUID).",
    )
    parser.add_argument("--scope", choices=SCOPES, default="all", help="Import scope (default: all).")
    parser.add_argument(
        "--record-limit",
        type=int,
        default=None,
        help="Maximum records accepted per record type.",
    )
    parser.add_argument("--config", type=Path, default=None, help="Pipeline YAML (default: packaged).")
    parser.add_argument(
        "--max-lines",
        type=int,
        default=None,
        help="Override the per-invocation line budget (forces continuations).",
    )
    parser.add_argument(
        "--db-url",
        default=None,
        help=f"Database URL (default: EFD_DATABASE_URL, config, or {DB_URL!r}).",
    )
    parser.add_argument(
        "--probe-only",
        action="store_true",
        help="Extract and print the ledger header, then exit. No DB writes.",
    )
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON logs to stderr.")
    parser.add_argument("--log-level", default="INFO", help="Log level for --json-logs (default: INFO).")
    return parser.parse_args()


def _uuid_arg(value: str | None, env_name: str) -> UUID:
    return UUID(value) if value else UUID(os.environ.get(env_name, str(uuid4())))


def main() -> int:
    args = _parse_args()

    source_path = args.file.resolve()
    if not source_path.is_file():
        print(f"ERROR: File not found: {source_path}", file=sys.stderr)
        return 1
    if args.record_limit is not None and args.record_limit <= 0:
        print("ERROR: --record-limit must be positive", file=sys.stderr)
        return 1

    # Lazy imports so we fail fast on args first
    import dataclasses

    from efd_batch.orchestrator import ImportOrchestrator
    from efd_config.loader import load_pipeline_config
    from efd_ingestion.adapters.local_blob import LocalBlobStore
    from efd_ingestion.domain.types import ImportScope, IntakeRequest
    from efd_ingestion.services.header_extractor import HeaderExtractor
    from efd_kernel.db.engine import create_tables, get_session_factory, init_engine_from_url
    from efd_kernel.domain.clock import SystemClock
    from efd_kernel.exceptions import EfdImportError
    from efd_kernel.logging_config import configure_logging

    if args.json_logs:
        configure_logging(level=args.log_level)

    try:
        config = load_pipeline_config(args.config)
    except EfdImportError as e:
        print(f"ERROR: Failed to load config: {e}", file=sys.stderr)
        return 1
    if args.max_lines is not None:
        config = dataclasses.replace(
            config, chunk=dataclasses.replace(config.chunk, max_lines=args.max_lines)
        )

    blob_store = LocalBlobStore(source_path.parent)

    if args.probe_only:
        try:
            header = HeaderExtractor(blob_store, config.header.probe_bytes, config.chunk.encoding).extract(
                source_path.name
            )
        except EfdImportError as e:
            print(f"ERROR: {e}", file=sys.stderr)
            return 1
        print(f"Ledger:   {header.ledger_kind.value}")
        print(f"CNPJ:     {header.taxpayer_id}")
        print(f"Name:     {header.registrant_name}")
        print(f"Period:   {header.period_start} .. {header.period_end}")
        return 0

    db_url = args.db_url or config.database_url or DB_URL
    try:
        engine = init_engine_from_url(db_url)
        create_tables(engine)
    except Exception as e:
        print(f"ERROR: Database setup failed: {e}", file=sys.stderr)
        return 1

    orchestrator = ImportOrchestrator.from_config(
        config,
        get_session_factory(),
        blob_store,
        clock=SystemClock(),
        background_refresh=False,
    )
    request = IntakeRequest(
        company_id=_uuid_arg(args.company_id, "EFD_COMPANY_ID"),
        owner_id=_uuid_arg(args.owner_id, "EFD_OWNER_ID"),
        file_path=source_path.name,
        file_name=source_path.name,
        file_size=source_path.stat().st_size,
        record_limit=args.record_limit,
        import_scope=ImportScope(args.scope),
    )

    try:
        job_id = orchestrator.start_import(request)
        invocations = orchestrator.run_worker()
    except EfdImportError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    status = orchestrator.get_status(job_id)
    print(f"Job:         {job_id}")
    print(f"Invocations: {invocations}")
    print(f"Status:      {status.status.value} ({status.progress}%)")
    print(f"Lines:       {status.processed_lines}/{status.total_lines}")
    counts = {category.value: n for category, n in status.counts.items()}
    print(f"Counts:      {json.dumps(counts, sort_keys=True)}")
    if status.error_message:
        print(f"Error:       {status.error_message}")
    return 0 if status.status.value == "completed" else 2


if __name__ == "__main__":
    sys.exit(main())
