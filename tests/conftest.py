"""
Pytest fixtures for the EFD import test suite.

Provides:
- A file-backed SQLite database per test (schema created from the ORM)
- Deterministic clock, blob store and pipeline configuration
- ``LedgerBuilder`` for writing synthetic EFD ICMS/IPI and Contribuições files
- Structured log capture

Environment Variables:
- none; tests never touch PostgreSQL or the network.
"""

import dataclasses
import json
import logging
from io import StringIO
from pathlib import Path
from uuid import UUID, uuid4

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker

from efd_config import get_fiscal_code_table
from efd_config.loader import load_pipeline_config
from efd_config.schema import PipelineConfig
from efd_ingestion.adapters.local_blob import LocalBlobStore
from efd_ingestion.domain.classification import ClassificationRuleTable
from efd_ingestion.domain.types import ImportScope, IntakeRequest
from efd_ingestion.models.import_job import ImportJobModel
from efd_ingestion.services.import_service import ImportService
from efd_ingestion.services.pipeline import ImportPipeline
from efd_kernel.db.engine import create_tables
from efd_kernel.domain.clock import DeterministicClock
from efd_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)

from ledger_files import LedgerBuilder, abc_scenario

# Test actor ID for all test operations
TEST_ACTOR_ID = uuid4()
TEST_COMPANY_ID = uuid4()


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture efd logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, run_to_completion):
            run_to_completion(job_id)
            logs = captured_logs()
            assert any(r["message"] == "import_invocation_finished" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("efd")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def engine(tmp_path):
    """A fresh SQLite database file with the full schema."""
    db_engine = create_engine(f"sqlite:///{tmp_path / 'efd_test.db'}")
    create_tables(db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    s = session_factory()
    yield s
    s.rollback()
    s.close()


@pytest.fixture
def test_actor_id() -> UUID:
    return TEST_ACTOR_ID


@pytest.fixture
def company_id() -> UUID:
    return TEST_COMPANY_ID


@pytest.fixture
def deterministic_clock():
    """Provide a deterministic clock for testing."""
    return DeterministicClock()


# =============================================================================
# Configuration fixtures
# =============================================================================


@pytest.fixture
def pipeline_config() -> PipelineConfig:
    """Packaged defaults, no environment overrides."""
    return load_pipeline_config(env={})


@pytest.fixture
def make_config(pipeline_config):
    """Override chunk/batch/progress/retry fields of the default config."""

    def _make(
        max_lines: int | None = None,
        max_bytes: int | None = None,
        batch_size: int | None = None,
        checkpoint_interval: int | None = None,
        read_block_bytes: int | None = None,
        **top_level,
    ) -> PipelineConfig:
        chunk = pipeline_config.chunk
        if max_lines is not None:
            chunk = dataclasses.replace(chunk, max_lines=max_lines)
        if max_bytes is not None:
            chunk = dataclasses.replace(chunk, max_bytes=max_bytes)
        if read_block_bytes is not None:
            chunk = dataclasses.replace(chunk, read_block_bytes=read_block_bytes)
        batch = pipeline_config.batch
        if batch_size is not None:
            batch = dataclasses.replace(batch, size=batch_size)
        progress = pipeline_config.progress
        if checkpoint_interval is not None:
            progress = dataclasses.replace(progress, checkpoint_interval_lines=checkpoint_interval)
        return dataclasses.replace(
            pipeline_config, chunk=chunk, batch=batch, progress=progress, **top_level
        )

    return _make


@pytest.fixture(scope="session")
def fiscal_rules() -> ClassificationRuleTable:
    return ClassificationRuleTable.from_def(get_fiscal_code_table())


# =============================================================================
# Ledger files
# =============================================================================


@pytest.fixture
def ledger_builder():
    return LedgerBuilder


@pytest.fixture
def abc_ledger() -> LedgerBuilder:
    """Invoice with a usage item (1556), a fixed-asset item (1551) and a resale item (1102)."""
    return abc_scenario()


@pytest.fixture
def blob_root(tmp_path) -> Path:
    root = tmp_path / "blobs"
    root.mkdir()
    return root


@pytest.fixture
def blob_store(blob_root) -> LocalBlobStore:
    return LocalBlobStore(blob_root)


@pytest.fixture
def write_ledger(blob_root):
    """Write bytes (or a LedgerBuilder) into the blob root; return (path, size)."""

    def _write(content, name: str = "efd.txt") -> tuple[str, int]:
        data = content.build() if isinstance(content, LedgerBuilder) else content
        (blob_root / name).write_bytes(data)
        return name, len(data)

    return _write


# =============================================================================
# Service fixtures
# =============================================================================


@pytest.fixture
def import_service(session_factory, deterministic_clock) -> ImportService:
    return ImportService(session_factory, deterministic_clock)


@pytest.fixture
def create_job(import_service, write_ledger, company_id, test_actor_id):
    """Write a ledger and register an import job for it; return the job id."""

    def _create(
        content,
        name: str = "efd.txt",
        scope: ImportScope = ImportScope.ALL,
        record_limit: int | None = None,
    ) -> UUID:
        path, size = write_ledger(content, name)
        return import_service.create_job(
            IntakeRequest(
                company_id=company_id,
                owner_id=test_actor_id,
                file_path=path,
                file_name=name,
                file_size=size,
                record_limit=record_limit,
                import_scope=scope,
            )
        )

    return _create


@pytest.fixture
def make_pipeline(session_factory, blob_store, fiscal_rules, pipeline_config, deterministic_clock):
    def _make(config: PipelineConfig | None = None, view_refresher=None, store=None, clock=None) -> ImportPipeline:
        return ImportPipeline(
            session_factory,
            store or blob_store,
            fiscal_rules,
            config or pipeline_config,
            clock or deterministic_clock,
            view_refresher=view_refresher,
        )

    return _make


@pytest.fixture
def run_to_completion():
    """Invoke a pipeline until the job leaves the continuation loop."""

    def _run(pipeline: ImportPipeline, job_id: UUID, max_invocations: int = 1000) -> list:
        results = []
        for _ in range(max_invocations):
            result = pipeline.run_invocation(job_id)
            results.append(result)
            if not result.needs_continuation:
                return results
        raise AssertionError(f"job {job_id} did not finish in {max_invocations} invocations")

    return _run


@pytest.fixture
def load_job(session_factory):
    def _load(job_id: UUID) -> ImportJobModel:
        with session_factory() as s:
            return s.execute(select(ImportJobModel).where(ImportJobModel.id == job_id)).scalar_one()

    return _load


@pytest.fixture
def rows_of(session_factory):
    """All rows of a category model for one job, in source-line order."""

    def _rows(model, job_id: UUID | None = None) -> list:
        with session_factory() as s:
            stmt = select(model)
            if job_id is not None and hasattr(model, "import_job_id"):
                stmt = stmt.where(model.import_job_id == job_id)
            if hasattr(model, "source_line"):
                stmt = stmt.order_by(model.source_line)
            return list(s.execute(stmt).scalars().all())

    return _rows
