"""
Progress reporting at bounded intervals.

Contract:
    The Job Record is written every ``checkpoint_interval_lines`` lines, never
    per line.  A checkpoint first flushes every buffered batch, then stores
    the resume cursor, line count, parse state, progress and status message
    in one guarded UPDATE and commits.  Progress maps the byte position onto
    ``0..parse_ceiling`` and never decreases.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from efd_config.schema import ProgressPolicy
from efd_ingestion.services.batch_persister import BatchPersister
from efd_ingestion.services.job_repository import Claim, ImportJobRepository
from efd_kernel.exceptions import PersistenceError
from efd_kernel.logging_config import get_logger

logger = get_logger("ingestion.progress")


def block_message(record_type: str | None) -> str:
    if not record_type:
        return "processing"
    return f"processing block {record_type[0]}"


class ProgressReporter:
    """Decides when to checkpoint and what progress to report."""

    def __init__(
        self,
        session: Session,
        repository: ImportJobRepository,
        claim: Claim,
        policy: ProgressPolicy,
        file_size: int,
        lease_seconds: int,
        initial_progress: int = 0,
    ):
        self._session = session
        self._repository = repository
        self._claim = claim
        self._policy = policy
        self._file_size = max(file_size, 1)
        self._lease_seconds = lease_seconds
        self._lines_since_checkpoint = 0
        self.progress = initial_progress

    def line_consumed(self) -> bool:
        """Count one line; True when a checkpoint is due."""
        self._lines_since_checkpoint += 1
        return self._lines_since_checkpoint >= self._policy.checkpoint_interval_lines

    def progress_for(self, cursor: int) -> int:
        ceiling = self._policy.parse_ceiling
        return min(ceiling, cursor * ceiling // self._file_size)

    def checkpoint(
        self,
        persister: BatchPersister,
        *,
        resume_cursor: int,
        processed_lines: int,
        parse_state: dict[str, Any],
        record_type: str | None,
        skipped_records: int,
    ) -> None:
        persister.flush_all()
        self.progress = max(self.progress, self.progress_for(resume_cursor))
        try:
            self._repository.checkpoint(
                self._claim,
                resume_cursor=resume_cursor,
                processed_lines=processed_lines,
                parse_state=parse_state,
                progress=self.progress,
                status_message=block_message(record_type),
                skipped_records=skipped_records,
                lease_seconds=self._lease_seconds,
            )
            self._session.commit()
        except SQLAlchemyError as exc:
            self._session.rollback()
            raise PersistenceError("import_jobs", str(exc)) from exc
        self._lines_since_checkpoint = 0
        logger.info(
            "import_checkpoint",
            extra={
                "resume_cursor": resume_cursor,
                "processed_lines": processed_lines,
                "progress": self.progress,
            },
        )
