"""
Intake and status surface of the import pipeline.

``create_job`` validates the intake payload and stores a pending Job Record;
the caller (the orchestrator) is responsible for scheduling the first
invocation.  ``get_status`` is the polling read, ``cancel`` the external
cancellation request.  Stalled-job discovery feeds recovery of jobs whose
continuation was lost (process crash between invocations).
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.orm import Session, sessionmaker

from efd_ingestion.domain.types import ImportJobStatusView, IntakeRequest
from efd_ingestion.models.import_job import ImportJobModel
from efd_ingestion.services.job_repository import CLAIMABLE_STATUSES, ImportJobRepository
from efd_kernel.db.engine import session_scope
from efd_kernel.domain.clock import Clock
from efd_kernel.exceptions import ImportJobNotFoundError, InvalidIntakeError
from efd_kernel.logging_config import get_logger

logger = get_logger("ingestion.import_service")


def validate_intake(request: IntakeRequest) -> None:
    """Raise InvalidIntakeError for payloads that can never be imported."""
    if not request.file_path or not request.file_path.strip():
        raise InvalidIntakeError("file_path is required")
    if not request.file_name or not request.file_name.strip():
        raise InvalidIntakeError("file_name is required")
    if request.file_size <= 0:
        raise InvalidIntakeError(f"file_size must be positive, got {request.file_size}")
    if request.record_limit is not None and request.record_limit <= 0:
        raise InvalidIntakeError(f"record_limit must be positive, got {request.record_limit}")


class ImportService:
    """Creates, reads and cancels import jobs."""

    def __init__(self, session_factory: sessionmaker[Session], clock: Clock):
        self._session_factory = session_factory
        self._clock = clock

    def create_job(self, request: IntakeRequest) -> UUID:
        validate_intake(request)
        with session_scope(self._session_factory) as session:
            job = ImportJobRepository(session, self._clock).create(request)
            job_id = job.id
        logger.info(
            "import_job_created",
            extra={
                "job_id": str(job_id),
                "company_id": str(request.company_id),
                "file_name": request.file_name,
                "file_size": request.file_size,
                "import_scope": request.import_scope.value,
                "record_limit": request.record_limit,
            },
        )
        return job_id

    def get_status(self, job_id: UUID) -> ImportJobStatusView:
        with session_scope(self._session_factory) as session:
            job = ImportJobRepository(session, self._clock).get(job_id)
            if job is None:
                raise ImportJobNotFoundError(job_id)
            return job.to_status_view()

    def cancel(self, job_id: UUID) -> bool:
        """
        Request cancellation.  The running invocation (if any) notices at its
        next checkpoint; no continuation is resumed afterwards.
        """
        with session_scope(self._session_factory) as session:
            repository = ImportJobRepository(session, self._clock)
            if repository.status_of(job_id) is None:
                raise ImportJobNotFoundError(job_id)
            cancelled = repository.cancel(job_id)
        logger.info("import_job_cancel_requested", extra={"job_id": str(job_id), "cancelled": cancelled})
        return cancelled

    def find_stalled(self, limit: int = 100) -> list[UUID]:
        """Non-terminal jobs that nobody holds a live claim on."""
        now = self._clock.now_utc()
        with session_scope(self._session_factory) as session:
            rows = session.execute(
                select(ImportJobModel.id)
                .where(
                    ImportJobModel.status.in_(CLAIMABLE_STATUSES),
                    or_(
                        ImportJobModel.claim_token.is_(None),
                        ImportJobModel.claim_expires_at < now,
                    ),
                )
                .order_by(ImportJobModel.created_at)
                .limit(limit)
            ).scalars().all()
        return list(rows)
