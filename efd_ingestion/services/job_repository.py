"""
Job Record persistence: claim, checkpoint, counters and transitions.

Contract:
    Every mutation issued on behalf of an invocation is a single conditional
    UPDATE guarded by the invocation's claim token and the expected status.
    A guarded update that matches no row means the claim was lost (another
    invocation took over after lease expiry, or the job was cancelled) and
    raises ``JobClaimLostError``.  The repository never commits.

Guarantees:
    - ``try_claim`` is atomic: of two overlapping invocations exactly one
      receives a claim; the other gets ``None``.
    - ``resume_cursor`` never moves backwards and ``progress`` never
      decreases (enforced in SQL, not only by callers).
    - Status changes go through the transition table in ``domain.types``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.orm import Session

from efd_ingestion.domain.types import (
    TERMINAL_STATUSES,
    ImportJobStatus,
    IntakeRequest,
    RowCategory,
    check_transition,
)
from efd_ingestion.models.import_job import ImportJobModel, count_columns
from efd_kernel.domain.clock import Clock
from efd_kernel.exceptions import ImportJobNotFoundError, JobClaimLostError
from efd_kernel.logging_config import get_logger

logger = get_logger("ingestion.job_repository")

CLAIMABLE_STATUSES = (
    ImportJobStatus.PENDING.value,
    ImportJobStatus.PROCESSING.value,
    ImportJobStatus.REFRESHING_VIEWS.value,
)
_REFRESHING = ImportJobStatus.REFRESHING_VIEWS.value
_TERMINAL = tuple(s.value for s in TERMINAL_STATUSES)


@dataclass(frozen=True)
class Claim:
    """Ownership of a job by one invocation."""

    job_id: UUID
    token: str
    chunk_number: int


def _at_least(column, value):
    return case((column < value, value), else_=column)


class ImportJobRepository:
    """Reads and conditionally updates Job Records."""

    def __init__(self, session: Session, clock: Clock):
        self._session = session
        self._clock = clock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, job_id: UUID) -> ImportJobModel | None:
        return self._session.execute(
            select(ImportJobModel)
            .where(ImportJobModel.id == job_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def require(self, job_id: UUID) -> ImportJobModel:
        job = self.get(job_id)
        if job is None:
            raise ImportJobNotFoundError(job_id)
        return job

    def status_of(self, job_id: UUID) -> ImportJobStatus | None:
        status = self._session.execute(
            select(ImportJobModel.status).where(ImportJobModel.id == job_id)
        ).scalar_one_or_none()
        return ImportJobStatus(status) if status is not None else None

    # ------------------------------------------------------------------
    # Creation and external requests
    # ------------------------------------------------------------------

    def create(self, request: IntakeRequest) -> ImportJobModel:
        job = ImportJobModel(
            id=uuid4(),
            company_id=request.company_id,
            owner_id=request.owner_id,
            file_path=request.file_path,
            file_name=request.file_name,
            file_size=request.file_size,
            import_scope=request.import_scope.value,
            record_limit=request.record_limit,
            status=ImportJobStatus.PENDING.value,
            progress=0,
            status_message="queued",
            processed_lines=0,
            resume_cursor=0,
            chunk_number=0,
            retry_count=0,
            created_by_id=request.owner_id,
        )
        self._session.add(job)
        self._session.flush()
        return job

    def cancel(self, job_id: UUID) -> bool:
        """Move a non-terminal job to cancelled. False if already terminal."""
        result = self._session.execute(
            update(ImportJobModel)
            .where(ImportJobModel.id == job_id, ImportJobModel.status.not_in(_TERMINAL))
            .values(
                status=ImportJobStatus.CANCELLED.value,
                status_message="cancelled",
                claim_token=None,
                claim_expires_at=None,
                completed_at=self._clock.now_utc(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def fail_unclaimed(self, job_id: UUID, message: str) -> bool:
        """Fail a non-terminal job without holding its claim (scheduler path)."""
        result = self._session.execute(
            update(ImportJobModel)
            .where(ImportJobModel.id == job_id, ImportJobModel.status.not_in(_TERMINAL))
            .values(
                status=ImportJobStatus.FAILED.value,
                status_message="failed",
                error_message=message,
                claim_token=None,
                claim_expires_at=None,
                completed_at=self._clock.now_utc(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------

    def try_claim(self, job_id: UUID, lease_seconds: int) -> Claim | None:
        """
        Take ownership of a non-terminal job whose claim is free or expired.
        Starts the job on its first claim.  A job that crashed while
        refreshing views stays in refreshing_views so it can be completed.
        """
        now = self._clock.now_utc()
        token = str(uuid4())
        result = self._session.execute(
            update(ImportJobModel)
            .where(
                ImportJobModel.id == job_id,
                ImportJobModel.status.in_(CLAIMABLE_STATUSES),
                or_(
                    ImportJobModel.claim_token.is_(None),
                    ImportJobModel.claim_expires_at < now,
                ),
            )
            .values(
                claim_token=token,
                claim_expires_at=now + timedelta(seconds=lease_seconds),
                status=case(
                    (ImportJobModel.status == _REFRESHING, _REFRESHING),
                    else_=ImportJobStatus.PROCESSING.value,
                ),
                chunk_number=ImportJobModel.chunk_number + 1,
                started_at=func.coalesce(ImportJobModel.started_at, now),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        job = self.require(job_id)
        return Claim(job_id=job_id, token=token, chunk_number=job.chunk_number)

    def release(self, claim: Claim, reset_retries: bool = True) -> None:
        values: dict[str, Any] = {"claim_token": None, "claim_expires_at": None}
        if reset_retries:
            values["retry_count"] = 0
            values["error_message"] = None
        self._guarded_update(claim, ImportJobStatus.PROCESSING, **values)

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def set_branch(self, claim: Claim, branch_id: UUID, parse_state: dict[str, Any]) -> None:
        self._guarded_update(
            claim, ImportJobStatus.PROCESSING, branch_id=branch_id, parse_state=parse_state
        )

    def checkpoint(
        self,
        claim: Claim,
        *,
        resume_cursor: int,
        processed_lines: int,
        parse_state: dict[str, Any],
        progress: int,
        status_message: str,
        skipped_records: int,
        lease_seconds: int,
    ) -> None:
        """Persist the resume point atomically and renew the lease."""
        self._guarded_update(
            claim,
            ImportJobStatus.PROCESSING,
            extra_where=(ImportJobModel.resume_cursor <= resume_cursor,),
            resume_cursor=resume_cursor,
            processed_lines=_at_least(ImportJobModel.processed_lines, processed_lines),
            parse_state=parse_state,
            progress=_at_least(ImportJobModel.progress, progress),
            status_message=status_message,
            skipped_records=skipped_records,
            claim_expires_at=self._clock.after(lease_seconds),
        )

    def increment_count(self, claim: Claim, category: RowCategory, inserted: int) -> None:
        if inserted <= 0:
            return
        column = getattr(ImportJobModel, count_columns()[category])
        self._guarded_update(claim, ImportJobStatus.PROCESSING, **{column.key: column + inserted})

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def mark_refreshing(self, claim: Claim, *, progress: int, total_lines: int) -> None:
        self._transition(
            claim,
            ImportJobStatus.PROCESSING,
            ImportJobStatus.REFRESHING_VIEWS,
            progress=_at_least(ImportJobModel.progress, progress),
            status_message="refreshing aggregates",
            total_lines=total_lines,
        )

    def mark_completed(self, claim: Claim) -> None:
        self._transition(
            claim,
            ImportJobStatus.REFRESHING_VIEWS,
            ImportJobStatus.COMPLETED,
            progress=100,
            status_message="completed",
            completed_at=self._clock.now_utc(),
            claim_token=None,
            claim_expires_at=None,
            retry_count=0,
            error_message=None,
        )

    def mark_failed(self, claim: Claim, message: str, from_status: ImportJobStatus) -> None:
        self._transition(
            claim,
            from_status,
            ImportJobStatus.FAILED,
            status_message="failed",
            error_message=message,
            completed_at=self._clock.now_utc(),
            claim_token=None,
            claim_expires_at=None,
        )

    def record_failure(
        self,
        claim: Claim,
        message: str,
        expected_status: ImportJobStatus = ImportJobStatus.PROCESSING,
    ) -> int:
        """Count one failed invocation, release the claim, return the new count."""
        self._guarded_update(
            claim,
            expected_status,
            retry_count=ImportJobModel.retry_count + 1,
            error_message=message,
            claim_token=None,
            claim_expires_at=None,
        )
        return self.require(claim.job_id).retry_count

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _transition(
        self,
        claim: Claim,
        from_status: ImportJobStatus,
        to_status: ImportJobStatus,
        **values: Any,
    ) -> None:
        check_transition(claim.job_id, from_status, to_status)
        self._guarded_update(claim, from_status, status=to_status.value, **values)
        logger.info(
            "import_job_transition",
            extra={"from_status": from_status.value, "to_status": to_status.value},
        )

    def _guarded_update(
        self,
        claim: Claim,
        expected_status: ImportJobStatus,
        extra_where: tuple = (),
        **values: Any,
    ) -> None:
        result = self._session.execute(
            update(ImportJobModel)
            .where(
                ImportJobModel.id == claim.job_id,
                ImportJobModel.claim_token == claim.token,
                ImportJobModel.status == expected_status.value,
                *extra_where,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise JobClaimLostError(claim.job_id, claim.token)
