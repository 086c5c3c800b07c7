"""
One bounded invocation of the import pipeline.

Contract:
    ``run_invocation(job_id)`` is re-entrant from the Job Record alone: it
    claims the job, resumes from ``resume_cursor`` with the checkpointed
    ``parse_state``, and parses until the file ends or the chunk budget
    (lines, bytes, wall clock minus the deadline margin) runs out.  It never
    raises for conditions that belong on the Job Record; the returned
    ``InvocationResult`` tells the caller whether to schedule a continuation.

Error policy:
    - LedgerValidationError -> job failed ("Validation failed: ..."), no retry.
    - SourceUnavailableError -> job failed ("Source unavailable: ..."), no retry.
    - PersistenceError / BlobReadError / raw database errors -> cursor not
      advanced, retry_count+1, outcome RETRY; failed once
      ``max_consecutive_failures`` is reached.
    - JobClaimLostError -> outcome SKIPPED (or CANCELLED if that is why).
    - View refresh failure -> logged; the job still completes.  A job found
      in refreshing_views (crash before completion) only refreshes and
      completes.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from efd_config.schema import PipelineConfig
from efd_ingestion.adapters.base import BlobStore, ViewRefresher
from efd_ingestion.domain.classification import ClassificationRuleTable
from efd_ingestion.domain.types import (
    PERSISTENCE_FAILURE_PREFIX,
    SOURCE_FAILURE_PREFIX,
    VALIDATION_FAILURE_PREFIX,
    ImportJobStatus,
    ImportScope,
    InvocationOutcome,
    InvocationResult,
)
from efd_ingestion.models.import_job import ImportJobModel
from efd_ingestion.parsing.chunked_reader import ChunkedLineReader
from efd_ingestion.parsing.record_interpreter import ParseState, RecordInterpreter
from efd_ingestion.parsing.tokenizer import tokenize
from efd_ingestion.services.batch_persister import BatchPersister
from efd_ingestion.services.header_extractor import HeaderExtractor
from efd_ingestion.services.job_repository import Claim, ImportJobRepository
from efd_ingestion.services.progress_reporter import ProgressReporter
from efd_kernel.domain.clock import Clock
from efd_kernel.exceptions import (
    BlobReadError,
    JobClaimLostError,
    LedgerValidationError,
    PersistenceError,
    SourceUnavailableError,
)
from efd_kernel.logging_config import LogContext, get_logger
from efd_kernel.services.branch_service import BranchService

logger = get_logger("ingestion.pipeline")


class ImportPipeline:
    """Runs invocations of the import pipeline for any job id."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        blob_store: BlobStore,
        rules: ClassificationRuleTable,
        config: PipelineConfig,
        clock: Clock,
        view_refresher: ViewRefresher | None = None,
    ):
        self._session_factory = session_factory
        self._blob_store = blob_store
        self._rules = rules
        self._config = config
        self._clock = clock
        self._view_refresher = view_refresher

    def run_invocation(self, job_id: UUID) -> InvocationResult:
        """
        Process one chunk of ``job_id``.

        Raises:
            PersistenceError: the Job Record itself could not be read or
                updated (the job is left for stalled-job recovery).
        """
        session = self._session_factory()
        try:
            return self._run(session, job_id)
        except SQLAlchemyError as exc:
            session.rollback()
            raise PersistenceError("import_jobs", str(exc)) from exc
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------

    def _run(self, session: Session, job_id: UUID) -> InvocationResult:
        repository = ImportJobRepository(session, self._clock)
        claim = repository.try_claim(job_id, self._config.claim.lease_seconds)
        session.commit()

        if claim is None:
            status = repository.status_of(job_id)
            logger.info(
                "import_invocation_skipped",
                extra={"job_id": str(job_id), "status": status.value if status else None},
            )
            return InvocationResult(
                job_id=job_id,
                outcome=InvocationOutcome.SKIPPED,
                message="job not found" if status is None else f"job is {status.value} or claimed",
            )

        job = repository.require(job_id)
        with LogContext.bind(job_id=job_id, chunk_number=claim.chunk_number, actor_id=job.owner_id):
            logger.info(
                "import_invocation_started",
                extra={"resume_cursor": job.resume_cursor, "processed_lines": job.processed_lines},
            )
            try:
                if job.status == ImportJobStatus.REFRESHING_VIEWS.value:
                    result = self._resume_refresh(session, repository, claim, job)
                else:
                    result = self._process(session, repository, claim, job)
            except LedgerValidationError as exc:
                session.rollback()
                logger.warning("import_validation_failed", exc_info=True)
                result = self._fail(session, repository, claim, f"{VALIDATION_FAILURE_PREFIX} {exc}")
            except SourceUnavailableError as exc:
                session.rollback()
                logger.warning("import_source_unavailable", exc_info=True)
                result = self._fail(session, repository, claim, f"{SOURCE_FAILURE_PREFIX} {exc}")
            except (PersistenceError, BlobReadError) as exc:
                session.rollback()
                result = self._record_transient_failure(session, repository, claim, exc)
            except SQLAlchemyError as exc:
                session.rollback()
                result = self._record_transient_failure(
                    session, repository, claim, PersistenceError("import_jobs", str(exc))
                )
            except JobClaimLostError:
                session.rollback()
                result = self._claim_lost(repository, job_id)
            logger.info(
                "import_invocation_finished",
                extra={
                    "outcome": result.outcome.value,
                    "lines_processed": result.lines_processed,
                    "resume_cursor": result.resume_cursor,
                },
            )
            return result

    def _process(
        self,
        session: Session,
        repository: ImportJobRepository,
        claim: Claim,
        job: ImportJobModel,
    ) -> InvocationResult:
        state = ParseState.from_json(job.parse_state)
        if job.branch_id is None or state.ledger_kind is None:
            self._extract_header(session, repository, claim, job, state)

        chunk = self._config.chunk
        branches = BranchService(session, job.owner_id)
        interpreter = RecordInterpreter(
            state=state,
            rules=self._rules,
            resolve_branch=lambda cnpj, name, code: branches.resolve_or_create(
                job.company_id, cnpj, name, code
            ).id,
            scope=ImportScope(job.import_scope),
            record_limit=job.record_limit,
            trailer_policy=self._config.trailer_policy,
        )
        persister = BatchPersister(
            session, repository, claim, job.owner_id, batch_size=self._config.batch.size
        )
        reporter = ProgressReporter(
            session,
            repository,
            claim,
            self._config.progress,
            file_size=job.file_size,
            lease_seconds=self._config.claim.lease_seconds,
            initial_progress=job.progress,
        )
        reader = ChunkedLineReader(
            self._blob_store,
            job.file_path,
            start_offset=job.resume_cursor,
            start_ordinal=job.processed_lines,
            block_bytes=chunk.read_block_bytes,
            encoding=chunk.encoding,
        )

        started = self._clock.now_utc()
        cursor = job.resume_cursor
        processed = job.processed_lines
        consumed = 0
        record_type: str | None = None
        exhausted = True

        def checkpoint() -> None:
            reporter.checkpoint(
                persister,
                resume_cursor=cursor,
                processed_lines=processed,
                parse_state=state.to_json(),
                record_type=record_type,
                skipped_records=job.skipped_records + interpreter.skipped_records,
            )

        lines = iter(reader)
        try:
            for raw in lines:
                if self._budget_exhausted(consumed, cursor - job.resume_cursor, started):
                    exhausted = False
                    break
                line = tokenize(raw)
                if line is not None:
                    record_type = line.record_type
                    for row in interpreter.interpret(line):
                        persister.add(row)
                cursor = raw.end_offset
                processed = raw.ordinal
                consumed += 1
                if state.limit_reached:
                    logger.info("record_limit_reached", extra={"processed_lines": processed})
                    break
                if reporter.line_consumed():
                    checkpoint()
        finally:
            lines.close()

        if not exhausted:
            checkpoint()
            repository.release(claim)
            session.commit()
            return InvocationResult(
                job_id=claim.job_id,
                outcome=InvocationOutcome.CONTINUE,
                lines_processed=consumed,
                resume_cursor=cursor,
            )

        for row in interpreter.finish():
            persister.add(row)
        checkpoint()
        self._complete(session, repository, claim, state, processed)
        return InvocationResult(
            job_id=claim.job_id,
            outcome=InvocationOutcome.COMPLETED,
            lines_processed=consumed,
            resume_cursor=cursor,
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _extract_header(
        self,
        session: Session,
        repository: ImportJobRepository,
        claim: Claim,
        job: ImportJobModel,
        state: ParseState,
    ) -> None:
        extractor = HeaderExtractor(
            self._blob_store,
            probe_bytes=self._config.header.probe_bytes,
            encoding=self._config.chunk.encoding,
        )
        header = extractor.extract(job.file_path)
        branch = BranchService(session, job.owner_id).resolve_or_create(
            job.company_id, header.taxpayer_id, header.registrant_name
        )
        state.ledger_kind = header.ledger_kind
        state.period = header.period
        state.branch_id = branch.id
        state.taxpayer_id = header.taxpayer_id
        state.branches[header.taxpayer_id] = str(branch.id)
        repository.set_branch(claim, branch.id, state.to_json())
        session.commit()
        logger.info(
            "import_branch_resolved",
            extra={"branch_id": str(branch.id), "branch_created": branch.created},
        )

    def _complete(
        self,
        session: Session,
        repository: ImportJobRepository,
        claim: Claim,
        state: ParseState,
        processed: int,
    ) -> None:
        declared = state.declared_lines
        total_lines = declared if declared is not None and declared >= processed else processed
        repository.mark_refreshing(
            claim, progress=self._config.progress.refresh_progress, total_lines=total_lines
        )
        session.commit()
        self._refresh_and_complete(session, repository, claim)

    def _resume_refresh(
        self,
        session: Session,
        repository: ImportJobRepository,
        claim: Claim,
        job: ImportJobModel,
    ) -> InvocationResult:
        logger.info("import_refresh_resumed")
        self._refresh_and_complete(session, repository, claim)
        return InvocationResult(
            job_id=claim.job_id,
            outcome=InvocationOutcome.COMPLETED,
            resume_cursor=job.resume_cursor,
        )

    def _refresh_and_complete(self, session: Session, repository: ImportJobRepository, claim: Claim) -> None:
        if self._view_refresher is not None and self._config.view_refresh.enabled:
            try:
                self._view_refresher.refresh(claim.job_id)
            except Exception:
                logger.warning("view_refresh_failed", exc_info=True)

        repository.mark_completed(claim)
        session.commit()

    def _budget_exhausted(self, consumed: int, bytes_read: int, started: datetime) -> bool:
        if consumed == 0:
            return False
        chunk = self._config.chunk
        if consumed >= chunk.max_lines:
            return True
        if chunk.max_bytes is not None and bytes_read >= chunk.max_bytes:
            return True
        return self._clock.elapsed_seconds(started) >= chunk.time_budget_seconds

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    def _fail(
        self,
        session: Session,
        repository: ImportJobRepository,
        claim: Claim,
        message: str,
    ) -> InvocationResult:
        status = repository.status_of(claim.job_id)
        if status is None or status.is_terminal or status is ImportJobStatus.PENDING:
            return self._claim_lost(repository, claim.job_id)
        try:
            repository.mark_failed(claim, message, from_status=status)
        except JobClaimLostError:
            session.rollback()
            return self._claim_lost(repository, claim.job_id)
        session.commit()
        logger.error("import_job_failed", extra={"error_message": message})
        return InvocationResult(job_id=claim.job_id, outcome=InvocationOutcome.FAILED, message=message)

    def _record_transient_failure(
        self,
        session: Session,
        repository: ImportJobRepository,
        claim: Claim,
        exc: Exception,
    ) -> InvocationResult:
        status = repository.status_of(claim.job_id)
        if status is None or status.is_terminal or status is ImportJobStatus.PENDING:
            return self._claim_lost(repository, claim.job_id)
        try:
            retry_count = repository.record_failure(
                claim, f"{PERSISTENCE_FAILURE_PREFIX} {exc} (will retry)", expected_status=status
            )
        except JobClaimLostError:
            session.rollback()
            return self._claim_lost(repository, claim.job_id)
        session.commit()

        ceiling = self._config.retry.max_consecutive_failures
        if retry_count >= ceiling:
            message = f"{PERSISTENCE_FAILURE_PREFIX} {exc} ({retry_count} consecutive attempts)"
            repository.fail_unclaimed(claim.job_id, message)
            session.commit()
            logger.error("import_job_failed", extra={"error_message": message, "retry_count": retry_count})
            return InvocationResult(
                job_id=claim.job_id,
                outcome=InvocationOutcome.FAILED,
                retry_count=retry_count,
                message=message,
            )

        logger.warning(
            "import_invocation_retry",
            extra={"retry_count": retry_count, "max_consecutive_failures": ceiling},
            exc_info=exc,
        )
        return InvocationResult(
            job_id=claim.job_id,
            outcome=InvocationOutcome.RETRY,
            retry_count=retry_count,
            message=str(exc),
        )

    @staticmethod
    def _claim_lost(repository: ImportJobRepository, job_id: UUID) -> InvocationResult:
        status = repository.status_of(job_id)
        if status is ImportJobStatus.CANCELLED:
            logger.info("import_job_cancelled")
            return InvocationResult(job_id=job_id, outcome=InvocationOutcome.CANCELLED)
        logger.warning("import_claim_lost", extra={"status": status.value if status else None})
        return InvocationResult(job_id=job_id, outcome=InvocationOutcome.SKIPPED, message="claim lost")
