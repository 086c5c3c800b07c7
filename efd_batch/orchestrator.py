"""
ImportOrchestrator -- DI container for the import pipeline.

Contract:
    Wires configuration, session factory, blob store, continuation
    dispatcher and view refresher into ``ImportService``, ``ImportPipeline``
    and ``ContinuationScheduler``.  ``handle_continuation`` is the single
    entry point of every invocation (HTTP handler, in-process worker, CLI);
    it runs one chunk and schedules the next one when the job needs it.

Non-goals:
    - Does NOT own the engine lifecycle -- caller initializes the database.
    - Does NOT start a background worker -- caller decides (``run_worker``).
"""

from __future__ import annotations

import time
from typing import Callable
from uuid import UUID, uuid4

from sqlalchemy.orm import Session, sessionmaker

from efd_batch.services.dispatchers import ContinuationDispatcher, InProcessDispatcher
from efd_batch.services.scheduler import ContinuationScheduler
from efd_batch.services.view_refresh import SqlViewRefresher, ViewRefreshTrigger
from efd_config import get_fiscal_code_table
from efd_config.schema import PipelineConfig
from efd_ingestion.adapters.base import BlobStore, ViewRefresher
from efd_ingestion.domain.classification import ClassificationRuleTable
from efd_ingestion.domain.types import (
    ImportJobStatusView,
    IntakeRequest,
    InvocationOutcome,
    InvocationResult,
)
from efd_ingestion.services.import_service import ImportService
from efd_ingestion.services.pipeline import ImportPipeline
from efd_kernel.domain.clock import Clock, SystemClock
from efd_kernel.exceptions import PersistenceError
from efd_kernel.logging_config import LogContext, get_logger

logger = get_logger("batch.orchestrator")


class ImportOrchestrator:
    def __init__(
        self,
        config: PipelineConfig,
        session_factory: sessionmaker[Session],
        blob_store: BlobStore,
        rules: ClassificationRuleTable,
        dispatcher: ContinuationDispatcher,
        clock: Clock | None = None,
        view_refresher: ViewRefresher | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._clock = clock or SystemClock()
        self._dispatcher = dispatcher
        self._sleep = sleep
        self._service = ImportService(session_factory, self._clock)
        self._pipeline = ImportPipeline(
            session_factory,
            blob_store,
            rules,
            config,
            self._clock,
            view_refresher=view_refresher,
        )
        self._scheduler = ContinuationScheduler(
            dispatcher, session_factory, self._clock, config.retry, sleep=sleep
        )

    # -------------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------------

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        session_factory: sessionmaker[Session],
        blob_store: BlobStore,
        dispatcher: ContinuationDispatcher | None = None,
        clock: Clock | None = None,
        rules: ClassificationRuleTable | None = None,
        view_refresher: ViewRefresher | None = None,
        background_refresh: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ) -> ImportOrchestrator:
        """Create a fully wired orchestrator.

        Args:
            dispatcher: Continuation transport.  Defaults to an in-process
                queue drained by ``run_worker``.
            rules: Classification table.  Defaults to the packaged
                fiscal-code table.
            view_refresher: Aggregate refresher.  Defaults to
                ``SqlViewRefresher`` over the configured views.  Always
                wrapped in a fire-and-forget ``ViewRefreshTrigger``.
        """
        if rules is None:
            rules = ClassificationRuleTable.from_def(get_fiscal_code_table())
        if view_refresher is None and config.view_refresh.views:
            view_refresher = SqlViewRefresher(
                session_factory,
                config.view_refresh.views,
                timeout_seconds=config.view_refresh.timeout_seconds,
            )
        trigger = (
            ViewRefreshTrigger(view_refresher, background=background_refresh)
            if view_refresher is not None
            else None
        )
        return cls(
            config=config,
            session_factory=session_factory,
            blob_store=blob_store,
            rules=rules,
            dispatcher=dispatcher or InProcessDispatcher(),
            clock=clock,
            view_refresher=trigger,
            sleep=sleep,
        )

    # -------------------------------------------------------------------------
    # Intake and status
    # -------------------------------------------------------------------------

    def start_import(self, request: IntakeRequest) -> UUID:
        """Create the job and schedule its first invocation."""
        job_id = self._service.create_job(request)
        with LogContext.bind(job_id=job_id, actor_id=request.owner_id):
            self._scheduler.schedule(job_id)
        return job_id

    def get_status(self, job_id: UUID) -> ImportJobStatusView:
        return self._service.get_status(job_id)

    def cancel(self, job_id: UUID) -> bool:
        return self._service.cancel(job_id)

    # -------------------------------------------------------------------------
    # Invocations
    # -------------------------------------------------------------------------

    def handle_continuation(self, job_id: UUID) -> InvocationResult:
        """
        Run one invocation and schedule the next one if needed.

        A Job Record that cannot be read or updated is logged and reported as
        SKIPPED; stalled-job recovery picks the job up once the database is
        reachable again.
        """
        with LogContext.bind(correlation_id=uuid4(), job_id=job_id):
            try:
                result = self._pipeline.run_invocation(job_id)
            except PersistenceError as exc:
                logger.error("import_invocation_aborted", exc_info=True)
                return InvocationResult(
                    job_id=job_id, outcome=InvocationOutcome.SKIPPED, message=str(exc)
                )
            if result.needs_continuation:
                attempt = result.retry_count if result.outcome is InvocationOutcome.RETRY else 0
                self._scheduler.schedule(job_id, attempt=attempt)
            return result

    def resume_stalled(self, limit: int = 100) -> int:
        """Re-schedule jobs left without a live claim (lost continuations)."""
        resumed = 0
        for job_id in self._service.find_stalled(limit):
            if self._scheduler.schedule(job_id):
                resumed += 1
        if resumed:
            logger.info("stalled_jobs_resumed", extra={"count": resumed})
        return resumed

    def run_worker(self, max_items: int | None = None) -> int:
        """Drain the in-process continuation queue."""
        if not isinstance(self._dispatcher, InProcessDispatcher):
            raise TypeError("run_worker needs an InProcessDispatcher")
        return self._dispatcher.drain(self.handle_continuation, sleep=self._sleep, max_items=max_items)

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def config(self) -> PipelineConfig:
        return self._config

    @property
    def dispatcher(self) -> ContinuationDispatcher:
        return self._dispatcher

    @property
    def pipeline(self) -> ImportPipeline:
        return self._pipeline

    @property
    def service(self) -> ImportService:
        return self._service
