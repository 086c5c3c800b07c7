"""
ContinuationScheduler -- schedules the next invocation of a job.

Contract:
    ``schedule(job_id, attempt)`` hands a continuation to the dispatcher with
    a delay of ``backoff_delay(attempt)`` (no delay for attempt 0).  Dispatch
    itself is retried up to ``retry.max_dispatch_attempts`` times with
    exponential sleeps.  When every attempt fails the job is marked failed
    with a "Transient failure:" message, so it never stays in ``processing``
    without a continuation.
"""

from __future__ import annotations

import time
from typing import Callable
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from efd_batch.domain.backoff import backoff_delay, dispatch_delays
from efd_batch.services.dispatchers import ContinuationDispatcher
from efd_config.schema import RetryPolicy
from efd_ingestion.domain.types import TRANSIENT_FAILURE_PREFIX
from efd_ingestion.services.job_repository import ImportJobRepository
from efd_kernel.db.engine import session_scope
from efd_kernel.domain.clock import Clock
from efd_kernel.exceptions import DispatchError
from efd_kernel.logging_config import get_logger

logger = get_logger("batch.scheduler")


class ContinuationScheduler:
    def __init__(
        self,
        dispatcher: ContinuationDispatcher,
        session_factory: sessionmaker[Session],
        clock: Clock,
        retry_policy: RetryPolicy,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._dispatcher = dispatcher
        self._session_factory = session_factory
        self._clock = clock
        self._policy = retry_policy
        self._sleep = sleep

    def continuation_delay(self, attempt: int) -> float:
        if attempt <= 0:
            return 0.0
        return backoff_delay(
            attempt, self._policy.backoff_base_seconds, self._policy.backoff_max_seconds
        )

    def schedule(self, job_id: UUID, attempt: int = 0) -> bool:
        """Return True once dispatched; False if the job was failed instead."""
        delay = self.continuation_delay(attempt)
        sleeps = dispatch_delays(self._policy)
        attempts = max(self._policy.max_dispatch_attempts, 1)
        last_error: DispatchError | None = None

        for dispatch_attempt in range(attempts):
            if dispatch_attempt > 0:
                self._sleep(sleeps[dispatch_attempt - 1])
            try:
                self._dispatcher.dispatch(job_id, delay)
            except DispatchError as exc:
                last_error = exc
                logger.warning(
                    "continuation_dispatch_failed",
                    extra={
                        "job_id": str(job_id),
                        "dispatch_attempt": dispatch_attempt + 1,
                        "max_dispatch_attempts": attempts,
                        "reason": exc.reason,
                    },
                )
                continue
            logger.info(
                "continuation_scheduled",
                extra={"job_id": str(job_id), "attempt": attempt, "delay_seconds": delay},
            )
            return True

        reason = last_error.reason if last_error is not None else "no dispatch attempted"
        message = (
            f"{TRANSIENT_FAILURE_PREFIX} continuation could not be scheduled "
            f"after {attempts} attempts ({reason})"
        )
        with session_scope(self._session_factory) as session:
            failed = ImportJobRepository(session, self._clock).fail_unclaimed(job_id, message)
        logger.error(
            "continuation_scheduling_exhausted",
            extra={"job_id": str(job_id), "job_failed": failed, "error_message": message},
        )
        return False
