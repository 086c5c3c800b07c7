"""
Continuation transports.

Contract:
    ``dispatch(job_id, delay_seconds)`` hands one continuation to the
    transport or raises ``DispatchError``.  Delivery is at-least-once: a
    duplicate continuation is harmless because the invocation claim turns
    it into a no-op.
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Protocol, runtime_checkable
from uuid import UUID

import requests

from efd_kernel.exceptions import DispatchError
from efd_kernel.logging_config import get_logger

logger = get_logger("batch.dispatchers")


@runtime_checkable
class ContinuationDispatcher(Protocol):
    def dispatch(self, job_id: UUID, delay_seconds: float) -> None:
        ...


@dataclass(frozen=True)
class QueuedContinuation:
    job_id: UUID
    delay_seconds: float


class InProcessDispatcher:
    """FIFO queue of continuations drained by the caller (CLI, tests, worker)."""

    def __init__(self) -> None:
        self._queue: deque[QueuedContinuation] = deque()

    def dispatch(self, job_id: UUID, delay_seconds: float) -> None:
        self._queue.append(QueuedContinuation(job_id, delay_seconds))
        logger.debug(
            "continuation_enqueued",
            extra={"job_id": str(job_id), "delay_seconds": delay_seconds},
        )

    @property
    def pending(self) -> int:
        return len(self._queue)

    def pop(self) -> QueuedContinuation | None:
        return self._queue.popleft() if self._queue else None

    def drain(
        self,
        handler: Callable[[UUID], object],
        sleep: Callable[[float], None] = time.sleep,
        max_items: int | None = None,
    ) -> int:
        """
        Run queued continuations until the queue is empty.

        ``handler`` may enqueue further continuations; they are processed in
        the same drain.  Returns the number of continuations handled.
        """
        handled = 0
        while self._queue:
            if max_items is not None and handled >= max_items:
                break
            item = self._queue.popleft()
            if item.delay_seconds > 0:
                sleep(item.delay_seconds)
            handler(item.job_id)
            handled += 1
        return handled


class HttpDispatcher:
    """POSTs ``{"job_id": ...}`` to a continuation endpoint."""

    DELAY_HEADER = "X-Delay-Seconds"

    def __init__(self, endpoint_url: str, access_token: str | None = None, timeout: float = 10.0):
        self._endpoint_url = endpoint_url
        self._access_token = access_token
        self._timeout = timeout

    def dispatch(self, job_id: UUID, delay_seconds: float) -> None:
        headers = {self.DELAY_HEADER: f"{delay_seconds:g}"}
        if self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"
        try:
            response = requests.post(
                self._endpoint_url,
                json={"job_id": str(job_id)},
                headers=headers,
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise DispatchError(job_id, str(exc)) from exc
        if response.status_code >= 400:
            raise DispatchError(job_id, f"HTTP {response.status_code}")
        logger.info(
            "continuation_dispatched",
            extra={"job_id": str(job_id), "delay_seconds": delay_seconds},
        )
