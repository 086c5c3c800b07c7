"""
Downstream aggregate refresh.

Contract:
    ``ViewRefreshTrigger.refresh(job_id)`` returns immediately; the wrapped
    refresher runs on a background thread and its failures are logged only.
    A failed refresh never changes the outcome of the import.
"""

from __future__ import annotations

import threading
from uuid import UUID

import requests
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from efd_ingestion.adapters.base import ViewRefresher
from efd_kernel.exceptions import ViewRefreshError
from efd_kernel.logging_config import LogContext, get_logger

logger = get_logger("batch.view_refresh")


class SqlViewRefresher:
    """``REFRESH MATERIALIZED VIEW`` for each configured view (PostgreSQL only)."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        views: tuple[str, ...],
        timeout_seconds: float = 30.0,
    ):
        self._session_factory = session_factory
        self._views = views
        self._timeout_ms = int(timeout_seconds * 1000)

    def refresh(self, job_id: UUID) -> None:
        session = self._session_factory()
        try:
            if session.get_bind().dialect.name != "postgresql":
                logger.info(
                    "view_refresh_skipped",
                    extra={"job_id": str(job_id), "reason": "materialized views need postgresql"},
                )
                return
            session.execute(text(f"SET LOCAL statement_timeout = {self._timeout_ms}"))
            for view in self._views:
                # View names are validated against an identifier pattern at config load.
                session.execute(text(f"REFRESH MATERIALIZED VIEW {view}"))
            session.commit()
            logger.info("views_refreshed", extra={"job_id": str(job_id), "views": list(self._views)})
        except SQLAlchemyError as exc:
            session.rollback()
            raise ViewRefreshError(str(exc)) from exc
        finally:
            session.close()


class HttpViewRefresher:
    """Asks a remote aggregation service to refresh."""

    def __init__(
        self,
        endpoint_url: str,
        views: tuple[str, ...] = (),
        access_token: str | None = None,
        timeout: float = 30.0,
    ):
        self._endpoint_url = endpoint_url
        self._views = views
        self._access_token = access_token
        self._timeout = timeout

    def refresh(self, job_id: UUID) -> None:
        headers = {}
        if self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"
        try:
            response = requests.post(
                self._endpoint_url,
                json={"job_id": str(job_id), "views": list(self._views)},
                headers=headers,
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise ViewRefreshError(str(exc)) from exc
        if response.status_code >= 400:
            raise ViewRefreshError(f"HTTP {response.status_code}")
        logger.info("views_refresh_requested", extra={"job_id": str(job_id)})


class ViewRefreshTrigger:
    """Fire-and-forget wrapper around a ViewRefresher."""

    def __init__(self, refresher: ViewRefresher, background: bool = True):
        self._refresher = refresher
        self._background = background
        self._threads: list[threading.Thread] = []

    def refresh(self, job_id: UUID) -> None:
        if not self._background:
            self._run(job_id, LogContext.snapshot())
            return
        thread = threading.Thread(
            target=self._run,
            args=(job_id, LogContext.snapshot()),
            name=f"view-refresh-{job_id}",
            daemon=True,
        )
        self._threads = [t for t in self._threads if t.is_alive()]
        self._threads.append(thread)
        thread.start()

    def join(self, timeout: float | None = None) -> None:
        """Wait for outstanding refreshes (CLI shutdown, tests)."""
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = [t for t in self._threads if t.is_alive()]

    def _run(self, job_id: UUID, context: dict) -> None:
        with LogContext.bind(**context):
            try:
                self._refresher.refresh(job_id)
            except Exception:
                logger.warning("view_refresh_failed", extra={"job_id": str(job_id)}, exc_info=True)
