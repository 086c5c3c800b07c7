"""Tests for aggregate refresh adapters and the fire-and-forget trigger."""

from uuid import uuid4

import pytest
import requests

from efd_batch.services import view_refresh
from efd_batch.services.view_refresh import HttpViewRefresher, SqlViewRefresher, ViewRefreshTrigger
from efd_ingestion.adapters.base import ViewRefresher
from efd_kernel.exceptions import ViewRefreshError
from efd_kernel.logging_config import LogContext


class RecordingRefresher:
    def __init__(self, error: Exception | None = None):
        self.calls = []
        self.contexts = []
        self.error = error

    def refresh(self, job_id):
        self.calls.append(job_id)
        self.contexts.append(LogContext.get_all())
        if self.error is not None:
            raise self.error


class TestSqlViewRefresher:
    def test_skipped_outside_postgresql(self, session_factory, captured_logs):
        refresher = SqlViewRefresher(session_factory, ("mv_dashboard_stats",))
        assert isinstance(refresher, ViewRefresher)

        refresher.refresh(uuid4())

        assert any(r["message"] == "view_refresh_skipped" for r in captured_logs())


class TestHttpViewRefresher:
    def test_posts_views(self, monkeypatch):
        calls = []

        def post(url, json=None, headers=None, timeout=None):
            calls.append((url, json, headers))
            response = requests.Response()
            response.status_code = 204
            return response

        monkeypatch.setattr(view_refresh.requests, "post", post)
        job_id = uuid4()

        refresher = HttpViewRefresher(
            "https://agg.example.com/refresh", views=("mv_a", "mv_b"), access_token="t"
        )
        refresher.refresh(job_id)

        assert calls == [
            (
                "https://agg.example.com/refresh",
                {"job_id": str(job_id), "views": ["mv_a", "mv_b"]},
                {"Authorization": "Bearer t"},
            )
        ]

    def test_failure(self, monkeypatch):
        def post(url, json=None, headers=None, timeout=None):
            raise requests.Timeout("read timed out")

        monkeypatch.setattr(view_refresh.requests, "post", post)
        with pytest.raises(ViewRefreshError):
            HttpViewRefresher("https://agg.example.com/refresh").refresh(uuid4())


class TestViewRefreshTrigger:
    def test_inline_failure_is_logged(self, captured_logs):
        refresher = RecordingRefresher(error=ViewRefreshError("timeout"))
        job_id = uuid4()

        ViewRefreshTrigger(refresher, background=False).refresh(job_id)

        assert refresher.calls == [job_id]
        failed = [r for r in captured_logs() if r["message"] == "view_refresh_failed"]
        assert failed[0]["exc_code"] == "VIEW_REFRESH_ERROR"

    def test_background_refresh_keeps_log_context(self):
        refresher = RecordingRefresher()
        trigger = ViewRefreshTrigger(refresher)
        job_id = uuid4()

        with LogContext.bind(job_id=job_id, correlation_id="corr-1"):
            trigger.refresh(job_id)
        trigger.join(timeout=5)

        assert refresher.calls == [job_id]
        assert refresher.contexts[0]["job_id"] == str(job_id)
        assert refresher.contexts[0]["correlation_id"] == "corr-1"

    def test_background_failure_does_not_raise(self):
        trigger = ViewRefreshTrigger(RecordingRefresher(error=RuntimeError("boom")))
        trigger.refresh(uuid4())
        trigger.join(timeout=5)

    def test_finished_threads_are_not_retained(self):
        refresher = RecordingRefresher()
        trigger = ViewRefreshTrigger(refresher)

        for _ in range(5):
            job_id = uuid4()
            trigger.refresh(job_id)
            trigger._threads[-1].join(timeout=5)

        assert len(refresher.calls) == 5
        assert len(trigger._threads) == 1
