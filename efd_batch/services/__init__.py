"""Continuation dispatch, scheduling and view refresh."""

from efd_batch.services.dispatchers import (
    ContinuationDispatcher,
    HttpDispatcher,
    InProcessDispatcher,
)
from efd_batch.services.scheduler import ContinuationScheduler
from efd_batch.services.view_refresh import (
    HttpViewRefresher,
    SqlViewRefresher,
    ViewRefreshTrigger,
)

__all__ = [
    "ContinuationDispatcher",
    "ContinuationScheduler",
    "HttpDispatcher",
    "HttpViewRefresher",
    "InProcessDispatcher",
    "SqlViewRefresher",
    "ViewRefreshTrigger",
]
