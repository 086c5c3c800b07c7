"""Pure scheduling functions (no I/O)."""

from efd_batch.domain.backoff import backoff_delay, dispatch_delays

__all__ = ["backoff_delay", "dispatch_delays"]
