"""Pure domain helpers shared by the pipeline packages."""

from efd_kernel.domain.clock import Clock, DeterministicClock, SystemClock

__all__ = ["Clock", "SystemClock", "DeterministicClock"]
