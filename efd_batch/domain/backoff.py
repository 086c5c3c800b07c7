"""
Exponential backoff.

Pure: callers pass the attempt number and the policy bounds; nothing here
sleeps or reads a clock.
"""

from __future__ import annotations

from efd_config.schema import RetryPolicy


def backoff_delay(attempt: int, base_seconds: float, max_seconds: float) -> float:
    """``min(base * 2**attempt, max)``; attempt 0 waits ``base``."""
    if attempt < 0:
        raise ValueError(f"attempt must be non-negative, got {attempt}")
    if base_seconds <= 0:
        return 0.0
    # Cap the exponent so huge attempt numbers do not overflow the float.
    exponent = min(attempt, 62)
    return min(max_seconds, base_seconds * (2 ** exponent))


def dispatch_delays(policy: RetryPolicy) -> list[float]:
    """Sleeps between the dispatch attempts allowed by ``policy``."""
    return [
        backoff_delay(attempt, policy.backoff_base_seconds, policy.backoff_max_seconds)
        for attempt in range(max(policy.max_dispatch_attempts - 1, 0))
    ]
