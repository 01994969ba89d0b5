"""Next-run computation shared by the local and distributed schedulers.

Nothing here keeps state between calls: every decision is derived from the
arguments, so both substrates make identical timing choices.
"""

from __future__ import annotations

import random
from datetime import datetime

from ..models import MonitorDescriptor

DEFAULT_JITTER_WINDOW_MS = 10_000
DEFAULT_BACKOFF_BASE_MS = 2_000


def initial_jitter(window_ms: int = DEFAULT_JITTER_WINDOW_MS, rng: random.Random | None = None) -> int:
    """Random start-up delay in [0, window_ms) milliseconds."""
    if window_ms <= 0:
        return 0
    rng = rng or random
    return min(int(rng.random() * window_ms), window_ms - 1)


def retry_backoff(attempt: int, base_ms: int = DEFAULT_BACKOFF_BASE_MS) -> int:
    """Exponential retry delay: base, 2*base, 4*base... for attempt 1, 2, 3..."""
    return base_ms * (2 ** max(attempt - 1, 0))


def compute_next_run(
    monitor: MonitorDescriptor,
    last_run_at: datetime | None,
    attempt: int = 0,
    *,
    jitter_window_ms: int = DEFAULT_JITTER_WINDOW_MS,
    backoff_base_ms: int = DEFAULT_BACKOFF_BASE_MS,
    rng: random.Random | None = None,
) -> int:
    """Delay in milliseconds until the monitor's next check should start.

    - never run before (``last_run_at`` is None): start-up jitter
    - retrying a failed attempt (``attempt`` >= 1): exponential backoff
    - otherwise: the full interval, measured from now so slow checks
      do not compress the cadence
    """
    if last_run_at is None:
        return initial_jitter(jitter_window_ms, rng)
    if attempt > 0:
        return retry_backoff(attempt, backoff_base_ms)
    return int(monitor.interval) * 1000
