"""Time source and backoff delay helpers.

Everything in the broker that reads the time or waits goes through a Clock,
so tests can substitute a recording clock instead of sleeping.

Waits are always ``asyncio.sleep``; no operation blocks the event loop.
"""

from __future__ import annotations

__all__ = [
    "Clock",
    "backoff_delay",
    "parse_retry_after",
]

import asyncio
import math
import random
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime


class Clock:
    """Wall-clock, monotonic clock and cooperative sleep."""

    def now(self) -> float:
        """Current unix time in seconds (used for token expiry)."""
        return time.time()

    def monotonic(self) -> float:
        """Monotonic seconds (used for measuring waits)."""
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        """Yield to the event loop for ``seconds`` (no-op when <= 0)."""
        if seconds <= 0:
            return
        await asyncio.sleep(seconds)


def backoff_delay(
    attempt: int,
    base: float,
    cap: float,
    jitter: float = 0.0,
    rng: random.Random | None = None,
) -> float:
    """Capped exponential backoff with additive random jitter.

    Args:
        attempt: Zero-based attempt index.
        base: Delay for attempt 0 (seconds).
        cap: Upper bound for the exponential part (seconds).
        jitter: Maximum random seconds added on top.
        rng: Random source (module-level random if None).

    Returns:
        ``min(base * 2**attempt, cap) + uniform(0, jitter)``.
    """
    delay = min(base * (2**attempt), cap)
    if jitter > 0:
        delay += (rng or random).uniform(0, jitter)
    return delay


def parse_retry_after(value: str | None, now: float | None = None) -> float | None:
    """Parse a Retry-After header value.

    Accepts delta-seconds ("2", "1.5") or an HTTP-date.

    Args:
        value: Raw header value.
        now: Current unix time for HTTP-date conversion (time.time() if None).

    Returns:
        Seconds to wait (never negative), or None if absent or unparseable.
    """
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None

    try:
        seconds = float(value)
    except ValueError:
        pass
    else:
        if not math.isfinite(seconds) or seconds < 0:
            return None
        return seconds

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    reference = now if now is not None else datetime.now(timezone.utc).timestamp()
    return max(0.0, when.timestamp() - reference)
