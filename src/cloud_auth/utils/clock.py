"""Time sources used by credentials and retry policies."""

from __future__ import annotations

import time
from datetime import datetime, timezone


class Clock:
    """Wall-clock and monotonic time, swappable in tests."""

    def now(self) -> datetime:
        """Current time as a timezone-aware UTC datetime."""
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        """Seconds from an arbitrary fixed point, never going backwards."""
        return time.monotonic()


SYSTEM_CLOCK = Clock()
