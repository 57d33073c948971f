"""Deadline shared by everything running under one retry wrapper."""

from __future__ import annotations

import time
from dataclasses import dataclass

# The login interaction includes the operator's time at the browser.
AUTH_FLOW_TIMEOUT_SECONDS = 120.0


@dataclass(frozen=True)
class Deadline:
    """An absolute point in (monotonic) time."""

    expires_at: float

    @classmethod
    def after(cls, seconds: float) -> "Deadline":
        return cls(time.monotonic() + seconds)

    def remaining(self) -> float:
        return max(0.0, self.expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def timeout(self, cap: float | None = None) -> float:
        """Seconds left, optionally capped (e.g. by a per-call timeout)."""
        remaining = self.remaining()
        if cap is None:
            return remaining
        return min(remaining, cap)
