"""
core/deadline.py -- Per-request deadline value object.

A Deadline is created once at the edge of an operation (authorize, refresh,
login) and handed down to every store call beneath it. Each store call checks
it before touching the database, so a slow request fails closed instead of
running past its allotted time.

Monotonic time is used so wall-clock adjustments cannot extend a deadline.

Layer rule: core/ is the kernel. No imports from api/, auth/, or cache/.
"""

from __future__ import annotations

import time
from dataclasses import dataclass


class DeadlineExceeded(Exception):
    """Raised by Deadline.check(). The auth layer re-raises it as a typed Timeout."""

    def __init__(self, operation: str) -> None:
        super().__init__(f"Deadline exceeded during {operation}")
        self.operation = operation


@dataclass(frozen=True)
class Deadline:
    """An absolute point on the monotonic clock after which work must stop."""

    expires_at: float

    @classmethod
    def after(cls, seconds: float) -> Deadline:
        return cls(time.monotonic() + seconds)

    def remaining(self) -> float:
        return max(0.0, self.expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return time.monotonic() >= self.expires_at

    def check(self, operation: str) -> None:
        if self.expired:
            raise DeadlineExceeded(operation)
