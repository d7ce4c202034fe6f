"""Rate limiting data models.

This module contains dataclasses for fixed-window bucket state,
admission results and per-route policies.
"""

import time
from dataclasses import dataclass
from typing import Callable, Optional

# Clock returning the current instant in epoch milliseconds
Clock = Callable[[], int]


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class RateBucket:
    """Fixed-window state for one key.

    Buckets are immutable; an admission stores a replacement bucket.
    """
    key: str
    remaining: int
    reset_at: int

    def expired(self, now: int) -> bool:
        return now >= self.reset_at


@dataclass
class AdmissionResult:
    """Result of a rate governor admission check."""
    allowed: bool
    remaining: int
    reset_at: int
    limit: int
    error: Optional[str] = None


@dataclass(frozen=True)
class RateLimitPolicy:
    """Per-call-site rate limit configuration."""
    limit: int
    window_ms: int
    key_prefix: str

    def __post_init__(self):
        if self.limit < 1:
            raise ValueError("limit must be at least 1")
        if self.window_ms < 1:
            raise ValueError("window_ms must be at least 1")

    def key_for(self, identity: str) -> str:
        """Admission key for an identity, scoped to this call site."""
        return f"{self.key_prefix}:{identity}"
