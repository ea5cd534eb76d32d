"""
Bounded exponential backoff as an explicit state machine.

A RetryState is advanced once per failed attempt. advance() either moves it
to the next attempt (setting the delay to wait) or reports exhaustion; the
caller owns the loop and the sleeping.
"""

import time
from typing import Callable, Optional

from pydantic import BaseModel, Field


class RetryPolicy(BaseModel):
    """Limits for retrying transient failures."""

    max_attempts: int = Field(ge=1, default=5)
    base_delay_seconds: float = Field(ge=0, default=1.0)
    max_delay_seconds: float = Field(ge=0, default=30.0)
    deadline_seconds: Optional[float] = None   # Total budget across attempts

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after ``attempt`` failed (1-based)."""
        return min(self.max_delay_seconds, self.base_delay_seconds * (2 ** (attempt - 1)))

    def start(self, clock: Callable[[], float] = time.monotonic) -> "RetryState":
        return RetryState(self, clock)


class RetryState:
    """Attempt counter, next delay and deadline for one retried operation."""

    def __init__(self, policy: RetryPolicy, clock: Callable[[], float] = time.monotonic):
        self.policy = policy
        self.attempt = 1
        self.delay = 0.0
        self.last_error: Optional[Exception] = None
        self.exhausted = False
        self._clock = clock
        self._deadline = (
            clock() + policy.deadline_seconds
            if policy.deadline_seconds is not None
            else None
        )

    def advance(self, error: Exception) -> bool:
        """
        Record a failed attempt. Returns True when another attempt is
        allowed; False for non-transient errors or an exhausted budget.
        """
        self.last_error = error
        if not getattr(error, "transient", False):
            self.exhausted = True
            return False
        if self.attempt >= self.policy.max_attempts:
            self.exhausted = True
            return False

        delay = self.policy.delay_for(self.attempt)
        if self._deadline is not None and self._clock() + delay > self._deadline:
            self.exhausted = True
            return False

        self.attempt += 1
        self.delay = delay
        return True
