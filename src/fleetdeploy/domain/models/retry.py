"""Retry and cancellation value objects."""

from __future__ import annotations

import asyncio
import random

from pydantic import Field

from fleetdeploy.domain.models.base import ValueObject


class RetryPolicy(ValueObject):
    """Bounded exponential backoff with proportional jitter.

    ``delay_for(n)`` is the pause taken after the n-th failed attempt:
    ``base_delay * multiplier ** (n - 1)``, capped at ``max_delay`` and then
    spread by up to ``±jitter`` of its value.
    """

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    jitter: float = Field(default=0.1, ge=0, le=1)

    def delay_for(self, attempt: int, rng: random.Random | None = None) -> float:
        if attempt < 1:
            raise ValueError("attempt numbers start at 1")
        delay = min(self.base_delay * self.multiplier ** (attempt - 1), self.max_delay)
        if self.jitter and delay:
            spread = delay * self.jitter
            delay += (rng or random).uniform(-spread, spread)
        return max(delay, 0.0)

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts

    @classmethod
    def no_retry(cls) -> RetryPolicy:
        return cls(max_attempts=1, base_delay=0.0, jitter=0.0)


class CancellationToken:
    """Cooperative abort signal shared by a portfolio run.

    Raising it stops new domain runs from starting; runs already in flight are
    left to reach a terminal state.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason = ""

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    async def wait(self) -> None:
        await self._event.wait()
