"""Bounded exponential backoff with jitter.

A policy instance tracks one logical operation (one send, one reconnect).
Waits are ``asyncio.sleep`` calls, so a retrying operation only ties up its
own task and is cancelled with it.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable

from pushlink.errors import RetryExhausted


@dataclass(frozen=True)
class BackoffConfig:
    attempts: int = 3
    base_ms: float = 1000.0
    jitter_ms: float = 500.0


SEND_BACKOFF = BackoffConfig(attempts=3, base_ms=1000.0)
RECONNECT_BACKOFF = BackoffConfig(attempts=5, base_ms=1000.0)


class RetryPolicy:
    def __init__(
        self,
        config: BackoffConfig = SEND_BACKOFF,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        if config.attempts < 1:
            raise ValueError("attempts must be >= 1")
        self.config = config
        self.max_attempts = config.attempts
        self.base_wait = config.base_ms
        self.attempts_left = config.attempts
        self.current_wait = config.base_ms
        self.waited_ms = 0.0
        self._sleep = sleep
        self._rng = rng or random.Random()

    def should_retry(self) -> bool:
        return self.attempts_left > 0

    async def on_failure(self) -> None:
        """Record a failed attempt and wait before the next one.

        Raises RetryExhausted (without waiting) when no attempts remain.
        """
        self.attempts_left -= 1
        if not self.should_retry():
            raise RetryExhausted(self.max_attempts, self.waited_ms)
        await self._sleep(self.current_wait / 1000.0)
        self.waited_ms += self.current_wait
        self.current_wait = self.current_wait * 2 + self._jitter()

    def on_success(self) -> None:
        self.attempts_left = 0

    def reset(self) -> None:
        self.attempts_left = self.max_attempts
        self.current_wait = self.base_wait
        self.waited_ms = 0.0

    def _jitter(self) -> float:
        # Integer milliseconds in [0, jitter_ms).
        bound = int(self.config.jitter_ms)
        if bound <= 0:
            return 0.0
        return float(self._rng.randrange(bound))
