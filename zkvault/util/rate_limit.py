"""Exponential backoff for failed unlock attempts."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

from zkvault.config import Config
from zkvault.errors import RateLimited

logger = logging.getLogger("zkvault.rate_limit")


class RateLimiter:
    """Counts consecutive failures; each failure doubles (by *delay_base*) the wait."""

    def __init__(
        self,
        max_attempts: int = Config.MAX_UNLOCK_ATTEMPTS,
        delay_base: int = Config.UNLOCK_DELAY_BASE,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._max_attempts = max_attempts
        self._delay_base = delay_base
        self._clock = clock
        self.failures = 0
        self.last_failure: float = 0

    def required_delay(self) -> float:
        if self.failures == 0:
            return 0.0
        elapsed = self._clock() - self.last_failure
        return max(0.0, self._delay_base**self.failures - elapsed)

    def check(self) -> float:
        """Return seconds still to wait; raise while locked out.

        Once *max_attempts* failures accumulate, attempts are refused
        until the current backoff window has fully elapsed.
        """
        delay = self.required_delay()
        if self.failures >= self._max_attempts and delay > 0:
            logger.error("Maximum of %d unlock attempts exceeded", self._max_attempts)
            raise RateLimited(
                f"Exceeded the limit of {self._max_attempts} attempts. "
                "Wait before trying again.",
                retry_after=delay,
            )
        return delay

    async def wait(self) -> None:
        delay = self.check()
        if delay > 0:
            logger.warning("Rate limiting: waiting %.1fs", delay)
            await asyncio.sleep(delay)

    def record_failure(self) -> None:
        self.failures += 1
        self.last_failure = self._clock()

    def reset(self) -> None:
        self.failures = 0
        self.last_failure = 0
