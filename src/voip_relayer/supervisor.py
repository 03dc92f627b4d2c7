"""Restart loop around relay sessions.

A session ends when its log stream ends or when setting it up fails. The
supervisor logs the cause, waits according to its RestartPolicy and starts a
fresh session. It only exits when stopped.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from voip_relayer.config import Settings
from voip_relayer.exceptions import TransportSetupFailure

logger = logging.getLogger(__name__)


@dataclass
class RestartPolicy:
    """Bounded exponential backoff with a circuit breaker.

    After `breaker_threshold` consecutive failed sessions the breaker opens
    and every further restart waits `breaker_cooldown`. A session that
    handled at least one log closes it again.
    """

    base_delay: float = 1.0
    max_delay: float = 60.0
    jitter: float = 0.5
    breaker_threshold: int = 10
    breaker_cooldown: float = 300.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RestartPolicy":
        return cls(
            base_delay=settings.restart_base_delay,
            max_delay=settings.restart_max_delay,
            jitter=settings.restart_jitter,
            breaker_threshold=settings.restart_breaker_threshold,
            breaker_cooldown=settings.restart_breaker_cooldown,
        )

    def breaker_open(self, consecutive_failures: int) -> bool:
        return 0 < self.breaker_threshold <= consecutive_failures

    def delay_for(self, consecutive_failures: int) -> float:
        """Seconds to wait before the next session."""
        if consecutive_failures <= 0:
            return 0.0
        if self.breaker_open(consecutive_failures):
            return self.breaker_cooldown
        if self.base_delay <= 0:
            return 0.0

        delay = min(self.base_delay * (2 ** (consecutive_failures - 1)), self.max_delay)
        if self.jitter > 0:
            delay += random.uniform(0, self.jitter)
        return delay


class Supervisor:
    """Runs `run_session` forever, restarting it whenever it returns or fails."""

    def __init__(
        self,
        run_session: Callable[[], Awaitable[Any]],
        policy: Optional[RestartPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.run_session = run_session
        self.policy = policy or RestartPolicy()
        self._sleep = sleep
        self._running = False
        self.sessions = 0
        self.consecutive_failures = 0

    @property
    def is_running(self) -> bool:
        return self._running

    def stop(self) -> None:
        """Exit the loop once the current session or wait finishes."""
        self._running = False

    def _record_session(self, result: Any) -> None:
        received = getattr(result, "received", 0) or 0
        if received > 0:
            if self.consecutive_failures:
                logger.info("Session made progress, resetting restart backoff")
            self.consecutive_failures = 0
        else:
            self.consecutive_failures += 1

    async def run_forever(self) -> None:
        self._running = True
        logger.info("Supervisor started")

        while self._running:
            self.sessions += 1
            logger.info(f"Starting relay session #{self.sessions}")
            try:
                result = await self.run_session()
            except TransportSetupFailure as e:
                self.consecutive_failures += 1
                logger.error(f"Relayer error: {e}")
            except Exception as e:
                self.consecutive_failures += 1
                logger.exception(f"Relayer session failed: {e}")
            else:
                self._record_session(result)
                logger.warning("Log stream ended, restarting relayer")

            if not self._running:
                break

            delay = self.policy.delay_for(self.consecutive_failures)
            if self.policy.breaker_open(self.consecutive_failures):
                logger.error(
                    f"{self.consecutive_failures} consecutive failed sessions, "
                    f"cooling down for {delay:.0f}s"
                )
            elif delay > 0:
                logger.info(f"Restarting in {delay:.1f}s")
            if delay > 0:
                await self._sleep(delay)

        logger.info(f"Supervisor stopped after {self.sessions} sessions")
