"""Reconnection policy.

Schedules re-establishment of a dropped connection with a linearly
increasing delay (``base_delay * attempt``, attempts counted from 1) and
gives up after ``max_attempts`` consecutive failures.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class ReconnectPolicy:
    """Owns the reconnect attempt counter and the pending retry timer.

    Attributes:
        max_attempts: Reconnect attempts allowed before giving up
        base_delay_s: Delay unit in seconds
        delays: Delays scheduled since the last reset (for observability)
    """

    def __init__(self, max_attempts: int = 5, base_delay_ms: int = 1000) -> None:
        """Initialize policy.

        Args:
            max_attempts: Attempt cap (>= 0)
            base_delay_ms: Delay unit in milliseconds (>= 0)
        """
        if max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")
        if base_delay_ms < 0:
            raise ValueError("base_delay_ms must be >= 0")

        self.max_attempts = max_attempts
        self.base_delay_s = base_delay_ms / 1000.0
        self.delays: list[float] = []
        self._attempts = 0
        self._task: asyncio.Task[None] | None = None

    @property
    def attempts(self) -> int:
        """Reconnect attempts made since the last successful connection."""
        return self._attempts

    @property
    def exhausted(self) -> bool:
        """Check if no further attempt is allowed."""
        return self._attempts >= self.max_attempts

    @property
    def is_pending(self) -> bool:
        """Check if a retry timer is scheduled and has not fired yet."""
        return self._task is not None and not self._task.done()

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds before reconnect attempt N (N >= 1)."""
        return self.base_delay_s * attempt

    def schedule(self, reconnect: Callable[[], Awaitable[object]]) -> bool:
        """Schedule the next reconnect attempt.

        Args:
            reconnect: Coroutine function performing the connect

        Returns:
            True if an attempt was scheduled, False if attempts are exhausted
        """
        if self.exhausted:
            logger.error(
                "Reconnect attempts exhausted",
                extra={"attempts": self._attempts, "max_attempts": self.max_attempts},
            )
            return False

        self._attempts += 1
        delay = self.delay_for(self._attempts)
        self.delays.append(delay)

        logger.info(
            "Reconnect scheduled",
            extra={"attempt": self._attempts, "max_attempts": self.max_attempts, "delay_s": delay},
        )
        self._task = asyncio.create_task(self._run(delay, reconnect))
        return True

    async def _run(self, delay: float, reconnect: Callable[[], Awaitable[object]]) -> None:
        await asyncio.sleep(delay)
        await reconnect()

    def cancel(self) -> None:
        """Cancel the pending retry, including one already inside its connect.

        Called from within the retry task itself, this only forgets the task.
        """
        task, self._task = self._task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        logger.debug("Pending reconnect cancelled")

    def reset(self) -> None:
        """Reset the attempt counter and forget scheduled delays."""
        self._attempts = 0
        self.delays = []
