"""Outbound message queue.

Buffers messages submitted while no connection is usable and drains them in
submission order once the session is connected. The queue is unbounded:
nothing is dropped during an outage, and ``clear`` on manual stop is the only
way messages leave without being sent.
"""

import logging
from collections import deque
from collections.abc import Awaitable, Callable

from src.magus_live.transport.protocol import TransportMessage

logger = logging.getLogger(__name__)


class OutboundQueue:
    """FIFO queue of pending TransportMessages."""

    def __init__(self) -> None:
        self._messages: deque[TransportMessage] = deque()
        self.total_enqueued = 0
        self.total_flushed = 0

    def __len__(self) -> int:
        return len(self._messages)

    def is_empty(self) -> bool:
        """Check if the queue is empty."""
        return not self._messages

    def enqueue(self, message: TransportMessage) -> None:
        """Append a message to the tail."""
        self._messages.append(message)
        self.total_enqueued += 1

    def peek(self) -> TransportMessage | None:
        """View the oldest message without removing it."""
        return self._messages[0] if self._messages else None

    async def flush(
        self,
        send: Callable[[TransportMessage], Awaitable[None]],
        can_send: Callable[[], bool],
    ) -> int:
        """Send queued messages strictly in FIFO order, one at a time.

        Each message is removed only after its send completed, so a message
        whose send fails stays at the head for the next connection. Messages
        enqueued while flushing are drained in the same pass.

        Args:
            send: Coroutine transmitting one message; raises on failure
            can_send: Returns False once the connection is no longer usable

        Returns:
            Number of messages sent

        Raises:
            Exception: Whatever ``send`` raised; unsent messages stay queued
        """
        sent = 0
        while self._messages and can_send():
            await send(self._messages[0])
            self._messages.popleft()
            sent += 1
            self.total_flushed += 1

        if sent:
            logger.debug("Outbound queue flushed", extra={"sent": sent, "remaining": len(self)})
        return sent

    def clear(self) -> int:
        """Discard all pending messages.

        Returns:
            Number of messages discarded
        """
        discarded = len(self._messages)
        self._messages.clear()
        if discarded:
            logger.info("Outbound queue cleared", extra={"discarded": discarded})
        return discarded

    def snapshot(self) -> dict[str, int]:
        """Lightweight snapshot for logging."""
        return {
            "pending": len(self._messages),
            "total_enqueued": self.total_enqueued,
            "total_flushed": self.total_flushed,
        }
