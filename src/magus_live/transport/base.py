"""Base channel abstraction for remote endpoint connections.

Defines the interface that raw duplex channel implementations (WebSocket,
in-memory test channels) must implement so the session layer can own state,
queuing and reconnection independently of the socket library.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator


class DuplexChannel(ABC):
    """A single open, bidirectional text-frame connection."""

    @abstractmethod
    async def send(self, frame: str) -> None:
        """Send one text frame.

        Args:
            frame: JSON-encoded frame

        Raises:
            ConnectionError: If the connection is closed or broken
        """
        pass

    @abstractmethod
    def receive(self) -> AsyncIterator[str | bytes]:
        """Receive frames from the remote endpoint.

        Yields frames in arrival order and returns when the remote side
        closes the connection.

        Raises:
            ConnectionError: If the connection breaks abnormally
        """

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Safe to call multiple times."""
        pass

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Check if the connection is still usable."""
        pass


class ChannelConnector(ABC):
    """Opens DuplexChannels to a remote endpoint."""

    @abstractmethod
    async def open(self) -> DuplexChannel:
        """Open a new channel.

        Returns:
            DuplexChannel: Connected channel

        Raises:
            ConnectionError: If the handshake fails
            OSError: On network failures
        """
        pass

    @property
    @abstractmethod
    def endpoint(self) -> str:
        """Endpoint description for logging (secrets redacted)."""
        pass
