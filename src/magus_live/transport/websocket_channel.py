"""WebSocket channel implementation.

Provides websockets-based duplex channels to the live generative endpoint
and to the stream-<provider> relay functions.
"""

import logging
import re
from collections.abc import AsyncIterator

import websockets
from websockets.asyncio.client import ClientConnection
from websockets.protocol import State

from src.magus_live.transport.base import ChannelConnector, DuplexChannel

logger = logging.getLogger(__name__)

_KEY_PATTERN = re.compile(r"(key=)[^&]+")


def redact_url(url: str) -> str:
    """Hide API keys embedded in endpoint URLs."""
    return _KEY_PATTERN.sub(r"\1***", url)


class WebSocketChannel(DuplexChannel):
    """WebSocket-based duplex channel."""

    def __init__(self, websocket: ClientConnection) -> None:
        """Initialize WebSocket channel.

        Args:
            websocket: Open client connection
        """
        self._websocket = websocket
        self._closed = False

    @property
    def is_open(self) -> bool:
        return not self._closed and self._websocket.state == State.OPEN

    async def send(self, frame: str) -> None:
        if not self.is_open:
            raise ConnectionError("WebSocket connection is closed")

        try:
            await self._websocket.send(frame)
        except websockets.exceptions.ConnectionClosed as e:
            self._closed = True
            raise ConnectionError(f"WebSocket connection closed: {e}") from e

    async def receive(self) -> AsyncIterator[str | bytes]:
        try:
            async for raw_message in self._websocket:
                yield raw_message
        except websockets.exceptions.ConnectionClosedOK:
            self._closed = True
        except websockets.exceptions.ConnectionClosed as e:
            self._closed = True
            raise ConnectionError(f"WebSocket connection lost: {e}") from e
        else:
            self._closed = True

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._websocket.close()
        except websockets.exceptions.WebSocketException as e:
            logger.debug("WebSocket close failed (non-critical)", extra={"error": str(e)})


class WebSocketConnector(ChannelConnector):
    """Opens WebSocket channels to a fixed URL."""

    def __init__(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        max_message_size: int | None = 16 * 1024 * 1024,
    ) -> None:
        """Initialize connector.

        Args:
            url: ws:// or wss:// endpoint URL
            headers: Extra handshake headers (e.g. Authorization)
            max_message_size: Largest accepted inbound frame in bytes
        """
        self.url = url
        self.headers = headers or {}
        self.max_message_size = max_message_size

    @property
    def endpoint(self) -> str:
        return redact_url(self.url)

    async def open(self) -> DuplexChannel:
        try:
            websocket = await websockets.connect(
                self.url,
                additional_headers=self.headers or None,
                max_size=self.max_message_size,
            )
        except (websockets.exceptions.WebSocketException, OSError) as e:
            raise ConnectionError(f"WebSocket handshake failed: {e}") from e

        logger.info("WebSocket connected", extra={"endpoint": self.endpoint})
        return WebSocketChannel(websocket)
