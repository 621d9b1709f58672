"""Request/response chat endpoint session.

Some providers are reached through a single-shot ``chat-<provider>`` edge
function instead of a streaming connection:

    POST {"messages": [{"role", "content"}], "knowledgeContext": str | null}
    200  {"message": str, "model": str, "provider": str}
    5xx  {"error": str}

ChatEndpointSession exposes that endpoint behind the same session interface
as TransportSession so the orchestrator does not care which one it drives.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any

import aiohttp

from src.magus_live.auth import CredentialProvider
from src.magus_live.errors import AuthRequired, RemoteAPIError, SessionError
from src.magus_live.outbound_queue import OutboundQueue
from src.magus_live.session import ConversationSession, SessionState
from src.magus_live.transport.protocol import (
    ErrorEvent,
    SetupMessage,
    StreamComplete,
    StreamStart,
    TransportMessage,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatReply:
    """Reply returned by a chat endpoint."""

    message: str
    model: str | None = None
    provider: str | None = None


class ChatEndpointClient:
    """HTTP client for a ``chat-<provider>`` endpoint."""

    def __init__(
        self,
        url: str,
        credentials: CredentialProvider,
        timeout_s: float = 30.0,
    ) -> None:
        """Initialize chat client.

        Args:
            url: Full chat endpoint URL
            credentials: Supplies the caller's bearer token
            timeout_s: Total request timeout
        """
        self.url = url
        self.credentials = credentials
        self.timeout_s = timeout_s
        self._session: aiohttp.ClientSession | None = None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_s)
            )
        return self._session

    async def close(self) -> None:
        """Close aiohttp session."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def complete(
        self, messages: list[dict[str, str]], knowledge_context: str | None = None
    ) -> ChatReply:
        """Request a reply for the conversation so far.

        Args:
            messages: Conversation history as ``{"role", "content"}`` dicts
            knowledge_context: Supplementary knowledge text

        Returns:
            ChatReply from the provider

        Raises:
            AuthRequired: If no valid caller credential is available
            RemoteAPIError: On network failure, timeout, non-2xx status or a
                malformed response body
        """
        credential = await self.credentials.get_credential()
        if credential is None or not credential.is_valid:
            raise AuthRequired("Sign in to chat with the assistant")

        session = await self._ensure_session()
        payload = {"messages": messages, "knowledgeContext": knowledge_context}

        try:
            async with session.post(
                self.url, json=payload, headers=credential.authorization_header()
            ) as resp:
                try:
                    body: Any = await resp.json(content_type=None)
                except ValueError:
                    body = None
                status = resp.status
        except TimeoutError as e:
            raise RemoteAPIError(f"Chat request timed out after {self.timeout_s:g}s") from e
        except aiohttp.ClientError as e:
            raise RemoteAPIError(f"Chat request failed: {e}") from e

        if not isinstance(body, dict):
            raise RemoteAPIError(f"Chat endpoint returned an invalid body (HTTP {status})")
        if status >= 400 or "error" in body:
            raise RemoteAPIError(str(body.get("error") or f"Chat endpoint returned HTTP {status}"))

        message = body.get("message")
        if not isinstance(message, str):
            raise RemoteAPIError("Chat endpoint reply has no message")

        return ChatReply(message=message, model=body.get("model"), provider=body.get("provider"))


class ChatEndpointSession(ConversationSession):
    """Session over a request/response chat endpoint.

    There is no long-lived connection: connecting only records the setup and
    flushes queued turns. Each user text turn becomes one POST carrying the
    whole history; the reply is delivered as StreamStart followed by
    StreamComplete. A failed request yields an ErrorEvent and leaves the
    session connected.
    """

    def __init__(self, client: ChatEndpointClient, queue: OutboundQueue | None = None) -> None:
        super().__init__()
        self.client = client
        self.queue = queue or OutboundQueue()
        self.history: list[dict[str, str]] = []
        self._knowledge_context: str | None = None
        self._send_lock = asyncio.Lock()
        self._generation = 0

    @property
    def accepts_audio(self) -> bool:
        return False

    async def connect(self, setup: SetupMessage | None = None) -> bool:
        if setup is not None:
            self._knowledge_context = setup.knowledge_context

        if self.state not in (SessionState.DISCONNECTED, SessionState.ERRORED):
            return self.state == SessionState.CONNECTED

        started = time.monotonic()
        self.metrics.record_connect_attempt()
        self.transition_state(SessionState.CONNECTING)
        self.transition_state(SessionState.CONNECTED)
        self.metrics.record_connected(started)

        async with self._send_lock:
            await self.queue.flush(self._exchange, lambda: self.is_connected)
        return True

    async def send(self, message: TransportMessage) -> bool:
        if self.state != SessionState.CONNECTED:
            self.queue.enqueue(message)
            self.metrics.messages_queued += 1
            return False

        async with self._send_lock:
            if self.state != SessionState.CONNECTED:
                self.queue.enqueue(message)
                self.metrics.messages_queued += 1
                return False
            await self._exchange(message)
        return True

    async def _exchange(self, message: TransportMessage) -> None:
        if isinstance(message, SetupMessage):
            self._knowledge_context = message.knowledge_context
            return

        text = message.text
        if not text:
            logger.debug("Audio-only turn ignored by chat endpoint")
            return

        generation = self._generation
        self.history.append({"role": message.role, "content": text})
        self.metrics.messages_sent += 1
        self._emit(StreamStart())

        try:
            reply = await self.client.complete(list(self.history), self._knowledge_context)
        except SessionError as e:
            if generation != self._generation:
                return
            self.history.pop()
            self.last_error = e
            logger.error(
                "Chat request failed",
                extra={"session_id": self.session_id, "kind": e.kind.value, "error": e.message},
            )
            self._emit(ErrorEvent(message=e.message, kind=e.kind))
            return

        if generation != self._generation:
            return

        self.history.append({"role": "assistant", "content": reply.message})
        self._emit(StreamComplete(final_text=reply.message, provider=reply.provider))

    async def disconnect(self) -> None:
        self._generation += 1
        discarded = self.queue.clear()
        self.history.clear()

        if self.state != SessionState.DISCONNECTED:
            self.metrics.record_disconnected()
            self.transition_state(SessionState.DISCONNECTED)
            logger.info(
                "Session disconnected",
                extra={"session_id": self.session_id, "discarded": discarded},
            )

        await self.client.close()
