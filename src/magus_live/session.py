"""Conversation session management.

Owns a single connection to a remote generative endpoint, tracks its
connection state, transmits outbound messages (queuing them while no
connection is usable) and delivers parsed inbound events to listeners in
arrival order.
"""

import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from src.magus_live.errors import ErrorKind, ProtocolError, SessionError, TransportError
from src.magus_live.outbound_queue import OutboundQueue
from src.magus_live.reconnect import ReconnectPolicy
from src.magus_live.transport.base import ChannelConnector, DuplexChannel
from src.magus_live.transport.codecs import FrameCodec
from src.magus_live.transport.protocol import (
    ClientTurnMessage,
    ErrorEvent,
    InboundEvent,
    SetupMessage,
    TransportMessage,
)
from src.magus_live.utils.logging import log_event

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Connection state machine states.

    State Transitions:
    - DISCONNECTED → CONNECTING (on connect)
    - CONNECTING → CONNECTED (channel open, setup sent)
    - CONNECTING/CONNECTED → DISCONNECTED (on failure, close or manual stop)
    - DISCONNECTED → RECONNECTING (retry scheduled after a failure)
    - RECONNECTING → CONNECTING (retry timer fired)
    - DISCONNECTED → ERRORED (reconnect attempts exhausted)
    - ERRORED → CONNECTING (explicit connect by the caller)
    """

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ERRORED = "errored"


# Valid state transitions
VALID_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.DISCONNECTED: {
        SessionState.CONNECTING,
        SessionState.RECONNECTING,
        SessionState.ERRORED,
    },
    SessionState.CONNECTING: {SessionState.CONNECTED, SessionState.DISCONNECTED},
    SessionState.CONNECTED: {SessionState.DISCONNECTED},
    SessionState.RECONNECTING: {SessionState.CONNECTING, SessionState.DISCONNECTED},
    SessionState.ERRORED: {SessionState.CONNECTING, SessionState.DISCONNECTED},
}

EventListener = Callable[[InboundEvent], None]
StateListener = Callable[[SessionState, SessionError | None], None]


@dataclass
class SessionMetrics:
    """Session connection and traffic metrics."""

    connect_attempts: int = 0
    connections: int = 0
    reconnects_scheduled: int = 0
    messages_sent: int = 0
    messages_queued: int = 0
    inbound_events: int = 0
    malformed_frames: int = 0
    reply_timeouts: int = 0

    last_connect_latency_ms: float | None = None  # Open start → Connected
    connected_since_ts: float | None = None
    session_start_ts: float = field(default_factory=time.monotonic)

    def record_connect_attempt(self) -> None:
        self.connect_attempts += 1

    def record_connected(self, started_ts: float) -> None:
        """Record a successful connection.

        Args:
            started_ts: Monotonic timestamp when the connect began
        """
        now = time.monotonic()
        self.connections += 1
        self.connected_since_ts = now
        self.last_connect_latency_ms = (now - started_ts) * 1000.0

    def record_disconnected(self) -> None:
        self.connected_since_ts = None


class ConversationSession(ABC):
    """Base class for sessions with a remote generative endpoint.

    Owns the state machine, listener registration and metrics shared by the
    streaming and request/response session implementations.
    """

    def __init__(self) -> None:
        self.session_id = uuid.uuid4().hex[:12]
        self.state: SessionState = SessionState.DISCONNECTED
        self.metrics = SessionMetrics()
        self.last_error: SessionError | None = None
        self._event_listeners: list[EventListener] = []
        self._state_listeners: list[StateListener] = []

    @property
    @abstractmethod
    def accepts_audio(self) -> bool:
        """Check if streaming microphone audio can be sent on this session."""
        pass

    @property
    def is_connected(self) -> bool:
        return self.state == SessionState.CONNECTED

    def add_event_listener(self, listener: EventListener) -> None:
        """Register a callback for inbound events (called in arrival order)."""
        self._event_listeners.append(listener)

    def add_state_listener(self, listener: StateListener) -> None:
        """Register a callback for state changes."""
        self._state_listeners.append(listener)

    @abstractmethod
    async def connect(self, setup: SetupMessage | None = None) -> bool:
        """Open the session.

        Args:
            setup: Session configuration; remembered for reconnects

        Returns:
            True if the session reached CONNECTED
        """
        pass

    @abstractmethod
    async def send(self, message: TransportMessage) -> bool:
        """Transmit a message, or queue it if not connected.

        Returns:
            True if transmitted now, False if queued
        """
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the session, discarding queued messages. Idempotent."""
        pass

    def transition_state(self, new_state: SessionState, error: SessionError | None = None) -> None:
        """Transition session to a new state with validation.

        Args:
            new_state: Target state
            error: Fault that caused the transition, if any

        Raises:
            ValueError: If transition is invalid
        """
        if new_state not in VALID_TRANSITIONS.get(self.state, set()):
            raise ValueError(f"Invalid state transition: {self.state.value} → {new_state.value}")

        old_state = self.state
        self.state = new_state
        if error is not None:
            self.last_error = error
        elif new_state == SessionState.CONNECTED:
            self.last_error = None

        logger.info(
            "Session state transition",
            extra={
                "session_id": self.session_id,
                "from_state": old_state.value,
                "to_state": new_state.value,
                "error": error.message if error else None,
            },
        )
        log_event(
            "session_state",
            {
                "session_id": self.session_id,
                "state": new_state.value,
                "error_kind": error.kind.value if error else None,
            },
        )

        for listener in list(self._state_listeners):
            try:
                listener(new_state, error)
            except Exception:
                logger.exception("State listener failed", extra={"session_id": self.session_id})

    def _emit(self, event: InboundEvent) -> None:
        self.metrics.inbound_events += 1
        for listener in list(self._event_listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "Event listener failed",
                    extra={"session_id": self.session_id, "event_type": event.type},
                )

    def get_metrics_summary(self) -> dict[str, str | float | int | None]:
        """Get session metrics summary for logging/monitoring.

        Returns:
            Dictionary of metric names to values
        """
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "connect_attempts": self.metrics.connect_attempts,
            "connections": self.metrics.connections,
            "reconnects_scheduled": self.metrics.reconnects_scheduled,
            "messages_sent": self.metrics.messages_sent,
            "messages_queued": self.metrics.messages_queued,
            "inbound_events": self.metrics.inbound_events,
            "malformed_frames": self.metrics.malformed_frames,
            "reply_timeouts": self.metrics.reply_timeouts,
            "last_connect_latency_ms": self.metrics.last_connect_latency_ms,
            "session_duration_s": time.monotonic() - self.metrics.session_start_ts,
        }


class TransportSession(ConversationSession):
    """Session over a duplex channel with queuing and automatic reconnect.

    Exactly one Setup message is transmitted as the first message on every
    connection. Nothing is written to a channel unless the session is
    CONNECTED; messages submitted in any other state wait in the outbound
    queue and are flushed in order on the next successful connection.
    Unsolicited connection loss defers to the ReconnectPolicy; a manual
    ``disconnect()`` cancels any pending retry.
    """

    def __init__(
        self,
        connector: ChannelConnector,
        codec: FrameCodec,
        policy: ReconnectPolicy | None = None,
        queue: OutboundQueue | None = None,
        connect_timeout_s: float = 10.0,
        reply_timeout_s: float | None = 30.0,
    ) -> None:
        """Initialize transport session.

        Args:
            connector: Opens channels to the remote endpoint
            codec: Wire codec for the endpoint
            policy: Reconnect policy (default: 5 attempts, 1s base delay)
            queue: Outbound queue (default: new empty queue)
            connect_timeout_s: Bound on each channel open
            reply_timeout_s: Bound on waiting for a reply to a completed
                user turn; None disables the reply timer
        """
        super().__init__()
        self.connector = connector
        self.codec = codec
        self.policy = policy or ReconnectPolicy()
        self.queue = queue or OutboundQueue()
        self.connect_timeout_s = connect_timeout_s
        self.reply_timeout_s = reply_timeout_s

        self._setup: SetupMessage | None = None
        self._channel: DuplexChannel | None = None
        self._receive_task: asyncio.Task[None] | None = None
        self._reply_timer: asyncio.TimerHandle | None = None
        self._send_lock = asyncio.Lock()
        # Bumped by disconnect() so in-flight connects know they are stale
        self._generation = 0

    @property
    def accepts_audio(self) -> bool:
        return self.codec.accepts_audio

    async def connect(self, setup: SetupMessage | None = None) -> bool:
        if setup is not None:
            self._setup = setup
        if self._setup is None:
            raise ValueError("A SetupMessage is required on the first connect")

        if self.state not in (
            SessionState.DISCONNECTED,
            SessionState.RECONNECTING,
            SessionState.ERRORED,
        ):
            logger.warning(
                "connect() ignored",
                extra={"session_id": self.session_id, "state": self.state.value},
            )
            return self.state == SessionState.CONNECTED

        self.policy.cancel()
        if self.state == SessionState.ERRORED:
            self.policy.reset()

        return await self._attempt_connect(self._generation)

    async def _reconnect(self) -> None:
        if self.state != SessionState.RECONNECTING:
            return
        await self._attempt_connect(self._generation)

    async def _attempt_connect(self, generation: int) -> bool:
        self.transition_state(SessionState.CONNECTING)
        self.metrics.record_connect_attempt()
        started = time.monotonic()

        logger.info(
            "Connecting",
            extra={
                "session_id": self.session_id,
                "endpoint": self.connector.endpoint,
                "reconnect_attempt": self.policy.attempts,
            },
        )

        channel: DuplexChannel | None = None
        error = TransportError("Connection failed")
        try:
            channel = await asyncio.wait_for(self.connector.open(), timeout=self.connect_timeout_s)
        except TimeoutError:
            error = TransportError(f"Connection timed out after {self.connect_timeout_s:g}s")
        except (ConnectionError, OSError) as e:
            error = TransportError(f"Connection failed: {e}")

        if generation != self._generation:
            # disconnect() ran while the channel was opening
            if channel is not None:
                await channel.close()
            return False

        if channel is None:
            await self._on_connection_lost(error)
            return False

        lost: ConnectionError | None = None
        async with self._send_lock:
            if generation != self._generation:
                # disconnect() ran while waiting for the send lock
                await channel.close()
                return False
            self._channel = channel
            self.transition_state(SessionState.CONNECTED)
            self.metrics.record_connected(started)
            self.policy.reset()
            self.codec.reset()
            self._receive_task = asyncio.create_task(self._receive_loop(channel))

            try:
                await self._transmit(self._setup)
                await self.queue.flush(self._transmit, lambda: self._channel is channel)
            except ConnectionError as e:
                lost = e

        if lost is not None:
            await self._on_connection_lost(TransportError(f"Connection lost: {lost}"), channel)

        return self.state == SessionState.CONNECTED

    async def send(self, message: TransportMessage) -> bool:
        if self.state != SessionState.CONNECTED:
            self.queue.enqueue(message)
            self.metrics.messages_queued += 1
            logger.debug(
                "Message queued while offline",
                extra={"session_id": self.session_id, "state": self.state.value},
            )
            return False

        lost: ConnectionError | None = None
        async with self._send_lock:
            channel = self._channel
            if self.state != SessionState.CONNECTED or not self.queue.is_empty():
                self.queue.enqueue(message)
                self.metrics.messages_queued += 1
                return False

            try:
                await self._transmit(message)
            except ConnectionError as e:
                self.queue.enqueue(message)
                self.metrics.messages_queued += 1
                lost = e

        if lost is not None:
            await self._on_connection_lost(TransportError(f"Connection lost: {lost}"), channel)
            return False
        return True

    async def _transmit(self, message: TransportMessage | None) -> None:
        if message is None:
            return

        frame = self.codec.encode(message)
        if frame is None:
            return

        if self._channel is None:
            raise ConnectionError("No open channel")

        await self._channel.send(frame)
        self.metrics.messages_sent += 1

        if isinstance(message, ClientTurnMessage) and message.turn_complete:
            self._arm_reply_timer()

    async def _receive_loop(self, channel: DuplexChannel) -> None:
        """Decode inbound frames and deliver events until the channel ends."""
        try:
            async for frame in channel.receive():
                try:
                    events = self.codec.decode(frame)
                except ProtocolError as e:
                    self.metrics.malformed_frames += 1
                    logger.warning(
                        "Dropped malformed frame",
                        extra={"session_id": self.session_id, "error": e.message},
                    )
                    continue

                for event in events:
                    self._disarm_reply_timer()
                    self._emit(event)
        except ConnectionError as e:
            error = TransportError(f"Connection lost: {e}")
        else:
            error = TransportError("Connection closed by remote endpoint")

        await self._on_connection_lost(error, channel)

    async def _on_connection_lost(
        self, error: TransportError, channel: DuplexChannel | None = None
    ) -> None:
        """Handle an unsolicited close or failure of the current connection."""
        if self.state not in (SessionState.CONNECTING, SessionState.CONNECTED):
            return
        if channel is not self._channel:
            return

        self._disarm_reply_timer()
        self._channel = None
        task, self._receive_task = self._receive_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

        self.metrics.record_disconnected()
        logger.warning(
            "Connection lost",
            extra={
                "session_id": self.session_id,
                "error": error.message,
                "pending": len(self.queue),
            },
        )
        self.transition_state(SessionState.DISCONNECTED, error)

        if self.policy.schedule(self._reconnect):
            self.metrics.reconnects_scheduled += 1
            self.transition_state(SessionState.RECONNECTING)
        else:
            self.transition_state(
                SessionState.ERRORED,
                TransportError(
                    f"Gave up after {self.policy.attempts} reconnect attempts: {error.message}"
                ),
            )

        if channel is not None:
            await channel.close()

    async def disconnect(self) -> None:
        self._generation += 1
        self.policy.cancel()
        self.policy.reset()
        self._disarm_reply_timer()

        channel, self._channel = self._channel, None
        task, self._receive_task = self._receive_task, None
        discarded = self.queue.clear()

        if self.state != SessionState.DISCONNECTED:
            self.metrics.record_disconnected()
            self.transition_state(SessionState.DISCONNECTED)
            logger.info(
                "Session disconnected",
                extra={"session_id": self.session_id, "discarded": discarded},
            )

        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if channel is not None:
            await channel.close()

    def _arm_reply_timer(self) -> None:
        if self.reply_timeout_s is None:
            return
        self._disarm_reply_timer()
        loop = asyncio.get_running_loop()
        self._reply_timer = loop.call_later(self.reply_timeout_s, self._on_reply_timeout)

    def _disarm_reply_timer(self) -> None:
        if self._reply_timer is not None:
            self._reply_timer.cancel()
            self._reply_timer = None

    def _on_reply_timeout(self) -> None:
        self._reply_timer = None
        self.metrics.reply_timeouts += 1
        logger.warning(
            "Reply timed out",
            extra={"session_id": self.session_id, "timeout_s": self.reply_timeout_s},
        )
        self._emit(
            ErrorEvent(
                message=f"Timed out waiting for a reply after {self.reply_timeout_s:g}s",
                kind=ErrorKind.TRANSPORT_ERROR,
            )
        )
