"""Conversation orchestrator.

Public-facing controller for one voice conversation: acquires the
microphone, drives a ConversationSession, streams encoded audio into it,
and turns inbound events into reply text, played audio and a status
snapshot for the hosting UI. Faults never escape this boundary; they are
reported through ``status`` instead.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any

from src.magus_live.audio.capture import AudioCapture
from src.magus_live.audio.codec import (
    CAPTURE_SAMPLE_RATE_HZ,
    PLAYBACK_SAMPLE_RATE_HZ,
    decode_pcm16,
    encode_pcm16,
    pcm_mime_type,
    sample_rate_from_mime,
)
from src.magus_live.audio.player import AudioPlayer
from src.magus_live.auth import CredentialProvider
from src.magus_live.config import DEFAULT_SYSTEM_PROMPT
from src.magus_live.errors import AuthRequired, ErrorKind, RemoteAPIError, SessionError
from src.magus_live.providers.speech import ReplySpeaker
from src.magus_live.session import ConversationSession, SessionState
from src.magus_live.transport.protocol import (
    ClientTurnMessage,
    ConnectionEstablished,
    ErrorEvent,
    InboundEvent,
    ModelTurn,
    SetupMessage,
    StreamChunk,
    StreamComplete,
    StreamStart,
)

logger = logging.getLogger(__name__)

KNOWLEDGE_CONTEXT_PREFIX = "Contexto adicional: "


@dataclass(frozen=True)
class SessionStatus:
    """Read-only status snapshot exposed to the UI."""

    state: SessionState = SessionState.DISCONNECTED
    last_error: str | None = None
    error_kind: ErrorKind | None = None
    last_text: str = ""
    muted: bool = False
    responding: bool = False


@dataclass(frozen=True)
class StartResult:
    """Outcome of ``start_conversation``.

    Attributes:
        ok: True if the conversation is running (connected or reconnecting)
        error: Fault that prevented or degraded the start, if any
        already_active: True if the call was ignored because a conversation
            was already started or starting
    """

    ok: bool
    error: SessionError | None = None
    already_active: bool = False


StatusListener = Callable[[SessionStatus], None]


@dataclass
class _TurnState:
    text: str = ""
    audio_received: bool = False


class SessionOrchestrator:
    """Starts, stops and routes one conversation.

    Owns its capture device, player and session exclusively; several
    orchestrators can run side by side without sharing state.
    """

    def __init__(
        self,
        session: ConversationSession,
        capture: AudioCapture,
        player: AudioPlayer,
        credentials: CredentialProvider,
        speaker: ReplySpeaker | None = None,
        model: str = "models/gemini-2.0-flash-exp",
        generation_config: dict[str, Any] | None = None,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        capture_sample_rate: int = CAPTURE_SAMPLE_RATE_HZ,
        playback_sample_rate: int = PLAYBACK_SAMPLE_RATE_HZ,
        on_status: StatusListener | None = None,
    ) -> None:
        """Initialize orchestrator.

        Args:
            session: Streaming or request/response session
            capture: Microphone source
            player: Output for audio replies
            credentials: External identity collaborator
            speaker: Voices text-only replies (None disables spoken replies)
            model: Model identifier sent in the setup message
            generation_config: Provider generation parameters
            system_prompt: Base system instruction
            capture_sample_rate: Sample rate of captured chunks in Hz
            playback_sample_rate: Rate of reply audio whose mime type carries none
            on_status: Called with a new snapshot whenever status changes
        """
        self.session = session
        self.capture = capture
        self.player = player
        self.credentials = credentials
        self.speaker = speaker
        self.model = model
        self.generation_config = generation_config or {}
        self.system_prompt = system_prompt
        self.capture_sample_rate = capture_sample_rate
        self.playback_sample_rate = playback_sample_rate
        self.on_status = on_status

        self._status = SessionStatus()
        self._turn = _TurnState()
        self._starting = False
        self._started = False
        # Bumped by stop_conversation() so an in-flight start knows it was superseded
        self._stop_generation = 0
        self._pump_task: asyncio.Task[None] | None = None
        self._speech_task: asyncio.Task[None] | None = None

        session.add_event_listener(self._on_event)
        session.add_state_listener(self._on_state)

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def is_active(self) -> bool:
        return self._started

    def _update_status(self, **changes: Any) -> None:
        self._status = replace(self._status, **changes)
        if self.on_status is not None:
            try:
                self.on_status(self._status)
            except Exception:
                logger.exception("Status listener failed")

    def _report_error(self, error: SessionError) -> None:
        self._update_status(last_error=error.message, error_kind=error.kind)

    def build_setup(self, knowledge_context: str | None = None) -> SetupMessage:
        """Build the per-connection setup message.

        Knowledge context, when given, is appended to the system prompt.
        """
        instruction = self.system_prompt
        if knowledge_context:
            instruction = f"{instruction}\n\n{KNOWLEDGE_CONTEXT_PREFIX}{knowledge_context}"
        return SetupMessage(
            model=self.model,
            generation_config=self.generation_config,
            system_instruction=instruction,
            knowledge_context=knowledge_context or None,
        )

    async def start_conversation(self, knowledge_context: str | None = None) -> StartResult:
        """Start a conversation.

        Checks the caller credential, acquires the microphone, connects the
        session and starts streaming microphone audio to it. Calls made
        while a conversation is starting or running are ignored, except that
        a conversation whose reconnects were exhausted connects again.

        Args:
            knowledge_context: Supplementary text for the system prompt

        Returns:
            StartResult; ``error`` is AuthRequired or DeviceUnavailable when
            nothing was connected
        """
        if self._started and not self._starting and self.session.state == SessionState.ERRORED:
            return await self._restart_errored()

        if self._starting or self._started:
            logger.warning("start_conversation() ignored: conversation already active")
            return StartResult(ok=True, already_active=True)

        generation = self._stop_generation
        self._starting = True
        try:
            credential = await self.credentials.get_credential()
            if generation != self._stop_generation:
                return self._superseded()
            if credential is None or not credential.is_valid:
                return self._reject(AuthRequired("Sign in to start a conversation"))

            try:
                await self.capture.start()
            except SessionError as e:
                return self._reject(e)
            if generation != self._stop_generation:
                await self.capture.stop()
                return self._superseded()

            self._started = True
            self._turn = _TurnState()
            self._update_status(last_error=None, error_kind=None, last_text="", responding=False)

            connected = await self.session.connect(self.build_setup(knowledge_context))
            if generation != self._stop_generation:
                return self._superseded()

            if self.session.accepts_audio:
                self._pump_task = asyncio.create_task(self._pump_audio())

            logger.info(
                "Conversation started",
                extra={
                    "session_id": self.session.session_id,
                    "state": self.session.state.value,
                    "streams_audio": self.session.accepts_audio,
                },
            )
            if connected:
                return StartResult(ok=True)
            return StartResult(
                ok=self.session.state != SessionState.ERRORED, error=self.session.last_error
            )
        finally:
            self._starting = False

    async def _restart_errored(self) -> StartResult:
        self._starting = True
        try:
            logger.info(
                "Reconnecting errored session", extra={"session_id": self.session.session_id}
            )
            if await self.session.connect():
                return StartResult(ok=True)
            return StartResult(
                ok=self.session.state != SessionState.ERRORED, error=self.session.last_error
            )
        finally:
            self._starting = False

    def _superseded(self) -> StartResult:
        logger.info("Conversation start abandoned: stopped while starting")
        return StartResult(ok=False)

    def _reject(self, error: SessionError) -> StartResult:
        logger.warning(
            "Conversation start rejected",
            extra={"kind": error.kind.value, "error": error.message},
        )
        self._report_error(error)
        return StartResult(ok=False, error=error)

    async def stop_conversation(self) -> None:
        """Stop the conversation. Always succeeds; repeated calls are no-ops."""
        self._started = False
        self._stop_generation += 1

        for task in (self._pump_task, self._speech_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._pump_task = None
        self._speech_task = None

        self._stop_speech_output()
        await self.capture.stop()
        await self.session.disconnect()
        if self.speaker is not None:
            await self.speaker.close()

        self._turn = _TurnState()
        self._update_status(state=SessionState.DISCONNECTED, responding=False)
        logger.info(
            "Conversation stopped",
            extra={"session_id": self.session.session_id, **self._metrics_extra()},
        )

    def toggle_mute(self) -> bool:
        """Toggle muting of reply audio. Text replies are still surfaced.

        Returns:
            New muted value
        """
        muted = not self._status.muted
        if muted:
            self._stop_speech_output()
        self._update_status(muted=muted)
        logger.info("Mute toggled", extra={"muted": muted})
        return muted

    async def send_text(self, text: str) -> bool:
        """Submit a typed user turn.

        Returns:
            True if transmitted now, False if queued or ignored
        """
        text = text.strip()
        if not text:
            return False
        try:
            return await self.session.send(ClientTurnMessage.from_text(text))
        except SessionError as e:
            self._report_error(e)
            return False

    def stop_speaking(self) -> None:
        """Interrupt the reply currently being played or spoken."""
        if self._speech_task is not None and not self._speech_task.done():
            self._speech_task.cancel()
        self._speech_task = None
        self._stop_speech_output()

    def _stop_speech_output(self) -> None:
        if self.speaker is not None:
            self.speaker.stop()
        else:
            self.player.stop()

    async def _pump_audio(self) -> None:
        """Encode captured chunks and send them as streaming audio turns."""
        mime_type = pcm_mime_type(self.capture_sample_rate)
        try:
            async for chunk in self.capture.chunks():
                message = ClientTurnMessage.from_audio(encode_pcm16(chunk), mime_type)
                await self.session.send(message)
        except SessionError as e:
            logger.error(
                "Audio streaming stopped", extra={"kind": e.kind.value, "error": e.message}
            )
            self._report_error(e)

    def _on_state(self, state: SessionState, error: SessionError | None) -> None:
        if error is not None:
            self._update_status(state=state, last_error=error.message, error_kind=error.kind)
        elif state == SessionState.CONNECTED:
            self._update_status(state=state, last_error=None, error_kind=None)
        else:
            self._update_status(state=state)

    def _on_event(self, event: InboundEvent) -> None:
        if isinstance(event, ConnectionEstablished):
            logger.debug("Connection established", extra={"greeting": event.message})

        elif isinstance(event, StreamStart):
            self.stop_speaking()
            self._turn = _TurnState()
            self._update_status(responding=True)

        elif isinstance(event, StreamChunk):
            self._turn.text = event.cumulative_text
            self._update_status(last_text=event.cumulative_text)

        elif isinstance(event, ModelTurn):
            if event.text_part:
                self._turn.text += event.text_part
                self._update_status(last_text=self._turn.text)
            if event.audio_part:
                self._turn.audio_received = True
                self._play_reply_audio(event.audio_part, event.audio_mime_type)

        elif isinstance(event, StreamComplete):
            final_text = event.final_text or self._turn.text
            self._update_status(last_text=final_text, responding=False)
            if final_text and not self._turn.audio_received and not self._status.muted:
                self._speak(final_text)

        elif isinstance(event, ErrorEvent):
            logger.warning(
                "Session reported an error",
                extra={"kind": event.kind.value, "error": event.message},
            )
            self._update_status(last_error=event.message, error_kind=event.kind, responding=False)

    def _play_reply_audio(self, audio: bytes, mime_type: str | None) -> None:
        if self._status.muted:
            return
        rate = sample_rate_from_mime(mime_type or "", default=self.playback_sample_rate)
        buffer = decode_pcm16(audio, rate)
        try:
            self.player.play(buffer)
        except SessionError as e:
            logger.error("Reply playback failed", extra={"error": e.message})
            self._report_error(e)

    def _speak(self, text: str) -> None:
        if self.speaker is None:
            return
        self._speech_task = asyncio.create_task(self._run_speech(self.speaker, text))

    async def _run_speech(self, speaker: ReplySpeaker, text: str) -> None:
        try:
            source = await speaker.speak(text)
            logger.debug("Reply spoken", extra={"source": source})
        except RemoteAPIError as e:
            logger.error("Reply could not be spoken", extra={"error": e.message})
            self._report_error(e)

    def _metrics_extra(self) -> dict[str, Any]:
        summary = self.session.get_metrics_summary()
        return {key: value for key, value in summary.items() if key != "session_id"}
