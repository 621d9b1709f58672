"""Conversation message protocol definitions.

Defines Pydantic models for the messages a session sends to the remote
generative endpoint and the events it delivers back to the orchestrator.
These are wire-agnostic; frame codecs map them to a concrete JSON shape.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from src.magus_live.errors import ErrorKind


class TextPart(BaseModel):
    """Plain text content part."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["text"] = "text"
    text: str = Field(..., description="Text content")


class InlineAudioPart(BaseModel):
    """Inline audio content part (PCM16 bytes)."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["inline_audio"] = "inline_audio"
    data: bytes = Field(..., description="Raw PCM16 little-endian audio")
    mime_type: str = Field(default="audio/pcm;rate=16000", description="Audio mime type")


Part = TextPart | InlineAudioPart


# ---------------------------------------------------------------------------
# Outbound messages
# ---------------------------------------------------------------------------


class SetupMessage(BaseModel):
    """Client → Remote: session configuration.

    Sent exactly once per connection before any client turn.
    """

    model_config = ConfigDict(frozen=True)

    type: Literal["setup"] = "setup"
    model: str = Field(..., description="Model identifier")
    generation_config: dict[str, Any] = Field(
        default_factory=dict, description="Provider generation parameters"
    )
    system_instruction: str = Field(default="", description="System prompt incl. knowledge")
    knowledge_context: str | None = Field(
        default=None, description="Supplementary text injected into the prompt"
    )


class ClientTurnMessage(BaseModel):
    """Client → Remote: user content (text, audio or both)."""

    model_config = ConfigDict(frozen=True)

    type: Literal["client_turn"] = "client_turn"
    role: Literal["user", "model"] = "user"
    parts: tuple[Part, ...] = Field(..., min_length=1, description="Content parts")
    turn_complete: bool = Field(
        default=True, description="Whether the user finished the turn"
    )

    @property
    def is_audio_only(self) -> bool:
        """Check if every part is inline audio."""
        return all(isinstance(part, InlineAudioPart) for part in self.parts)

    @property
    def text(self) -> str:
        """Concatenated text of all text parts."""
        return "".join(part.text for part in self.parts if isinstance(part, TextPart))

    @classmethod
    def from_text(cls, text: str) -> "ClientTurnMessage":
        """Build a completed user text turn."""
        return cls(parts=(TextPart(text=text),), turn_complete=True)

    @classmethod
    def from_audio(cls, pcm: bytes, mime_type: str) -> "ClientTurnMessage":
        """Build a streaming (incomplete) microphone chunk turn."""
        return cls(parts=(InlineAudioPart(data=pcm, mime_type=mime_type),), turn_complete=False)


TransportMessage = SetupMessage | ClientTurnMessage


# ---------------------------------------------------------------------------
# Inbound events
# ---------------------------------------------------------------------------


class ConnectionEstablished(BaseModel):
    """Remote → Client: the endpoint accepted the session."""

    model_config = ConfigDict(frozen=True)

    type: Literal["connection_established"] = "connection_established"
    message: str = Field(default="", description="Greeting or status text")


class StreamStart(BaseModel):
    """Remote → Client: a model reply is starting."""

    model_config = ConfigDict(frozen=True)

    type: Literal["stream_start"] = "stream_start"
    message: str = Field(default="", description="Status text")


class StreamChunk(BaseModel):
    """Remote → Client: incremental reply text."""

    model_config = ConfigDict(frozen=True)

    type: Literal["stream_chunk"] = "stream_chunk"
    text_delta: str = Field(..., description="New text in this chunk")
    cumulative_text: str = Field(..., description="Reply text received so far")


class StreamComplete(BaseModel):
    """Remote → Client: reply finished."""

    model_config = ConfigDict(frozen=True)

    type: Literal["stream_complete"] = "stream_complete"
    final_text: str = Field(default="", description="Complete reply text")
    provider: str | None = Field(default=None, description="Provider that answered")


class ModelTurn(BaseModel):
    """Remote → Client: model content; text and audio may arrive together."""

    model_config = ConfigDict(frozen=True)

    type: Literal["model_turn"] = "model_turn"
    text_part: str | None = Field(default=None, description="Text content")
    audio_part: bytes | None = Field(default=None, description="PCM16 audio content")
    audio_mime_type: str | None = Field(
        default=None, description="Mime type of audio_part (None: session playback rate)"
    )


class ErrorEvent(BaseModel):
    """Remote → Client (or session): error notification."""

    model_config = ConfigDict(frozen=True)

    type: Literal["error"] = "error"
    message: str = Field(..., description="Error description")
    kind: ErrorKind = Field(
        default=ErrorKind.REMOTE_API_ERROR, description="Classification shown to the user"
    )


InboundEvent = (
    ConnectionEstablished | StreamStart | StreamChunk | StreamComplete | ModelTurn | ErrorEvent
)
