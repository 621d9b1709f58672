"""Wire codecs for duplex conversation endpoints.

A codec turns outbound TransportMessages into JSON text frames and parses
inbound frames into zero or more InboundEvents. Two wire shapes exist:

LiveFrameCodec (bidirectional generative endpoint):
    → {"setup": {...}}
    → {"clientContent": {"turns": [...], "turnComplete": true}}
    → {"realtimeInput": {"mediaChunks": [{"mimeType", "data"}]}}
    ← {"setupComplete": {}}
    ← {"serverContent": {"modelTurn": {"parts": [...]}, "turnComplete": true}}

RelayFrameCodec (stream-<provider> edge function relay):
    → {"type": "chat_message", "message", "knowledgeContext"}
    ← connection_established | stream_start | stream_chunk | stream_complete | error
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any

from pydantic import ValidationError

from src.magus_live.audio.codec import decode_base64, encode_base64
from src.magus_live.errors import ProtocolError
from src.magus_live.transport.protocol import (
    ClientTurnMessage,
    ConnectionEstablished,
    ErrorEvent,
    InboundEvent,
    InlineAudioPart,
    ModelTurn,
    SetupMessage,
    StreamChunk,
    StreamComplete,
    StreamStart,
    TextPart,
    TransportMessage,
)

logger = logging.getLogger(__name__)


def _load_frame(frame: str | bytes) -> dict[str, Any]:
    """Parse a raw frame into a JSON object.

    Raises:
        ProtocolError: If the frame is not a UTF-8 JSON object
    """
    try:
        text = frame.decode("utf-8") if isinstance(frame, bytes) else frame
        data = json.loads(text)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError(f"Invalid JSON frame: {e}") from e

    if not isinstance(data, dict):
        raise ProtocolError(f"Expected JSON object frame, got {type(data).__name__}")
    return data


class FrameCodec(ABC):
    """Base class for wire codecs.

    Codecs may keep per-connection state (e.g. the text accumulated in the
    current model turn); ``reset`` is called whenever a new connection opens.
    """

    @property
    @abstractmethod
    def accepts_audio(self) -> bool:
        """Whether the endpoint accepts inline microphone audio."""

    @abstractmethod
    def encode(self, message: TransportMessage) -> str | None:
        """Encode an outbound message.

        Returns:
            JSON text frame, or None when the message has no wire form
        """

    def decode(self, frame: str | bytes) -> list[InboundEvent]:
        """Decode an inbound frame into events in arrival order.

        Raises:
            ProtocolError: If the frame is malformed
        """
        data = _load_frame(frame)
        try:
            return self._decode_object(data)
        except (ValidationError, TypeError) as e:
            raise ProtocolError(f"Malformed frame fields: {e}") from e

    @abstractmethod
    def _decode_object(self, data: dict[str, Any]) -> list[InboundEvent]:
        """Map a parsed JSON object to events."""

    def reset(self) -> None:
        """Forget per-connection state."""


class LiveFrameCodec(FrameCodec):
    """Codec for the bidirectional generative endpoint."""

    def __init__(self) -> None:
        self._turn_text: list[str] = []
        self._turn_open = False

    @property
    def accepts_audio(self) -> bool:
        return True

    def reset(self) -> None:
        self._turn_text = []
        self._turn_open = False

    def encode(self, message: TransportMessage) -> str | None:
        if isinstance(message, SetupMessage):
            setup: dict[str, Any] = {
                "model": message.model,
                "generationConfig": message.generation_config,
            }
            if message.system_instruction:
                setup["systemInstruction"] = {"parts": [{"text": message.system_instruction}]}
            return json.dumps({"setup": setup})

        if message.is_audio_only and not message.turn_complete:
            chunks = [
                {"mimeType": part.mime_type, "data": encode_base64(part.data)}
                for part in message.parts
                if isinstance(part, InlineAudioPart)
            ]
            return json.dumps({"realtimeInput": {"mediaChunks": chunks}})

        return json.dumps(
            {
                "clientContent": {
                    "turns": [
                        {
                            "role": message.role,
                            "parts": [self._encode_part(part) for part in message.parts],
                        }
                    ],
                    "turnComplete": message.turn_complete,
                }
            }
        )

    @staticmethod
    def _encode_part(part: TextPart | InlineAudioPart) -> dict[str, Any]:
        if isinstance(part, TextPart):
            return {"text": part.text}
        return {"inlineData": {"mimeType": part.mime_type, "data": encode_base64(part.data)}}

    def _decode_object(self, data: dict[str, Any]) -> list[InboundEvent]:
        events: list[InboundEvent] = []

        if "setupComplete" in data:
            events.append(ConnectionEstablished(message="setup complete"))

        if "error" in data:
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else error
            if message is not None and not isinstance(message, str):
                raise ProtocolError("error.message must be a string")
            events.append(ErrorEvent(message=message or "Remote endpoint error"))

        content = data.get("serverContent")
        if content is None:
            return events
        if not isinstance(content, dict):
            raise ProtocolError("serverContent must be an object")

        model_turn = content.get("modelTurn")
        if model_turn is not None:
            events.extend(self._decode_model_turn(model_turn))

        if content.get("interrupted"):
            logger.debug("Model turn interrupted by user speech")

        if content.get("turnComplete"):
            events.append(StreamComplete(final_text="".join(self._turn_text)))
            self.reset()

        return events

    def _decode_model_turn(self, model_turn: Any) -> list[InboundEvent]:
        parts = model_turn.get("parts") if isinstance(model_turn, dict) else None
        if not isinstance(parts, list):
            raise ProtocolError("modelTurn.parts must be a list")

        texts: list[str] = []
        audio: list[bytes] = []
        mime_type: str | None = None
        for part in parts:
            if not isinstance(part, dict):
                raise ProtocolError("modelTurn part must be an object")
            if "text" in part:
                if not isinstance(part["text"], str):
                    raise ProtocolError("text part must be a string")
                texts.append(part["text"])
            inline = part.get("inlineData")
            if isinstance(inline, dict) and "data" in inline:
                if not isinstance(inline["data"], str):
                    raise ProtocolError("inlineData.data must be a base64 string")
                if not isinstance(inline.get("mimeType", ""), str):
                    raise ProtocolError("inlineData.mimeType must be a string")
                audio.append(decode_base64(inline["data"]))
                mime_type = mime_type or inline.get("mimeType")

        if not texts and not audio:
            return []

        events: list[InboundEvent] = []
        if not self._turn_open:
            self._turn_open = True
            events.append(StreamStart())

        text = "".join(texts) if texts else None
        if text:
            self._turn_text.append(text)

        turn = ModelTurn(text_part=text, audio_part=b"".join(audio) if audio else None)
        if mime_type:
            turn = turn.model_copy(update={"audio_mime_type": mime_type})
        events.append(turn)
        return events


class RelayFrameCodec(FrameCodec):
    """Codec for the stream-<provider> relay edge function.

    The relay has no setup frame; the knowledge context from the Setup
    message travels as ``knowledgeContext`` on every chat message.
    """

    def __init__(self) -> None:
        self._knowledge_context: str | None = None

    @property
    def accepts_audio(self) -> bool:
        return False

    def encode(self, message: TransportMessage) -> str | None:
        if isinstance(message, SetupMessage):
            self._knowledge_context = message.knowledge_context
            return None

        text = message.text
        if not text:
            logger.debug("Relay endpoint does not accept audio, dropping audio-only turn")
            return None

        payload: dict[str, Any] = {"type": "chat_message", "message": text}
        if self._knowledge_context:
            payload["knowledgeContext"] = self._knowledge_context
        return json.dumps(payload, ensure_ascii=False)

    def _decode_object(self, data: dict[str, Any]) -> list[InboundEvent]:
        msg_type = data.get("type")

        if msg_type == "connection_established":
            return [ConnectionEstablished(message=str(data.get("message", "")))]

        if msg_type == "stream_start":
            return [StreamStart(message=str(data.get("message", "")))]

        if msg_type == "stream_chunk":
            chunk = data.get("chunk")
            if not isinstance(chunk, str):
                raise ProtocolError("stream_chunk frame without text chunk")
            full = data.get("fullResponse")
            return [
                StreamChunk(
                    text_delta=chunk,
                    cumulative_text=full if isinstance(full, str) else chunk,
                )
            ]

        if msg_type == "stream_complete":
            provider = data.get("provider")
            if provider is not None and not isinstance(provider, str):
                raise ProtocolError("stream_complete provider must be a string")
            return [
                StreamComplete(
                    final_text=str(data.get("fullResponse") or ""),
                    provider=provider,
                )
            ]

        if msg_type == "error":
            return [ErrorEvent(message=str(data.get("message") or "Relay error"))]

        if msg_type is None:
            raise ProtocolError("Relay frame without type")

        logger.debug("Ignoring unknown relay frame", extra={"type": msg_type})
        return []
