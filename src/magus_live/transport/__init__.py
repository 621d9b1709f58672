"""Transport layer for remote generative endpoint connections.

Provides the raw duplex channel abstraction, the WebSocket implementation,
the wire-agnostic message protocol and the codecs that map it to the live
and relay wire formats.
"""

from src.magus_live.transport.base import ChannelConnector, DuplexChannel
from src.magus_live.transport.codecs import FrameCodec, LiveFrameCodec, RelayFrameCodec
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
from src.magus_live.transport.websocket_channel import WebSocketChannel, WebSocketConnector

__all__ = [
    "ChannelConnector",
    "ClientTurnMessage",
    "ConnectionEstablished",
    "DuplexChannel",
    "ErrorEvent",
    "FrameCodec",
    "InboundEvent",
    "InlineAudioPart",
    "LiveFrameCodec",
    "ModelTurn",
    "RelayFrameCodec",
    "SetupMessage",
    "StreamChunk",
    "StreamComplete",
    "StreamStart",
    "TextPart",
    "TransportMessage",
    "WebSocketChannel",
    "WebSocketConnector",
]
