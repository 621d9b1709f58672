"""Request/response provider clients (chat completion and speech synthesis)."""

from src.magus_live.providers.chat import ChatEndpointClient, ChatEndpointSession, ChatReply
from src.magus_live.providers.speech import LocalSpeechEngine, ReplySpeaker, SpeechSynthesizer

__all__ = [
    "ChatEndpointClient",
    "ChatEndpointSession",
    "ChatReply",
    "LocalSpeechEngine",
    "ReplySpeaker",
    "SpeechSynthesizer",
]
