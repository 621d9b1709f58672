"""Builds a ready-to-use orchestrator from configuration."""

import logging
from typing import Any

from src.magus_live.audio.capture import AudioCapture, MicrophoneCapture
from src.magus_live.audio.player import AudioPlayer
from src.magus_live.auth import CredentialProvider
from src.magus_live.config import MagusConfig, ProviderConfig, SpeechConfig
from src.magus_live.orchestrator import SessionOrchestrator, StatusListener
from src.magus_live.outbound_queue import OutboundQueue
from src.magus_live.providers.chat import ChatEndpointClient, ChatEndpointSession
from src.magus_live.providers.speech import LocalSpeechEngine, ReplySpeaker, SpeechSynthesizer
from src.magus_live.reconnect import ReconnectPolicy
from src.magus_live.session import ConversationSession, TransportSession
from src.magus_live.transport.base import ChannelConnector
from src.magus_live.transport.codecs import FrameCodec, LiveFrameCodec, RelayFrameCodec
from src.magus_live.transport.websocket_channel import WebSocketConnector

logger = logging.getLogger(__name__)


def build_generation_config(provider: ProviderConfig) -> dict[str, Any]:
    """Generation parameters sent in the live setup message."""
    return {
        "temperature": provider.temperature,
        "maxOutputTokens": provider.max_output_tokens,
        "responseModalities": list(provider.response_modalities),
        "speechConfig": {"voiceConfig": {"prebuiltVoiceConfig": {"voiceName": provider.voice}}},
    }


def build_session(
    config: MagusConfig,
    credentials: CredentialProvider,
    connector: ChannelConnector | None = None,
) -> ConversationSession:
    """Create the session matching ``config.provider.mode``.

    Args:
        config: Root configuration
        credentials: Caller credential source (chat requests)
        connector: Channel connector override for streaming modes

    Raises:
        ValueError: If the endpoint URL cannot be resolved
    """
    url = config.provider.resolve_url()

    if config.provider.mode == "http":
        client = ChatEndpointClient(url, credentials, timeout_s=config.timeouts.reply_timeout_s)
        return ChatEndpointSession(client, OutboundQueue())

    codec: FrameCodec = LiveFrameCodec() if config.provider.mode == "live" else RelayFrameCodec()
    return TransportSession(
        connector=connector or WebSocketConnector(url),
        codec=codec,
        policy=ReconnectPolicy(
            max_attempts=config.reconnect.max_attempts,
            base_delay_ms=config.reconnect.base_delay_ms,
        ),
        queue=OutboundQueue(),
        connect_timeout_s=config.timeouts.connect_timeout_s,
        reply_timeout_s=config.timeouts.reply_timeout_s,
    )


def build_speaker(
    speech: SpeechConfig,
    provider: ProviderConfig,
    player: AudioPlayer,
    credentials: CredentialProvider,
    timeout_s: float,
) -> ReplySpeaker:
    """Create the reply speaker (remote synthesis plus optional fallback)."""
    url = speech.url or f"{provider.functions_base_url}/text-to-speech-google"
    synthesizer = SpeechSynthesizer(
        url,
        credentials=credentials,
        voice=speech.voice,
        language_code=speech.language_code,
        timeout_s=timeout_s,
    )
    fallback = LocalSpeechEngine(rate=speech.fallback_rate) if speech.fallback_enabled else None
    return ReplySpeaker(player, synthesizer, fallback)


def build_orchestrator(
    config: MagusConfig,
    credentials: CredentialProvider,
    on_status: StatusListener | None = None,
    capture: AudioCapture | None = None,
    player: AudioPlayer | None = None,
    connector: ChannelConnector | None = None,
) -> SessionOrchestrator:
    """Create an orchestrator wired for the configured mode and provider.

    Args:
        config: Root configuration
        credentials: Caller credential source
        on_status: Status snapshot callback for the UI
        capture: Microphone override (default: sounddevice microphone)
        player: Player override (default: sounddevice output)
        connector: Channel connector override for streaming modes

    Returns:
        Orchestrator in the Disconnected state
    """
    session = build_session(config, credentials, connector)
    player = player or AudioPlayer(device=config.audio.output_device)
    capture = capture or MicrophoneCapture(
        sample_rate=config.audio.capture_sample_rate,
        chunk_frames=config.audio.capture_chunk_frames,
        device=config.audio.input_device,
    )
    speaker = build_speaker(
        config.speech, config.provider, player, credentials, config.timeouts.reply_timeout_s
    )

    logger.info(
        "Orchestrator built",
        extra={
            "mode": config.provider.mode,
            "provider": config.provider.provider,
            "model": config.provider.model,
        },
    )

    return SessionOrchestrator(
        session=session,
        capture=capture,
        player=player,
        credentials=credentials,
        speaker=speaker,
        model=config.provider.model,
        generation_config=build_generation_config(config.provider),
        system_prompt=config.provider.system_prompt,
        capture_sample_rate=config.audio.capture_sample_rate,
        playback_sample_rate=config.audio.playback_sample_rate,
        on_status=on_status,
    )
