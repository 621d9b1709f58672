"""Unit tests for SessionOrchestrator.

Drives full conversations over in-memory channels, fake capture and a
recording player: start/stop lifecycle, audio streaming, reply assembly,
muting, spoken replies and fault reporting through status snapshots.
"""

import asyncio
import base64
from unittest.mock import AsyncMock, MagicMock

import numpy as np
import pytest

from src.magus_live.audio.codec import encode_pcm16
from src.magus_live.auth import StaticCredentialProvider
from src.magus_live.errors import (
    AuthRequired,
    DeviceUnavailable,
    ErrorKind,
    RemoteAPIError,
    TransportError,
)
from src.magus_live.orchestrator import SessionOrchestrator, SessionStatus
from src.magus_live.providers.speech import ReplySpeaker
from src.magus_live.reconnect import ReconnectPolicy
from src.magus_live.session import SessionState, TransportSession
from src.magus_live.transport.codecs import FrameCodec, LiveFrameCodec, RelayFrameCodec
from tests.helpers.fakes import FakeCapture, FakeConnector, FakePlayer, wait_until


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _make_orchestrator(
    connector: FakeConnector | None = None,
    codec: FrameCodec | None = None,
    capture: FakeCapture | None = None,
    player: FakePlayer | None = None,
    speaker: ReplySpeaker | None = None,
    token: str | None = "user-token",
    max_attempts: int = 5,
) -> SessionOrchestrator:
    session = TransportSession(
        connector or FakeConnector(),
        codec or LiveFrameCodec(),
        policy=ReconnectPolicy(max_attempts=max_attempts, base_delay_ms=1),
        reply_timeout_s=None,
    )
    return SessionOrchestrator(
        session=session,
        capture=capture or FakeCapture(),
        player=player or FakePlayer(),
        credentials=StaticCredentialProvider.from_token(token),
        speaker=speaker,
        model="models/test",
        system_prompt="Você é MAGUS.",
    )


def _mock_speaker() -> MagicMock:
    speaker = MagicMock(spec=ReplySpeaker)
    speaker.speak = AsyncMock(return_value="remote")
    speaker.close = AsyncMock()
    return speaker


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def capture() -> FakeCapture:
    return FakeCapture()


@pytest.fixture
def player() -> FakePlayer:
    return FakePlayer()


class TestStartConversation:
    """Test start_conversation preconditions and outcomes."""

    @pytest.mark.asyncio
    async def test_happy_path(
        self, connector: FakeConnector, capture: FakeCapture, player: FakePlayer
    ) -> None:
        """Test a full live turn: setup, audio up, text and audio reply down."""
        orchestrator = _make_orchestrator(connector, capture=capture, player=player)

        result = await orchestrator.start_conversation()

        assert result.ok
        assert result.error is None
        assert orchestrator.status.state == SessionState.CONNECTED
        channel = connector.last_channel
        assert channel.sent_json[0]["setup"]["model"] == "models/test"

        capture.push([0.1, -0.1, 0.0])
        await wait_until(lambda: len(channel.sent) == 2)
        media = channel.sent_json[1]["realtimeInput"]["mediaChunks"][0]
        assert media["mimeType"] == "audio/pcm;rate=16000"
        assert media["data"] == _b64(encode_pcm16([0.1, -0.1, 0.0]))

        reply_audio = encode_pcm16(np.full(480, 0.25))
        channel.feed(
            {
                "serverContent": {
                    "modelTurn": {
                        "parts": [
                            {"text": "Olá"},
                            {
                                "inlineData": {
                                    "mimeType": "audio/pcm;rate=24000",
                                    "data": _b64(reply_audio),
                                }
                            },
                        ]
                    }
                }
            }
        )
        channel.feed(
            {"serverContent": {"modelTurn": {"parts": [{"text": ", como posso ajudar?"}]}}}
        )
        channel.feed({"serverContent": {"turnComplete": True}})

        await wait_until(lambda: orchestrator.status.last_text == "Olá, como posso ajudar?")
        await wait_until(lambda: not orchestrator.status.responding)

        assert orchestrator.status.state == SessionState.CONNECTED
        assert orchestrator.status.last_error is None
        assert len(player.played) == 1
        assert player.played[0].sample_rate == 24000
        assert len(player.played[0].samples) == 480

        await orchestrator.stop_conversation()

    @pytest.mark.asyncio
    async def test_knowledge_context_in_setup(self, connector: FakeConnector) -> None:
        orchestrator = _make_orchestrator(connector)

        await orchestrator.start_conversation("Preço do plano Pro: R$ 99")

        instruction = connector.last_channel.sent_json[0]["setup"]["systemInstruction"]
        text = instruction["parts"][0]["text"]
        assert text.startswith("Você é MAGUS.")
        assert text.endswith("Contexto adicional: Preço do plano Pro: R$ 99")

        await orchestrator.stop_conversation()

    @pytest.mark.asyncio
    async def test_missing_credential(
        self, connector: FakeConnector, capture: FakeCapture
    ) -> None:
        """Test AuthRequired rejects the start before any device or connection."""
        orchestrator = _make_orchestrator(connector, capture=capture, token=None)

        result = await orchestrator.start_conversation()

        assert not result.ok
        assert isinstance(result.error, AuthRequired)
        assert capture.start_count == 0
        assert connector.open_count == 0
        assert orchestrator.status.error_kind == ErrorKind.AUTH_REQUIRED
        assert orchestrator.status.state == SessionState.DISCONNECTED
        assert not orchestrator.is_active

    @pytest.mark.asyncio
    async def test_microphone_unavailable(self, connector: FakeConnector) -> None:
        """Test DeviceUnavailable rejects the start before any connection."""
        orchestrator = _make_orchestrator(connector, capture=FakeCapture(fail=True))

        result = await orchestrator.start_conversation()

        assert not result.ok
        assert isinstance(result.error, DeviceUnavailable)
        assert connector.open_count == 0
        assert orchestrator.status.error_kind == ErrorKind.DEVICE_UNAVAILABLE
        assert orchestrator.status.last_error == "Microphone permission denied"
        assert not orchestrator.is_active

    @pytest.mark.asyncio
    async def test_concurrent_start_opens_one_connection(self) -> None:
        connector = FakeConnector(open_delay_s=0.02)
        orchestrator = _make_orchestrator(connector)

        first, second = await asyncio.gather(
            orchestrator.start_conversation(), orchestrator.start_conversation()
        )

        assert first.ok and second.ok
        assert [first.already_active, second.already_active].count(True) == 1
        assert connector.open_count == 1

        await orchestrator.stop_conversation()

    @pytest.mark.asyncio
    async def test_repeated_start_is_ignored(self, connector: FakeConnector) -> None:
        orchestrator = _make_orchestrator(connector)
        await orchestrator.start_conversation()

        result = await orchestrator.start_conversation()

        assert result.already_active
        assert connector.open_count == 1

        await orchestrator.stop_conversation()

    @pytest.mark.asyncio
    async def test_unreachable_endpoint_then_restart(self) -> None:
        connector = FakeConnector(fail_by_default=True)
        orchestrator = _make_orchestrator(connector, max_attempts=0)

        result = await orchestrator.start_conversation()

        assert not result.ok
        assert isinstance(result.error, TransportError)
        assert orchestrator.status.state == SessionState.ERRORED
        assert orchestrator.status.error_kind == ErrorKind.TRANSPORT_ERROR

        connector.fail_by_default = False
        result = await orchestrator.start_conversation()

        assert result.ok
        assert not result.already_active
        assert orchestrator.status.state == SessionState.CONNECTED
        assert orchestrator.status.last_error is None

        await orchestrator.stop_conversation()

    @pytest.mark.asyncio
    async def test_start_while_reconnecting_reports_ok(self) -> None:
        connector = FakeConnector(outcomes=[ConnectionError("refused")])
        orchestrator = _make_orchestrator(connector)

        result = await orchestrator.start_conversation()

        assert result.ok
        assert isinstance(result.error, TransportError)
        await wait_until(lambda: orchestrator.status.state == SessionState.CONNECTED)

        await orchestrator.stop_conversation()


class TestStopConversation:
    """Test stop_conversation teardown."""

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(
        self, connector: FakeConnector, capture: FakeCapture
    ) -> None:
        orchestrator = _make_orchestrator(connector, capture=capture)
        await orchestrator.start_conversation()

        await orchestrator.stop_conversation()
        await orchestrator.stop_conversation()

        assert orchestrator.status.state == SessionState.DISCONNECTED
        assert not orchestrator.is_active
        assert not capture.is_active
        assert not connector.last_channel.is_open

    @pytest.mark.asyncio
    async def test_stop_without_start(self, capture: FakeCapture) -> None:
        orchestrator = _make_orchestrator(capture=capture)

        await orchestrator.stop_conversation()

        assert orchestrator.status.state == SessionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_stop_ends_audio_streaming(
        self, connector: FakeConnector, capture: FakeCapture
    ) -> None:
        orchestrator = _make_orchestrator(connector, capture=capture)
        await orchestrator.start_conversation()

        await orchestrator.stop_conversation()
        capture.push([0.5])
        await asyncio.sleep(0.01)

        assert len(connector.last_channel.sent) == 1

    @pytest.mark.asyncio
    async def test_stop_during_connect(self) -> None:
        connector = FakeConnector(open_delay_s=0.05)
        orchestrator = _make_orchestrator(connector)

        start = asyncio.create_task(orchestrator.start_conversation())
        await wait_until(lambda: orchestrator.status.state == SessionState.CONNECTING)
        await orchestrator.stop_conversation()

        result = await start
        assert not result.ok
        assert orchestrator.status.state == SessionState.DISCONNECTED
        assert not connector.last_channel.is_open

    @pytest.mark.asyncio
    async def test_stop_while_acquiring_microphone(self, connector: FakeConnector) -> None:
        capture = FakeCapture(start_delay_s=0.05)
        orchestrator = _make_orchestrator(connector, capture=capture)

        start = asyncio.create_task(orchestrator.start_conversation())
        await wait_until(lambda: capture.start_count == 1)
        await orchestrator.stop_conversation()

        result = await start
        assert not result.ok
        assert connector.open_count == 0
        assert not capture.is_active
        assert not orchestrator.is_active
        assert orchestrator.status.state == SessionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_stop_while_checking_credential(
        self, connector: FakeConnector, capture: FakeCapture
    ) -> None:
        orchestrator = _make_orchestrator(connector, capture=capture)
        credentials = orchestrator.credentials

        async def slow_credential():
            await asyncio.sleep(0.05)
            return await credentials.get_credential()

        orchestrator.credentials = MagicMock(get_credential=slow_credential)

        start = asyncio.create_task(orchestrator.start_conversation())
        await asyncio.sleep(0.01)
        await orchestrator.stop_conversation()

        result = await start
        assert not result.ok
        assert result.error is None
        assert capture.start_count == 0
        assert connector.open_count == 0
        assert orchestrator.status.state == SessionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_orchestrators_are_independent(self) -> None:
        first_connector, second_connector = FakeConnector(), FakeConnector()
        first = _make_orchestrator(first_connector)
        second = _make_orchestrator(second_connector)
        await first.start_conversation()
        await second.start_conversation()

        await first.stop_conversation()

        assert second.status.state == SessionState.CONNECTED
        assert second_connector.last_channel.is_open

        await second.stop_conversation()


class TestReplies:
    """Test inbound event handling."""

    @pytest.mark.asyncio
    async def test_relay_stream_updates_text(self, connector: FakeConnector) -> None:
        orchestrator = _make_orchestrator(connector, codec=RelayFrameCodec())
        statuses: list[SessionStatus] = []
        orchestrator.on_status = statuses.append
        await orchestrator.start_conversation()

        channel = connector.last_channel
        channel.feed({"type": "stream_start"})
        channel.feed({"type": "stream_chunk", "chunk": "Olá", "fullResponse": "Olá"})
        channel.feed({"type": "stream_chunk", "chunk": " mundo", "fullResponse": "Olá mundo"})
        channel.feed({"type": "stream_complete", "fullResponse": "Olá mundo"})

        await wait_until(
            lambda: statuses[-1].last_text == "Olá mundo" and not statuses[-1].responding
        )
        texts = [status.last_text for status in statuses if status.responding]
        assert "Olá" in texts

        await orchestrator.stop_conversation()

    @pytest.mark.asyncio
    async def test_relay_mode_does_not_stream_audio(
        self, connector: FakeConnector, capture: FakeCapture
    ) -> None:
        orchestrator = _make_orchestrator(connector, codec=RelayFrameCodec(), capture=capture)
        await orchestrator.start_conversation()

        capture.push([0.3, 0.3])
        await orchestrator.send_text("  Qual o horário?  ")
        await asyncio.sleep(0.01)

        assert capture.start_count == 1
        assert connector.last_channel.sent_json == [
            {"type": "chat_message", "message": "Qual o horário?"}
        ]

        await orchestrator.stop_conversation()

    @pytest.mark.asyncio
    async def test_send_text_ignores_blank(self, connector: FakeConnector) -> None:
        orchestrator = _make_orchestrator(connector)
        await orchestrator.start_conversation()

        assert await orchestrator.send_text("   ") is False
        assert len(connector.last_channel.sent) == 1

        await orchestrator.stop_conversation()

    @pytest.mark.asyncio
    async def test_text_only_reply_is_spoken(self, connector: FakeConnector) -> None:
        speaker = _mock_speaker()
        orchestrator = _make_orchestrator(connector, codec=RelayFrameCodec(), speaker=speaker)
        await orchestrator.start_conversation()

        connector.last_channel.feed({"type": "stream_start"})
        connector.last_channel.feed({"type": "stream_complete", "fullResponse": "Bom dia!"})

        await wait_until(lambda: speaker.speak.await_count == 1)
        speaker.speak.assert_awaited_once_with("Bom dia!")

        await orchestrator.stop_conversation()
        speaker.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_audio_reply_is_not_spoken_again(self, connector: FakeConnector) -> None:
        speaker = _mock_speaker()
        orchestrator = _make_orchestrator(connector, speaker=speaker)
        await orchestrator.start_conversation()

        audio = _b64(encode_pcm16([0.1] * 10))
        connector.last_channel.feed(
            {
                "serverContent": {
                    "modelTurn": {
                        "parts": [
                            {"text": "Oi"},
                            {"inlineData": {"mimeType": "audio/pcm;rate=24000", "data": audio}},
                        ]
                    },
                    "turnComplete": True,
                }
            }
        )

        await wait_until(lambda: orchestrator.status.last_text == "Oi")
        await asyncio.sleep(0.01)
        speaker.speak.assert_not_awaited()

        await orchestrator.stop_conversation()

    @pytest.mark.asyncio
    async def test_speech_failure_is_reported(self, connector: FakeConnector) -> None:
        speaker = _mock_speaker()
        speaker.speak.side_effect = RemoteAPIError("Speech endpoint returned HTTP 500")
        orchestrator = _make_orchestrator(connector, codec=RelayFrameCodec(), speaker=speaker)
        await orchestrator.start_conversation()

        connector.last_channel.feed({"type": "stream_complete", "fullResponse": "Oi"})

        await wait_until(lambda: orchestrator.status.last_error is not None)
        assert orchestrator.status.error_kind == ErrorKind.REMOTE_API_ERROR
        assert orchestrator.status.state == SessionState.CONNECTED

        await orchestrator.stop_conversation()

    @pytest.mark.asyncio
    async def test_new_reply_interrupts_speech(self, connector: FakeConnector) -> None:
        speaker = _mock_speaker()
        started = asyncio.Event()

        async def slow_speak(text: str) -> str:
            started.set()
            await asyncio.sleep(10)
            return "remote"

        speaker.speak.side_effect = slow_speak
        orchestrator = _make_orchestrator(connector, codec=RelayFrameCodec(), speaker=speaker)
        await orchestrator.start_conversation()

        connector.last_channel.feed({"type": "stream_complete", "fullResponse": "Primeira"})
        await asyncio.wait_for(started.wait(), timeout=1.0)
        stops_before = speaker.stop.call_count

        connector.last_channel.feed({"type": "stream_start"})

        await wait_until(lambda: speaker.stop.call_count > stops_before)
        await orchestrator.stop_conversation()

    @pytest.mark.asyncio
    async def test_remote_error_event(self, connector: FakeConnector) -> None:
        orchestrator = _make_orchestrator(connector)
        await orchestrator.start_conversation()

        connector.last_channel.feed({"error": {"message": "Quota exceeded"}})

        await wait_until(lambda: orchestrator.status.last_error == "Quota exceeded")
        assert orchestrator.status.error_kind == ErrorKind.REMOTE_API_ERROR

        await orchestrator.stop_conversation()

    @pytest.mark.asyncio
    async def test_reply_timeout_is_transport_error(self, connector: FakeConnector) -> None:
        orchestrator = _make_orchestrator(connector)
        orchestrator.session.reply_timeout_s = 0.02
        await orchestrator.start_conversation()

        await orchestrator.send_text("alô?")

        await wait_until(lambda: orchestrator.status.last_error is not None)
        assert "Timed out" in orchestrator.status.last_error
        assert orchestrator.status.error_kind == ErrorKind.TRANSPORT_ERROR

        await orchestrator.stop_conversation()

    @pytest.mark.asyncio
    async def test_audio_without_mime_uses_playback_rate(
        self, connector: FakeConnector, player: FakePlayer
    ) -> None:
        orchestrator = _make_orchestrator(connector, player=player)
        orchestrator.playback_sample_rate = 16000
        await orchestrator.start_conversation()

        audio = _b64(encode_pcm16([0.1] * 160))
        connector.last_channel.feed(
            {"serverContent": {"modelTurn": {"parts": [{"inlineData": {"data": audio}}]}}}
        )

        await wait_until(lambda: len(player.played) == 1)
        assert player.played[0].sample_rate == 16000

        await orchestrator.stop_conversation()

    @pytest.mark.asyncio
    async def test_playback_failure_is_reported(self, connector: FakeConnector) -> None:
        orchestrator = _make_orchestrator(connector, player=FakePlayer(fail=True))
        await orchestrator.start_conversation()

        audio = _b64(encode_pcm16([0.1] * 10))
        connector.last_channel.feed(
            {"serverContent": {"modelTurn": {"parts": [{"inlineData": {"data": audio}}]}}}
        )

        await wait_until(lambda: orchestrator.status.error_kind == ErrorKind.DEVICE_UNAVAILABLE)
        assert orchestrator.status.state == SessionState.CONNECTED

        await orchestrator.stop_conversation()

    @pytest.mark.asyncio
    async def test_connection_drop_reconnects(self, connector: FakeConnector) -> None:
        orchestrator = _make_orchestrator(connector)
        states: list[SessionState] = []
        orchestrator.on_status = lambda status: states.append(status.state)
        await orchestrator.start_conversation()

        connector.last_channel.drop()

        await wait_until(lambda: connector.open_count == 2)
        await wait_until(lambda: orchestrator.status.state == SessionState.CONNECTED)
        assert SessionState.RECONNECTING in states

        await orchestrator.stop_conversation()


class TestMute:
    """Test toggle_mute."""

    @pytest.mark.asyncio
    async def test_muted_audio_is_not_played(
        self, connector: FakeConnector, player: FakePlayer
    ) -> None:
        orchestrator = _make_orchestrator(connector, player=player)
        await orchestrator.start_conversation()

        assert orchestrator.toggle_mute() is True
        assert orchestrator.status.muted
        assert player.stop_calls == 1

        audio = _b64(encode_pcm16([0.1] * 10))
        connector.last_channel.feed(
            {
                "serverContent": {
                    "modelTurn": {
                        "parts": [
                            {"text": "Silêncio"},
                            {"inlineData": {"mimeType": "audio/pcm;rate=24000", "data": audio}},
                        ]
                    }
                }
            }
        )

        await wait_until(lambda: orchestrator.status.last_text == "Silêncio")
        assert player.played == []

        assert orchestrator.toggle_mute() is False
        await orchestrator.stop_conversation()

    @pytest.mark.asyncio
    async def test_muted_text_reply_is_not_spoken(self, connector: FakeConnector) -> None:
        speaker = _mock_speaker()
        orchestrator = _make_orchestrator(connector, codec=RelayFrameCodec(), speaker=speaker)
        await orchestrator.start_conversation()
        orchestrator.toggle_mute()

        connector.last_channel.feed({"type": "stream_complete", "fullResponse": "Oi"})

        await wait_until(lambda: orchestrator.status.last_text == "Oi")
        await asyncio.sleep(0.01)
        speaker.speak.assert_not_awaited()

        await orchestrator.stop_conversation()


def test_build_setup_without_context() -> None:
    orchestrator = _make_orchestrator()

    setup = orchestrator.build_setup()

    assert setup.system_instruction == "Você é MAGUS."
    assert setup.knowledge_context is None
    assert setup.model == "models/test"
