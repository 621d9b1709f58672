"""Integration tests for the remote text-to-speech endpoint.

Tests verify:
- Request payload (text, voice, language) and optional bearer header
- Base64 audio decoding
- Error mapping for failed replies
- ReplySpeaker playing synthesized audio end to end
"""

import base64

import pytest
from aiohttp.test_utils import TestServer

from src.magus_live.auth import StaticCredentialProvider
from src.magus_live.errors import RemoteAPIError
from src.magus_live.providers.speech import ReplySpeaker, SpeechSynthesizer
from tests.helpers.fakes import FakePlayer
from tests.helpers.http_stub import StubEndpoint


def _synthesizer(server: TestServer, token: str | None = None) -> SpeechSynthesizer:
    credentials = StaticCredentialProvider.from_token(token) if token else None
    return SpeechSynthesizer(
        str(server.make_url("/text-to-speech-google")), credentials=credentials, timeout_s=5.0
    )


@pytest.mark.integration
@pytest.mark.asyncio
async def test_synthesize_returns_audio(
    stub: StubEndpoint, stub_server: TestServer, wav_bytes: bytes
) -> None:
    """Test synthesized audio is base64-decoded."""
    stub.default = (200, {"audioContent": base64.b64encode(wav_bytes).decode(), "provider": "g"})
    synthesizer = _synthesizer(stub_server, token="user-token")

    audio = await synthesizer.synthesize("Olá, tudo bem?")

    assert audio == wav_bytes
    request = stub.requests[0]
    assert request.body == {
        "text": "Olá, tudo bem?",
        "voice": "pt-BR-Standard-A",
        "languageCode": "pt-BR",
    }
    assert request.headers["Authorization"] == "Bearer user-token"
    await synthesizer.close()


@pytest.mark.integration
@pytest.mark.asyncio
async def test_synthesize_without_credentials(
    stub: StubEndpoint, stub_server: TestServer, wav_bytes: bytes
) -> None:
    """Test no Authorization header is sent without a credential provider."""
    stub.default = (200, {"audioContent": base64.b64encode(wav_bytes).decode()})
    synthesizer = _synthesizer(stub_server)

    await synthesizer.synthesize("Oi")

    assert "Authorization" not in stub.requests[0].headers
    await synthesizer.close()


@pytest.mark.integration
@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("response", "match"),
    [
        ((500, {"error": "GOOGLE_TTS_API_KEY não configurada"}), "GOOGLE_TTS_API_KEY"),
        ((200, {"provider": "google"}), "no audioContent"),
        ((200, {"audioContent": "%%%"}), "invalid audio"),
        ((200, "not json"), "invalid body"),
    ],
)
async def test_synthesize_errors(
    stub: StubEndpoint, stub_server: TestServer, response: tuple[int, object], match: str
) -> None:
    """Test failed replies raise RemoteAPIError."""
    stub.default = response
    synthesizer = _synthesizer(stub_server)

    with pytest.raises(RemoteAPIError, match=match):
        await synthesizer.synthesize("Oi")
    await synthesizer.close()


@pytest.mark.integration
@pytest.mark.asyncio
async def test_reply_speaker_plays_remote_audio(
    stub: StubEndpoint, stub_server: TestServer, wav_bytes: bytes
) -> None:
    """Test ReplySpeaker plays synthesized audio through the player."""
    stub.default = (200, {"audioContent": base64.b64encode(wav_bytes).decode()})
    player = FakePlayer()
    speaker = ReplySpeaker(player, synthesizer=_synthesizer(stub_server))

    assert await speaker.speak("Olá") == "remote"

    assert len(player.played) == 1
    assert player.played[0].sample_rate == 16000
    assert len(player.played[0].samples) == 1600
    await speaker.close()
