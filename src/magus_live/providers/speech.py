"""Spoken replies for text-only turns.

Completed replies that arrived without audio are voiced through the remote
``text-to-speech-<provider>`` endpoint:

    POST {"text": str, "voice": str, "languageCode": str}
    200  {"audioContent": base64 MP3, "provider": str}
    5xx  {"error": str}

If that fails for any reason the on-device pyttsx3 engine speaks instead.
"""

import asyncio
import logging
import threading
from typing import Any

import aiohttp
import pyttsx3

from src.magus_live.audio.codec import decode_base64
from src.magus_live.audio.player import AudioPlayer, decode_encoded_audio
from src.magus_live.auth import CredentialProvider
from src.magus_live.errors import RemoteAPIError, SessionError

logger = logging.getLogger(__name__)


class SpeechSynthesizer:
    """HTTP client for a remote text-to-speech endpoint."""

    def __init__(
        self,
        url: str,
        credentials: CredentialProvider | None = None,
        voice: str = "pt-BR-Standard-A",
        language_code: str = "pt-BR",
        timeout_s: float = 30.0,
    ) -> None:
        """Initialize synthesizer.

        Args:
            url: Full text-to-speech endpoint URL
            credentials: Supplies the caller's bearer token, if required
            voice: Provider voice name
            language_code: BCP-47 language code
            timeout_s: Total request timeout
        """
        self.url = url
        self.credentials = credentials
        self.voice = voice
        self.language_code = language_code
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

    async def synthesize(self, text: str) -> bytes:
        """Synthesize speech for text.

        Args:
            text: Text to speak

        Returns:
            Encoded audio file contents (MP3)

        Raises:
            RemoteAPIError: On network failure, timeout, non-2xx status or a
                response without audio
        """
        headers: dict[str, str] = {}
        if self.credentials is not None:
            credential = await self.credentials.get_credential()
            if credential is not None and credential.is_valid:
                headers = credential.authorization_header()

        session = await self._ensure_session()
        payload = {"text": text, "voice": self.voice, "languageCode": self.language_code}

        try:
            async with session.post(self.url, json=payload, headers=headers) as resp:
                try:
                    body: Any = await resp.json(content_type=None)
                except ValueError:
                    body = None
                status = resp.status
        except TimeoutError as e:
            raise RemoteAPIError(f"Speech request timed out after {self.timeout_s:g}s") from e
        except aiohttp.ClientError as e:
            raise RemoteAPIError(f"Speech request failed: {e}") from e

        if not isinstance(body, dict):
            raise RemoteAPIError(f"Speech endpoint returned an invalid body (HTTP {status})")
        if status >= 400 or "error" in body:
            message = body.get("error") or f"Speech endpoint returned HTTP {status}"
            raise RemoteAPIError(str(message))

        audio_content = body.get("audioContent")
        if not isinstance(audio_content, str) or not audio_content:
            raise RemoteAPIError("Speech endpoint reply has no audioContent")

        try:
            return decode_base64(audio_content)
        except SessionError as e:
            raise RemoteAPIError(f"Speech endpoint returned invalid audio: {e.message}") from e


class LocalSpeechEngine:
    """On-device text-to-speech using pyttsx3.

    ``speak`` blocks until the utterance finishes and must run off the event
    loop (e.g. via ``run_in_executor``). A fresh engine is created per
    utterance so an interrupted run loop never leaks into the next one.
    """

    def __init__(self, rate: int = 180, voice_id: str | None = None) -> None:
        self.rate = rate
        self.voice_id = voice_id
        self._engine: Any = None
        self._lock = threading.Lock()

    def speak(self, text: str) -> None:
        """Speak text synchronously.

        Raises:
            RuntimeError: If no speech driver is available or the engine fails
        """
        with self._lock:
            engine = pyttsx3.init()
            engine.setProperty("rate", self.rate)
            if self.voice_id is not None:
                engine.setProperty("voice", self.voice_id)
            self._engine = engine

        try:
            engine.say(text)
            engine.runAndWait()
        finally:
            with self._lock:
                self._engine = None

    def stop(self) -> None:
        """Interrupt the current utterance, if any."""
        with self._lock:
            if self._engine is not None:
                self._engine.stop()


class ReplySpeaker:
    """Voices completed text replies: remote synthesis first, then on-device."""

    def __init__(
        self,
        player: AudioPlayer,
        synthesizer: SpeechSynthesizer | None = None,
        fallback: LocalSpeechEngine | None = None,
    ) -> None:
        self.player = player
        self.synthesizer = synthesizer
        self.fallback = fallback

    async def speak(self, text: str) -> str:
        """Speak a reply.

        Args:
            text: Reply text

        Returns:
            "remote" or "local", naming the path that produced the speech

        Raises:
            RemoteAPIError: If every available path failed
        """
        remote_error: SessionError | None = None
        if self.synthesizer is not None:
            try:
                audio = await self.synthesizer.synthesize(text)
                self.player.play(decode_encoded_audio(audio))
                return "remote"
            except SessionError as e:
                remote_error = e
                logger.warning(
                    "Remote speech failed, falling back to on-device engine",
                    extra={"kind": e.kind.value, "error": e.message},
                )

        if self.fallback is None:
            raise RemoteAPIError(
                remote_error.message if remote_error else "No speech synthesis available"
            )

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self.fallback.speak, text)
        except (RuntimeError, OSError, ImportError) as e:
            raise RemoteAPIError(f"On-device speech failed: {e}") from e
        return "local"

    def stop(self) -> None:
        """Stop any speech in progress."""
        self.player.stop()
        if self.fallback is not None:
            self.fallback.stop()

    async def close(self) -> None:
        if self.synthesizer is not None:
            await self.synthesizer.close()
