"""Audio playback for received replies.

Playback runs on a sounddevice output stream fed from a callback, so the
event loop is never blocked. Buffers played back to back at the same rate
share one stream and are heard in order (a streamed reply arrives as many
small chunks); ``stop`` interrupts whatever is still playing. Players never
share streams, so independent sessions do not cut each other off.
"""

import io
import logging
import threading
from collections import deque
from typing import Any

import numpy as np
import soundfile as sf

from src.magus_live.audio.codec import AudioBuffer
from src.magus_live.audio.device import load_sounddevice
from src.magus_live.errors import DeviceUnavailable, ProtocolError

logger = logging.getLogger(__name__)


class _PlaybackCursor:
    """Feeds queued sample arrays into an output stream callback.

    The callback runs on the audio thread while ``append`` is called from the
    event loop, so both go through a lock. Once the queue runs dry the stream
    is stopped and the cursor refuses further samples.
    """

    def __init__(self, samples: np.ndarray, callback_stop: type[Exception]) -> None:
        self._callback_stop = callback_stop
        self._chunks: deque[np.ndarray] = deque([samples.astype(np.float32, copy=False)])
        self._offset = 0
        self._drained = False
        self._lock = threading.Lock()

    def append(self, samples: np.ndarray) -> bool:
        """Queue samples behind those still pending.

        Returns:
            False if the stream already drained and stopped
        """
        with self._lock:
            if self._drained:
                return False
            self._chunks.append(samples.astype(np.float32, copy=False))
            return True

    def __call__(self, outdata: np.ndarray, frames: int, time: Any, status: Any) -> None:
        if status:
            logger.debug("Playback stream status", extra={"status": str(status)})

        out = outdata[:, 0]
        written = 0
        with self._lock:
            while written < frames and self._chunks:
                chunk = self._chunks[0]
                take = min(frames - written, len(chunk) - self._offset)
                out[written : written + take] = chunk[self._offset : self._offset + take]
                written += take
                self._offset += take
                if self._offset >= len(chunk):
                    self._chunks.popleft()
                    self._offset = 0
            if written < frames:
                self._drained = True

        if written < frames:
            out[written:] = 0
            raise self._callback_stop


def decode_encoded_audio(data: bytes) -> AudioBuffer:
    """Decode a compressed audio file (MP3, WAV, OGG) into a mono buffer.

    Args:
        data: Encoded audio file contents

    Returns:
        Mono float32 AudioBuffer at the file's native sample rate

    Raises:
        ProtocolError: If the payload cannot be decoded
    """
    try:
        samples, sample_rate = sf.read(io.BytesIO(data), dtype="float32", always_2d=True)
    except (sf.LibsndfileError, RuntimeError, TypeError) as e:
        raise ProtocolError(f"Unsupported synthesized audio payload: {e}") from e

    mono = samples.mean(axis=1) if samples.shape[1] > 1 else samples[:, 0]
    return AudioBuffer(samples=mono, sample_rate=int(sample_rate))


class AudioPlayer:
    """Plays AudioBuffers through an output device.

    Attributes:
        device: Output device name or index (None for default)
        play_count: Number of buffers scheduled so far
    """

    def __init__(self, device: int | str | None = None) -> None:
        """Initialize audio player.

        Args:
            device: Optional audio device name/index
        """
        self.device = device
        self.play_count = 0
        self._sd: Any = None
        self._stream: Any = None
        self._cursor: _PlaybackCursor | None = None
        self._sample_rate: int | None = None

    @property
    def is_playing(self) -> bool:
        """Check if audio is still being played."""
        return self._stream is not None and bool(self._stream.active)

    def play(self, buffer: AudioBuffer) -> None:
        """Schedule a buffer for playback without waiting for it to finish.

        The buffer is queued behind audio still playing at the same sample
        rate; otherwise a new output stream is opened for it.

        Args:
            buffer: Mono audio to play

        Raises:
            DeviceUnavailable: If the output device cannot be opened
        """
        if len(buffer.samples) == 0:
            return

        if (
            self._cursor is not None
            and self._sample_rate == buffer.sample_rate
            and self.is_playing
            and self._cursor.append(buffer.samples)
        ):
            self.play_count += 1
            return

        self.stop()

        sd = load_sounddevice()
        cursor = _PlaybackCursor(buffer.samples, sd.CallbackStop)
        try:
            stream = sd.OutputStream(
                samplerate=buffer.sample_rate,
                channels=1,
                dtype="float32",
                device=self.device,
                callback=cursor,
                finished_callback=self._on_finished,
            )
            stream.start()
        except (sd.PortAudioError, OSError, ValueError) as e:
            raise DeviceUnavailable(f"Audio output unavailable: {e}") from e

        self._sd = sd
        self._stream = stream
        self._cursor = cursor
        self._sample_rate = buffer.sample_rate
        self.play_count += 1
        logger.debug(
            "Playback started",
            extra={"sample_rate": buffer.sample_rate, "duration_s": buffer.duration_s},
        )

    def play_encoded(self, data: bytes) -> None:
        """Decode and play a compressed audio file (e.g. synthesized MP3).

        Raises:
            ProtocolError: If the audio cannot be decoded
            DeviceUnavailable: If the output device cannot be opened
        """
        self.play(decode_encoded_audio(data))

    def stop(self) -> None:
        """Interrupt current playback, if any."""
        stream, self._stream = self._stream, None
        self._cursor = None
        self._sample_rate = None
        if stream is None:
            return
        try:
            stream.abort()
            stream.close()
        except self._sd.PortAudioError as e:
            logger.debug("Playback stop failed (non-critical)", extra={"error": str(e)})

    def _on_finished(self) -> None:
        logger.debug("Playback finished")
