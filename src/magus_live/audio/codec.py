"""PCM16 audio codec.

Converts captured float samples to the wire representation and back.

Wire format:
    - Channels: mono
    - Bit depth: 16-bit signed integer (little endian)
    - Capture rate: 16kHz, playback rate: 24kHz (both configurable)
    - Transport encoding: base64 inside JSON frames
"""

import base64
import binascii
import re
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

from src.magus_live.errors import ProtocolError

# Audio constants
PCM16_SCALE: int = 32767
BYTES_PER_SAMPLE: int = 2
CHANNELS: int = 1
CAPTURE_SAMPLE_RATE_HZ: int = 16000
PLAYBACK_SAMPLE_RATE_HZ: int = 24000

_RATE_PATTERN = re.compile(r"rate=(\d+)")


@dataclass(frozen=True)
class AudioBuffer:
    """Mono float32 samples tagged with their sample rate.

    Attributes:
        samples: Float samples in [-1, 1]
        sample_rate: Sample rate in Hz
        channels: Channel count (always 1)
    """

    samples: np.ndarray
    sample_rate: int
    channels: int = CHANNELS

    @property
    def duration_s(self) -> float:
        """Buffer duration in seconds."""
        return len(self.samples) / self.sample_rate if self.sample_rate else 0.0


def encode_pcm16(samples: Sequence[float] | np.ndarray) -> bytes:
    """Encode float samples to PCM16 little-endian bytes.

    Each sample is clamped to [-1, 1] and scaled by 32767. Pure function:
    the same input always yields the same bytes.

    Args:
        samples: Float samples

    Returns:
        Raw PCM16 bytes (2 bytes per sample)
    """
    audio = np.clip(np.asarray(samples, dtype=np.float64), -1.0, 1.0)
    scaled = np.round(audio * PCM16_SCALE).astype("<i2")
    return scaled.tobytes()


def decode_pcm16(data: bytes, sample_rate: int) -> AudioBuffer:
    """Decode PCM16 little-endian bytes to a float buffer.

    A trailing odd byte (truncated sample) is discarded.

    Args:
        data: Raw PCM16 bytes
        sample_rate: Sample rate of the audio in Hz

    Returns:
        AudioBuffer with samples divided by 32767
    """
    if len(data) % BYTES_PER_SAMPLE != 0:
        data = data[: len(data) - 1]

    audio_i16 = np.frombuffer(data, dtype="<i2")
    samples = audio_i16.astype(np.float32) / PCM16_SCALE
    return AudioBuffer(samples=samples, sample_rate=sample_rate)


def encode_base64(data: bytes) -> str:
    """Encode raw bytes to a base64 string for JSON transport."""
    return base64.b64encode(data).decode("ascii")


def decode_base64(encoded: str) -> bytes:
    """Decode a base64 string from JSON transport.

    Raises:
        ProtocolError: If the payload is not valid base64
    """
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ProtocolError(f"Failed to decode base64 audio payload: {e}") from e


def pcm_mime_type(sample_rate: int) -> str:
    """Build the PCM mime type advertised for a sample rate."""
    return f"audio/pcm;rate={sample_rate}"


def sample_rate_from_mime(mime_type: str, default: int = PLAYBACK_SAMPLE_RATE_HZ) -> int:
    """Extract the sample rate from a PCM mime type (e.g. ``audio/pcm;rate=24000``)."""
    match = _RATE_PATTERN.search(mime_type)
    return int(match.group(1)) if match else default
