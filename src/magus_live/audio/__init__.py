"""Audio utilities for PCM16 encoding, microphone capture and playback.

Microphone audio is captured at 16kHz mono float32, encoded to 16-bit
little-endian PCM and base64 for JSON transport. Replies are decoded back to
float buffers (24kHz for live replies) and played on the output device.
"""

from .capture import AudioCapture, MicrophoneCapture
from .codec import (
    AudioBuffer,
    decode_base64,
    decode_pcm16,
    encode_base64,
    encode_pcm16,
    pcm_mime_type,
    sample_rate_from_mime,
)
from .player import AudioPlayer, decode_encoded_audio

__all__ = [
    "AudioBuffer",
    "AudioCapture",
    "AudioPlayer",
    "MicrophoneCapture",
    "decode_base64",
    "decode_encoded_audio",
    "decode_pcm16",
    "encode_base64",
    "encode_pcm16",
    "pcm_mime_type",
    "sample_rate_from_mime",
]
