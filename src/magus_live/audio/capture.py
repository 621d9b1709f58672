"""Microphone capture.

The sounddevice input callback runs on the PortAudio thread; captured chunks
are handed to the owning event loop with ``call_soon_threadsafe`` and read
back as an async iterator.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

import numpy as np

from src.magus_live.audio.codec import CAPTURE_SAMPLE_RATE_HZ
from src.magus_live.audio.device import load_sounddevice
from src.magus_live.errors import DeviceUnavailable

logger = logging.getLogger(__name__)


class AudioCapture(ABC):
    """Source of mono float32 microphone chunks."""

    @abstractmethod
    async def start(self) -> None:
        """Acquire the capture device and begin capturing.

        Raises:
            DeviceUnavailable: If the device cannot be acquired
        """

    @abstractmethod
    def chunks(self) -> AsyncIterator[np.ndarray]:
        """Yield captured chunks until capture stops."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop capturing and release the device. Safe to call repeatedly."""

    @property
    @abstractmethod
    def is_active(self) -> bool:
        """Check if the device is currently held."""


class MicrophoneCapture(AudioCapture):
    """Captures microphone audio through sounddevice."""

    def __init__(
        self,
        sample_rate: int = CAPTURE_SAMPLE_RATE_HZ,
        chunk_frames: int = 1600,
        device: int | str | None = None,
        max_pending_chunks: int = 100,
    ) -> None:
        """Initialize microphone capture.

        Args:
            sample_rate: Capture sample rate in Hz
            chunk_frames: Samples per delivered chunk
            device: Optional input device name/index
            max_pending_chunks: Chunks held before the oldest are dropped
        """
        self.sample_rate = sample_rate
        self.chunk_frames = chunk_frames
        self.device = device
        self.dropped_chunks = 0
        self._queue: asyncio.Queue[np.ndarray | None] = asyncio.Queue(
            maxsize=max_pending_chunks
        )
        self._sd: Any = None
        self._stream: Any = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def is_active(self) -> bool:
        return self._stream is not None

    async def start(self) -> None:
        if self._stream is not None:
            return

        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue(maxsize=self._queue.maxsize)
        sd = load_sounddevice()
        try:
            stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=1,
                dtype="float32",
                blocksize=self.chunk_frames,
                device=self.device,
                callback=self._on_audio,
            )
            stream.start()
        except (sd.PortAudioError, OSError, ValueError) as e:
            logger.error("Microphone unavailable", extra={"error": str(e)})
            raise DeviceUnavailable(f"Microphone unavailable: {e}") from e

        self._sd = sd
        self._stream = stream
        logger.info(
            "Microphone capture started",
            extra={"sample_rate": self.sample_rate, "chunk_frames": self.chunk_frames},
        )

    def _on_audio(self, indata: np.ndarray, frames: int, time: Any, status: Any) -> None:
        if status:
            logger.debug("Capture stream status", extra={"status": str(status)})
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._enqueue, indata[:, 0].copy())

    def _enqueue(self, chunk: np.ndarray | None) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped_chunks += 1
        self._queue.put_nowait(chunk)

    async def chunks(self) -> AsyncIterator[np.ndarray]:
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                return
            yield chunk

    async def stop(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return

        try:
            stream.stop()
            stream.close()
        except self._sd.PortAudioError as e:
            logger.debug("Capture stop failed (non-critical)", extra={"error": str(e)})

        # Wake any reader blocked on the queue
        self._enqueue(None)
        logger.info("Microphone capture stopped")
