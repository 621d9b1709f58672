"""Integration test fixtures and utilities.

Provides shared fixtures for:
- Scripted edge function endpoints served by aiohttp TestServer
- Synthetic encoded audio for speech endpoint replies
"""

import io
import logging
from collections.abc import AsyncIterator

import numpy as np
import pytest
import soundfile as sf
from aiohttp import web
from aiohttp.test_utils import TestServer

from tests.helpers.http_stub import StubEndpoint

logger = logging.getLogger(__name__)


@pytest.fixture
def stub() -> StubEndpoint:
    """Create a stub endpoint with an empty script."""
    return StubEndpoint()


@pytest.fixture
async def stub_server(stub: StubEndpoint) -> AsyncIterator[TestServer]:
    """Serve the stub endpoint on every POST path."""
    app = web.Application()
    app.router.add_post("/{name}", stub.handle)
    async with TestServer(app) as server:
        logger.debug("Stub server listening", extra={"port": server.port})
        yield server


@pytest.fixture
def wav_bytes() -> bytes:
    """Generate 100ms of a 440Hz tone as a 16kHz WAV file."""
    sample_rate = 16000
    t = np.arange(sample_rate // 10) / sample_rate
    tone = (0.3 * np.sin(2 * np.pi * 440 * t)).astype(np.float32)
    data = io.BytesIO()
    sf.write(data, tone, sample_rate, format="WAV")
    return data.getvalue()
