"""Audio device backend loading."""

from typing import Any

from src.magus_live.errors import DeviceUnavailable


def load_sounddevice() -> Any:
    """Import sounddevice on first device use.

    sounddevice loads the PortAudio shared library at import time, so the
    import is deferred until a stream is actually opened.

    Returns:
        The sounddevice module

    Raises:
        DeviceUnavailable: If the PortAudio library cannot be loaded
    """
    try:
        import sounddevice as sd
    except OSError as e:
        raise DeviceUnavailable(f"Audio backend unavailable: {e}") from e
    return sd
