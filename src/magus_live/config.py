"""Configuration schema for live conversation sessions.

Defines Pydantic models for loading and validating session configuration
from YAML files and environment variables. Provider keys, endpoint URLs,
model and voice identifiers are injected here and nowhere else.
"""

import os
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator

DEFAULT_SYSTEM_PROMPT = (
    "Você é MAGUS, uma inteligência artificial avançada da UMIND SALES. "
    "Seja natural, direto e útil em todas as suas capacidades."
)

LIVE_ENDPOINT_URL = (
    "wss://generativelanguage.googleapis.com/ws/"
    "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent"
)

SessionMode = Literal["live", "relay", "http"]
ProviderName = Literal["google", "claude", "openai"]


class ProviderConfig(BaseModel):
    """Remote generative endpoint configuration.

    Modes:
    - live: bidirectional audio/text session with the generative endpoint
    - relay: JSON relay through the stream-<provider> edge function
    - http: single-shot chat-<provider> requests with spoken replies
    """

    mode: SessionMode = Field(default="live", description="Transport shape")
    provider: ProviderName = Field(default="google", description="AI provider")
    api_key: str | None = Field(default=None, description="Provider API key (live mode)")
    url: str | None = Field(
        default=None,
        description="Explicit endpoint URL (derived from mode/provider when unset)",
    )
    functions_base_url: str = Field(
        default="https://localhost:54321/functions/v1",
        description="Edge function host used to derive relay and chat URLs",
    )
    model: str = Field(default="models/gemini-2.0-flash-exp", description="Model identifier")
    voice: str = Field(default="Puck", description="Voice identifier for spoken replies")
    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT, description="Base system prompt")
    temperature: float = Field(default=0.8, ge=0.0, le=2.0, description="Sampling temperature")
    max_output_tokens: int = Field(default=800, ge=1, description="Reply token limit")
    response_modalities: list[Literal["AUDIO", "TEXT"]] = Field(
        default_factory=lambda: ["AUDIO"],
        description="Reply modalities requested in live mode",
    )

    @field_validator("functions_base_url")
    @classmethod
    def validate_functions_base_url(cls, v: str) -> str:
        """Validate that the functions host is an http(s) URL."""
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"functions_base_url must be an http(s) URL, got '{v}'")
        return v.rstrip("/")

    @field_validator("response_modalities")
    @classmethod
    def validate_response_modalities(cls, v: list[str]) -> list[str]:
        """Validate that at least one reply modality is requested."""
        if not v:
            raise ValueError("response_modalities must not be empty")
        return v

    def resolve_url(self) -> str:
        """Resolve the endpoint URL for the configured mode and provider.

        Returns:
            Endpoint URL (ws(s) for live/relay, http(s) for http mode)

        Raises:
            ValueError: If live mode has neither an explicit URL nor an API key
        """
        if self.url:
            return self.url

        if self.mode == "live":
            if not self.api_key:
                raise ValueError("live mode requires api_key or an explicit url")
            return f"{LIVE_ENDPOINT_URL}?key={self.api_key}"

        if self.mode == "relay":
            ws_base = self.functions_base_url.replace("https://", "wss://", 1).replace(
                "http://", "ws://", 1
            )
            return f"{ws_base}/stream-{self.provider}"

        return f"{self.functions_base_url}/chat-{self.provider}"


class AudioConfig(BaseModel):
    """Audio capture and playback configuration."""

    capture_sample_rate: int = Field(default=16000, description="Microphone sample rate in Hz")
    playback_sample_rate: int = Field(
        default=24000, description="Sample rate of received PCM replies in Hz"
    )
    chunk_duration_ms: int = Field(
        default=100, ge=10, le=1000, description="Duration of each captured chunk"
    )
    input_device: int | str | None = Field(default=None, description="Capture device")
    output_device: int | str | None = Field(default=None, description="Playback device")

    @field_validator("capture_sample_rate", "playback_sample_rate")
    @classmethod
    def validate_sample_rate(cls, v: int) -> int:
        """Validate that the sample rate is a common PCM rate."""
        valid_rates = [8000, 16000, 22050, 24000, 32000, 44100, 48000]
        if v not in valid_rates:
            raise ValueError(f"sample rate must be one of {valid_rates}, got {v}")
        return v

    @property
    def capture_chunk_frames(self) -> int:
        """Samples per captured chunk."""
        return self.capture_sample_rate * self.chunk_duration_ms // 1000


class ReconnectConfig(BaseModel):
    """Automatic reconnection configuration."""

    max_attempts: int = Field(default=5, ge=0, le=50, description="Reconnect attempt cap")
    base_delay_ms: int = Field(
        default=1000,
        ge=0,
        description="Delay unit; attempt N waits base_delay_ms * N",
    )


class TimeoutConfig(BaseModel):
    """Bounded waits for connection establishment and replies."""

    connect_timeout_s: float = Field(default=10.0, gt=0, le=120, description="Open timeout")
    reply_timeout_s: float = Field(
        default=30.0, gt=0, le=600, description="Wait for first reply event after a turn"
    )


class SpeechConfig(BaseModel):
    """Text-to-speech configuration for replies that arrive as text only."""

    url: str | None = Field(default=None, description="Remote synthesis endpoint")
    voice: str = Field(default="pt-BR-Standard-A", description="Remote voice name")
    language_code: str = Field(default="pt-BR", description="BCP-47 language code")
    fallback_enabled: bool = Field(default=True, description="Use on-device synthesis on failure")
    fallback_rate: int = Field(default=180, ge=50, le=400, description="Fallback words per minute")

    @field_validator("language_code")
    @classmethod
    def validate_language_code(cls, v: str) -> str:
        """Validate BCP-47 style language code (e.g. pt-BR)."""
        parts = v.split("-")
        if len(parts[0]) != 2 or not parts[0].isalpha():
            raise ValueError(f"language_code must look like 'pt-BR', got '{v}'")
        return v


class MagusConfig(BaseModel):
    """Root session configuration."""

    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    speech: SpeechConfig = Field(default_factory=SpeechConfig)

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate logging level name."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got '{v}'")
        return v.upper()

    @staticmethod
    def _apply_env_overrides(data: dict) -> dict:  # type: ignore[type-arg]
        """Overlay environment variables onto raw configuration data."""
        provider = data.setdefault("provider", {})

        if mode := os.getenv("MAGUS_MODE"):
            provider["mode"] = mode
        if provider_name := os.getenv("MAGUS_PROVIDER"):
            provider["provider"] = provider_name
        if url := os.getenv("MAGUS_PROVIDER_URL"):
            provider["url"] = url
        if functions_url := os.getenv("MAGUS_FUNCTIONS_URL"):
            provider["functions_base_url"] = functions_url
        if api_key := os.getenv("GOOGLE_API_KEY"):
            provider["api_key"] = api_key

        if tts_url := os.getenv("MAGUS_TTS_URL"):
            data.setdefault("speech", {})["url"] = tts_url

        if log_level := os.getenv("MAGUS_LOG_LEVEL"):
            data["log_level"] = log_level

        return data

    @classmethod
    def from_yaml(cls, path: Path) -> "MagusConfig":
        """Load configuration from YAML file with environment variable overrides.

        Args:
            path: Path to YAML configuration file

        Returns:
            Loaded configuration

        Raises:
            FileNotFoundError: If configuration file doesn't exist
            ValueError: If YAML is invalid or validation fails
        """
        import yaml  # type: ignore[import-untyped]

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        return cls.model_validate(cls._apply_env_overrides(data))

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "MagusConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Environment overrides apply in both cases.

        Args:
            path: Optional path to YAML configuration file

        Returns:
            Loaded configuration or defaults
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls.model_validate(cls._apply_env_overrides({}))
