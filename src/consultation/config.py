"""Configuration schema for consultation sessions.

Defines Pydantic models for loading and validating configuration from YAML
files and environment variables.
"""

from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator


class DeliveryPolicy(str, Enum):
    """How chat messages reach the remote participant.

    - RELAY_ON_FAILURE: authoritative store; relay envelope only if the store fails
    - DUAL: always both paths, merged by id on receipt
    - AUTHORITATIVE_ONLY: store only; a store failure is raised to the caller
    """

    RELAY_ON_FAILURE = "relay-on-failure"
    DUAL = "dual"
    AUTHORITATIVE_ONLY = "authoritative-only"


class RedisConfig(BaseModel):
    """Redis configuration for the shared signal channel and stores."""

    url: str = Field(
        default="redis://localhost:6379",
        description="Redis connection URL",
    )
    db: int = Field(default=0, ge=0, le=15, description="Redis database number")
    key_prefix: str = Field(
        default="consult:",
        description="Key prefix for all consultation keys and channels",
    )
    connection_pool_size: int = Field(
        default=10,
        ge=1,
        description="Redis connection pool size",
    )
    signal_history_maxlen: int = Field(
        default=1000,
        ge=10,
        description="Approximate maximum envelopes retained per session stream",
    )


class TransportConfig(BaseModel):
    """Signal channel backend selection."""

    backend: Literal["memory", "redis"] = Field(
        default="memory",
        description="memory: single process (tests, demos); redis: shared across processes",
    )


class RetryConfig(BaseModel):
    """Retry-with-backoff policy for channel operations."""

    max_attempts: int = Field(default=5, ge=1, le=20, description="Attempts before giving up")
    initial_backoff_s: float = Field(default=0.2, gt=0, description="First retry delay")
    max_backoff_s: float = Field(default=5.0, gt=0, description="Upper bound on retry delay")

    @model_validator(mode="after")
    def validate_backoff_bounds(self) -> "RetryConfig":
        if self.max_backoff_s < self.initial_backoff_s:
            raise ValueError("max_backoff_s must be >= initial_backoff_s")
        return self


class IceServerConfig(BaseModel):
    """STUN/TURN server entry."""

    urls: list[str] = Field(..., min_length=1)
    username: str | None = None
    credential: str | None = None

    @field_validator("urls")
    @classmethod
    def validate_urls(cls, v: list[str]) -> list[str]:
        """Validate ICE server URL schemes."""
        for url in v:
            if not url.startswith(("stun:", "turn:", "turns:")):
                raise ValueError(f"ICE server URL must start with stun:, turn: or turns:, got '{url}'")
        return v


class SignalingConfig(BaseModel):
    """Peer transport negotiation configuration."""

    ice_servers: list[IceServerConfig] = Field(
        default_factory=lambda: [IceServerConfig(urls=["stun:stun.l.google.com:19302"])],
        description="ICE servers handed to the peer connection",
    )


class MediaConfig(BaseModel):
    """Local media acquisition configuration."""

    audio_device: str | None = Field(
        default=None,
        description="Capture device for audio (e.g. 'default' with format 'pulse'); synthetic if unset",
    )
    video_device: str | None = Field(
        default=None,
        description="Capture device for video (e.g. '/dev/video0' with format 'v4l2'); synthetic if unset",
    )
    audio_format: str | None = Field(default=None, description="FFmpeg input format for audio")
    video_format: str | None = Field(default=None, description="FFmpeg input format for video")
    video_size: str = Field(default="640x480", description="Capture size WIDTHxHEIGHT")
    allow_degraded: bool = Field(
        default=True,
        description="Fall back to audio-only / receive-only when a device is denied",
    )

    @field_validator("video_size")
    @classmethod
    def validate_video_size(cls, v: str) -> str:
        width, sep, height = v.partition("x")
        if not sep or not width.isdigit() or not height.isdigit():
            raise ValueError(f"video_size must look like WIDTHxHEIGHT, got '{v}'")
        return v


class LobbyConfig(BaseModel):
    """Waiting room configuration."""

    admission_timeout_s: float | None = Field(
        default=None,
        ge=1.0,
        description="Give up waiting for admission after this many seconds (None: wait indefinitely)",
    )
    send_admit_ack: bool = Field(
        default=True,
        description="Patient acknowledges admission so the provider clears its indicator",
    )


class ChatConfig(BaseModel):
    """Consultation chat configuration."""

    delivery_policy: DeliveryPolicy = Field(default=DeliveryPolicy.RELAY_ON_FAILURE)
    max_message_length: int = Field(default=4000, ge=1, le=100_000)


class ConsultationConfig(BaseModel):
    """Root consultation configuration."""

    transport: TransportConfig = Field(default_factory=TransportConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    signaling: SignalingConfig = Field(default_factory=SignalingConfig)
    media: MediaConfig = Field(default_factory=MediaConfig)
    lobby: LobbyConfig = Field(default_factory=LobbyConfig)
    chat: ChatConfig = Field(default_factory=ChatConfig)

    # Operational settings
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    log_format: Literal["text", "json"] = Field(default="text")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got '{v}'")
        return v.upper()

    @classmethod
    def from_yaml(cls, path: Path) -> "ConsultationConfig":
        """Load configuration from YAML file with environment variable overrides.

        Args:
            path: Path to YAML configuration file

        Returns:
            Loaded configuration

        Raises:
            FileNotFoundError: If configuration file doesn't exist
            ValueError: If YAML is invalid or validation fails
        """
        import os

        import yaml  # type: ignore[import-untyped]

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f"Configuration root must be a mapping: {path}")

        if redis_url := os.getenv("REDIS_URL"):
            data.setdefault("redis", {})["url"] = redis_url

        if backend := os.getenv("CONSULT_TRANSPORT"):
            data.setdefault("transport", {})["backend"] = backend

        if log_level := os.getenv("CONSULT_LOG_LEVEL"):
            data["log_level"] = log_level

        if stun_url := os.getenv("CONSULT_STUN_URL"):
            data.setdefault("signaling", {})["ice_servers"] = [{"urls": [stun_url]}]

        if admission_timeout := os.getenv("CONSULT_ADMISSION_TIMEOUT_S"):
            data.setdefault("lobby", {})["admission_timeout_s"] = float(admission_timeout)

        return cls.model_validate(data)

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "ConsultationConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Args:
            path: Optional path to YAML configuration file

        Returns:
            Loaded configuration or defaults
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls()
