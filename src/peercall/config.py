"""Configuration schema for the call client.

Defines Pydantic models for loading and validating call configuration
from YAML files and environment variables.
"""

from pathlib import Path
from urllib.parse import urlencode

from pydantic import BaseModel, Field, field_validator

# Target languages offered for caption translation
SUPPORTED_LANGUAGES: dict[str, str] = {
    "en": "English",
    "es": "Spanish",
    "fr": "French",
    "de": "German",
    "zh": "Chinese",
    "ar": "Arabic",
}

DEFAULT_STUN_SERVERS: tuple[str, ...] = (
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
)


class RelayConfig(BaseModel):
    """Relay service endpoints."""

    backend_url: str = Field(
        default="ws://localhost:8000",
        description="Base websocket URL of the relay service",
    )
    signaling_path: str = Field(default="/ws/signaling", description="Signaling channel path")
    captions_path: str = Field(
        default="/ws/captions/{room_id}",
        description="Caption channel path template (must contain {room_id})",
    )
    max_message_size: int = Field(
        default=2**20, ge=1024, description="Maximum inbound websocket message size in bytes"
    )

    @field_validator("backend_url")
    @classmethod
    def validate_backend_url(cls, v: str) -> str:
        """Validate that the relay URL uses a websocket scheme."""
        if not v.startswith(("ws://", "wss://")):
            raise ValueError(f"Relay backend_url must start with ws:// or wss://, got '{v}'")
        return v.rstrip("/")

    @field_validator("captions_path")
    @classmethod
    def validate_captions_path(cls, v: str) -> str:
        """Validate that the caption path is scoped to a room."""
        if "{room_id}" not in v:
            raise ValueError(f"Relay captions_path must contain '{{room_id}}', got '{v}'")
        return v

    def signaling_url(self) -> str:
        """Full signaling channel URL."""
        return f"{self.backend_url}{self.signaling_path}"

    def captions_url(self, room_id: str, language: str | None = None) -> str:
        """Full caption channel URL for a room.

        Args:
            room_id: Room identifier
            language: Translation language requested from the caption service
                (sent as the ``lang`` query parameter)
        """
        url = f"{self.backend_url}{self.captions_path.format(room_id=room_id)}"
        if language:
            url = f"{url}?{urlencode({'lang': language})}"
        return url


class IceServerConfig(BaseModel):
    """STUN/TURN server entry."""

    urls: list[str] = Field(..., min_length=1, description="STUN/TURN URLs")
    username: str | None = Field(default=None, description="TURN username")
    credential: str | None = Field(default=None, description="TURN credential")

    @field_validator("urls")
    @classmethod
    def validate_urls(cls, v: list[str]) -> list[str]:
        """Validate ICE server URL schemes."""
        for url in v:
            if not url.startswith(("stun:", "stuns:", "turn:", "turns:")):
                raise ValueError(f"ICE server URL must be stun:/turn:, got '{url}'")
        return v


class MediaConfig(BaseModel):
    """Local media capture configuration.

    Devices are opened with aiortc's MediaPlayer, so ``*_format`` is an
    ffmpeg input format name (pulse, alsa, avfoundation, dshow, v4l2).
    """

    audio: bool = Field(default=True, description="Capture microphone audio")
    video: bool = Field(default=True, description="Capture camera video")
    audio_device: str = Field(default="default", description="Audio capture device")
    audio_format: str = Field(default="pulse", description="ffmpeg audio input format")
    video_device: str = Field(default="/dev/video0", description="Video capture device")
    video_format: str = Field(default="v4l2", description="ffmpeg video input format")
    video_size: str = Field(default="1280x720", description="Requested capture size WxH")
    framerate: int = Field(default=30, ge=1, le=120, description="Requested capture framerate")

    @field_validator("video_size")
    @classmethod
    def validate_video_size(cls, v: str) -> str:
        """Validate WxH size format."""
        width, sep, height = v.partition("x")
        if not sep or not width.isdigit() or not height.isdigit():
            raise ValueError(f"Media video_size must look like 1280x720, got '{v}'")
        return v


class CaptionConfig(BaseModel):
    """Caption channel and transcript configuration."""

    self_speaker: str = Field(
        default="You",
        min_length=1,
        description="Speaker label the caption service uses for the local participant",
    )
    target_language: str = Field(default="en", description="Caption translation language")
    forward_audio: bool = Field(
        default=False,
        description="Forward local microphone PCM to the caption channel for transcription",
    )
    audio_sample_rate: int = Field(
        default=16000, description="Sample rate of forwarded PCM fragments"
    )
    export_dir: Path = Field(default=Path("."), description="Directory for saved transcripts")

    @field_validator("audio_sample_rate")
    @classmethod
    def validate_audio_sample_rate(cls, v: int) -> int:
        """Validate forwarded audio sample rate."""
        valid_rates = [8000, 16000, 24000, 48000]
        if v not in valid_rates:
            raise ValueError(f"Caption audio_sample_rate must be one of {valid_rates}, got {v}")
        return v

    @field_validator("target_language")
    @classmethod
    def validate_target_language(cls, v: str) -> str:
        """Validate that the translation language is offered."""
        v = v.lower()
        if v not in SUPPORTED_LANGUAGES:
            raise ValueError(
                f"Caption target_language must be one of {sorted(SUPPORTED_LANGUAGES)}, got '{v}'"
            )
        return v


class CallConfig(BaseModel):
    """Root call configuration."""

    relay: RelayConfig = Field(default_factory=RelayConfig)
    ice_servers: list[IceServerConfig] = Field(
        default_factory=lambda: [IceServerConfig(urls=[url]) for url in DEFAULT_STUN_SERVERS]
    )
    media: MediaConfig = Field(default_factory=MediaConfig)
    captions: CaptionConfig = Field(default_factory=CaptionConfig)

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate logging level name."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v = v.upper()
        if v not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got '{v}'")
        return v

    @classmethod
    def from_yaml(cls, path: Path) -> "CallConfig":
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

        if not isinstance(data, dict):
            raise ValueError(f"Configuration root must be a mapping: {path}")

        return cls.model_validate(_apply_env_overrides(data))

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "CallConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Environment overrides apply in both cases.

        Args:
            path: Optional path to YAML configuration file

        Returns:
            Loaded configuration or defaults
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls.model_validate(_apply_env_overrides({}))


def _apply_env_overrides(data: dict) -> dict:
    """Overlay environment variables onto raw configuration data."""
    import os

    if backend_url := os.getenv("PEERCALL_BACKEND_URL"):
        data.setdefault("relay", {})["backend_url"] = backend_url

    if log_level := os.getenv("PEERCALL_LOG_LEVEL"):
        data["log_level"] = log_level

    if target_language := os.getenv("PEERCALL_TARGET_LANGUAGE"):
        data.setdefault("captions", {})["target_language"] = target_language

    extra_servers: list[dict] = []
    if stun_url := os.getenv("STUN_SERVER_URL"):
        extra_servers.append({"urls": [stun_url]})

    turn_url = os.getenv("TURN_SERVER_URL")
    if turn_url:
        extra_servers.append(
            {
                "urls": [turn_url],
                "username": os.getenv("TURN_USERNAME"),
                "credential": os.getenv("TURN_CREDENTIAL"),
            }
        )

    if extra_servers:
        servers = data.get("ice_servers")
        if servers is None:
            servers = [{"urls": [url]} for url in DEFAULT_STUN_SERVERS]
        # Explicit servers take priority over the public fallbacks
        data["ice_servers"] = extra_servers + list(servers)

    return data
