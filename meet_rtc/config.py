"""Configuration management for meet-rtc.

This module handles loading configuration from multiple sources with the following priority:
1. CLI arguments (handled by caller)
2. Environment variables (MEET_RTC_HOST, MEET_RTC_PORT, MEDIA_ANNOUNCED_IP, ...)
3. TOML configuration file
4. Default values

Configuration files are loaded from:
- meet-rtc.toml in current working directory
- ~/.meet-rtc/config.toml
"""

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from loguru import logger


@dataclass
class CodecConfig:
    """A media codec the routing context is able to forward.

    Attributes:
        kind: "audio" or "video".
        mime_type: Codec mime type, e.g. "audio/opus".
        clock_rate: RTP clock rate in Hz.
        channels: Channel count (audio only).
        parameters: Codec-specific format parameters.
    """

    kind: str
    mime_type: str
    clock_rate: int
    channels: Optional[int] = None
    parameters: dict = field(default_factory=dict)

    def __post_init__(self):
        """Validate codec configuration after initialization."""
        if self.kind not in ("audio", "video"):
            raise ValueError(f"Codec kind must be 'audio' or 'video', got {self.kind!r}")
        if "/" not in self.mime_type:
            raise ValueError(f"Invalid codec mime type: {self.mime_type!r}")
        if self.clock_rate <= 0:
            raise ValueError("Codec clock rate must be positive")

    @classmethod
    def from_dict(cls, data: dict) -> "CodecConfig":
        """Create CodecConfig from a TOML table or an rtpCapabilities entry."""
        return cls(
            kind=data["kind"],
            mime_type=data.get("mime_type") or data["mimeType"],
            clock_rate=int(data.get("clock_rate") or data["clockRate"]),
            channels=data.get("channels"),
            parameters=dict(data.get("parameters", {})),
        )

    def to_capability(self) -> dict:
        """Render as an entry of an rtpCapabilities ``codecs`` list."""
        capability = {
            "kind": self.kind,
            "mimeType": self.mime_type,
            "clockRate": self.clock_rate,
            "parameters": dict(self.parameters),
        }
        if self.channels is not None:
            capability["channels"] = self.channels
        return capability


DEFAULT_CODECS = [
    CodecConfig(kind="audio", mime_type="audio/opus", clock_rate=48000, channels=2),
    CodecConfig(kind="video", mime_type="video/VP8", clock_rate=90000),
]


@dataclass
class MediaConfig:
    """Settings handed to the media engine when creating routing contexts.

    Attributes:
        listen_ip: Local address transports bind to.
        announced_ip: Public address announced in ICE candidates (NAT setups).
        rtc_min_port: Lowest port of the RTC range.
        rtc_max_port: Highest port of the RTC range.
        codecs: Codecs every routing context supports.
    """

    listen_ip: str = "0.0.0.0"
    announced_ip: Optional[str] = None
    rtc_min_port: int = 40000
    rtc_max_port: int = 49999
    codecs: List[CodecConfig] = field(default_factory=lambda: list(DEFAULT_CODECS))

    def __post_init__(self):
        """Validate the port range."""
        if not 0 < self.rtc_min_port <= self.rtc_max_port <= 65535:
            raise ValueError(
                f"Invalid RTC port range: {self.rtc_min_port}-{self.rtc_max_port}"
            )

    @classmethod
    def from_dict(cls, data: dict) -> "MediaConfig":
        """Create MediaConfig from the TOML [media] section.

        Invalid codec entries are skipped with a warning.
        """
        codecs = []
        for entry in data.get("codecs", []):
            try:
                codecs.append(CodecConfig.from_dict(entry))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping invalid codec entry {entry}: {e}")

        return cls(
            listen_ip=data.get("listen_ip", "0.0.0.0"),
            announced_ip=data.get("announced_ip"),
            rtc_min_port=int(data.get("rtc_min_port", 40000)),
            rtc_max_port=int(data.get("rtc_max_port", 49999)),
            codecs=codecs or list(DEFAULT_CODECS),
        )


DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 5000
DEFAULT_SIGNALING_URL = "ws://localhost:5000"
DEFAULT_PING_INTERVAL = 20.0
DEFAULT_PING_TIMEOUT = 20.0
DEFAULT_PENDING_SIGNAL_CAP = 64


class Config:
    """Configuration manager for meet-rtc."""

    def __init__(self):
        """Initialize configuration with defaults."""
        self.host: str = DEFAULT_HOST
        self.port: int = DEFAULT_PORT
        self.signaling_url: str = DEFAULT_SIGNALING_URL
        self.ping_interval: float = DEFAULT_PING_INTERVAL
        self.ping_timeout: float = DEFAULT_PING_TIMEOUT
        self.pending_signal_cap: int = DEFAULT_PENDING_SIGNAL_CAP
        self.media: MediaConfig = MediaConfig()
        self._config_data: dict = {}

    def load(self) -> None:
        """Load configuration from all sources.

        Priority order:
        1. Environment variables
        2. TOML configuration file
        3. Default values
        """
        config_file = self._find_config_file()
        if config_file:
            self._load_config_file(config_file)

        self._apply_env_overrides()

    def _find_config_file(self) -> Optional[Path]:
        """Find the configuration file.

        Searches in order:
        1. meet-rtc.toml in current working directory
        2. ~/.meet-rtc/config.toml

        Returns:
            Path to config file if found, None otherwise.
        """
        cwd_config = Path.cwd() / "meet-rtc.toml"
        if cwd_config.exists():
            logger.info(f"Loading config from {cwd_config}")
            return cwd_config

        home_config = Path.home() / ".meet-rtc" / "config.toml"
        if home_config.exists():
            logger.info(f"Loading config from {home_config}")
            return home_config

        logger.debug("No config file found, using defaults")
        return None

    def _load_config_file(self, config_file: Path) -> None:
        """Load configuration from TOML file.

        Args:
            config_file: Path to the TOML configuration file.
        """
        try:
            with open(config_file, "rb") as f:
                self._config_data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.warning(f"Failed to load config file {config_file}: {e}. Using defaults.")
            return

        server = self._config_data.get("server", {})
        self.host = server.get("host", self.host)
        self.port = self._as_number(server, "port", self.port, int)
        self.signaling_url = server.get("signaling_url", self.signaling_url)
        self.ping_interval = self._as_number(
            server, "ping_interval", self.ping_interval, float
        )
        self.ping_timeout = self._as_number(
            server, "ping_timeout", self.ping_timeout, float
        )
        self.pending_signal_cap = self._as_number(
            server, "pending_signal_cap", self.pending_signal_cap, int
        )

        if "media" in self._config_data:
            try:
                self.media = MediaConfig.from_dict(self._config_data["media"])
            except (TypeError, ValueError) as e:
                logger.warning(f"Invalid [media] section: {e}. Using defaults.")

    @staticmethod
    def _as_number(section: dict, key: str, default, cast):
        if key not in section:
            return default
        try:
            return cast(section[key])
        except (TypeError, ValueError):
            logger.warning(f"Invalid value for '{key}': {section[key]!r}. Using {default}.")
            return default

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides.

        Environment variables take precedence over config file settings
        but are overridden by CLI arguments (handled by caller).
        """
        host_override = os.getenv("MEET_RTC_HOST")
        if host_override:
            self.host = host_override
            logger.info(f"Overriding host from env: {self.host}")

        port_override = os.getenv("MEET_RTC_PORT")
        if port_override:
            self.port = self._as_number({"port": port_override}, "port", self.port, int)

        url_override = os.getenv("MEET_RTC_SIGNALING_URL")
        if url_override:
            self.signaling_url = url_override
            logger.info(f"Overriding signaling_url from env: {self.signaling_url}")

        listen_ip = os.getenv("MEDIA_LISTEN_IP")
        if listen_ip:
            self.media.listen_ip = listen_ip

        announced_ip = os.getenv("MEDIA_ANNOUNCED_IP")
        if announced_ip:
            self.media.announced_ip = announced_ip

        min_port = os.getenv("RTC_MIN_PORT")
        max_port = os.getenv("RTC_MAX_PORT")
        if min_port or max_port:
            try:
                self.media = MediaConfig(
                    listen_ip=self.media.listen_ip,
                    announced_ip=self.media.announced_ip,
                    rtc_min_port=int(min_port or self.media.rtc_min_port),
                    rtc_max_port=int(max_port or self.media.rtc_max_port),
                    codecs=self.media.codecs,
                )
            except ValueError as e:
                logger.warning(f"Ignoring RTC port range from env: {e}")


# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance.

    Loads configuration on first call.

    Returns:
        Global Config instance.
    """
    global _config
    if _config is None:
        _config = Config()
        _config.load()
    return _config


def reload_config() -> Config:
    """Reload configuration from sources.

    Useful for testing or runtime reconfiguration.

    Returns:
        Reloaded Config instance.
    """
    global _config
    _config = Config()
    _config.load()
    return _config
