"""Configuration management for screenshare."""

import copy
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping

import yaml

from screenshare.errors import ConfigurationError
from screenshare.sdp_filter import H264_ONLY, POLICIES

logger = logging.getLogger(__name__)

DEFAULT_HEIGHT = 480
DEFAULT_FRAME_RATE = 60
DEFAULT_BITRATE = 1_000_000


def _default_capture_format() -> str:
    """FFmpeg screen grabber for the current platform."""
    if sys.platform == "darwin":
        return "avfoundation"
    if sys.platform.startswith("win"):
        return "gdigrab"
    return "x11grab"


def _default_display() -> str:
    if sys.platform == "darwin":
        return "1:none"
    if sys.platform.startswith("win"):
        return "desktop"
    return ":0.0"


@dataclass
class IceServerConfig:
    """STUN or TURN server."""

    url: str
    username: str = ""
    credential: str = ""

    @classmethod
    def from_params(cls, params: Mapping[str, Any], prefix: str) -> "IceServerConfig | None":
        """Build a server from flat parameters.

        Reads "<prefix>", "<prefix>User" and "<prefix>Pwd". The url gets a
        "<prefix>:" scheme if it has none.

        Args:
            params: Flat key/value mapping.
            prefix: "turn" or "stun".

        Returns:
            The server, or None if "<prefix>" is not present.
        """
        if not params.get(prefix):
            return None

        url = str(params[prefix])
        if not url.startswith(prefix + ":"):
            url = f"{prefix}:{url}"
        server = cls(url=url)

        if params.get(prefix + "User") is not None:
            server.username = str(params[prefix + "User"])
        if params.get(prefix + "Pwd") is not None:
            server.credential = str(params[prefix + "Pwd"])

        return server


@dataclass
class CaptureConfig:
    """Screen capture and encoding settings."""

    height: int = DEFAULT_HEIGHT
    frame_rate: int = DEFAULT_FRAME_RATE
    bitrate: int = DEFAULT_BITRATE  # bits per second
    display: str = field(default_factory=_default_display)
    format: str = field(default_factory=_default_capture_format)


@dataclass
class Config:
    """Session configuration."""

    turn: IceServerConfig | None = None
    stun: IceServerConfig | None = None
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    policy: str = H264_ONLY.name
    latency_interval: float = 2.0  # seconds
    log_level: str = "INFO"
    log_file: str | None = None

    def ice_servers(self) -> list[IceServerConfig]:
        """STUN (if any) followed by TURN."""
        servers = []
        if self.stun:
            servers.append(self.stun)
        if self.turn:
            servers.append(self.turn)
        return servers


def get_config_path(custom_path: Path | None = None) -> Path:
    """Get the configuration file path.

    Args:
        custom_path: Override path. If None, returns default.

    Returns:
        Path to config file.
    """
    if custom_path is not None:
        return custom_path
    return Path.home() / ".config" / "screenshare" / "config.yaml"


def _default_file_reader(path: Path) -> dict[str, Any] | None:
    """Default file reader that loads YAML from disk."""
    if not path.exists():
        return None
    try:
        content = path.read_text()
        if not content.strip():
            return None
        return yaml.safe_load(content)
    except yaml.YAMLError as e:
        logger.warning(f"Ignoring unreadable config file {path}: {e}")
        return None


def config_from_params(params: Mapping[str, Any], base: Config | None = None) -> Config:
    """Build a config from flat parameters.

    Keys: turn, turnUser, turnPwd, stun, stunUser, stunPwd, height, fps,
    bitrate, display, format. Missing or None values keep the value from
    `base` (or the default).

    Args:
        params: Flat key/value mapping.
        base: Config to start from. Not modified.

    Returns:
        New config.
    """
    config = copy.deepcopy(base) if base is not None else Config()

    for prefix in ("turn", "stun"):
        server = IceServerConfig.from_params(params, prefix)
        current = getattr(config, prefix)
        if server is None:
            if current is None:
                continue
            server = current
            if params.get(prefix + "User") is not None:
                server.username = str(params[prefix + "User"])
            if params.get(prefix + "Pwd") is not None:
                server.credential = str(params[prefix + "Pwd"])
        elif current is not None:
            server.username = server.username or current.username
            server.credential = server.credential or current.credential
        setattr(config, prefix, server)

    capture = config.capture
    if params.get("height") is not None:
        capture.height = int(params["height"])
    if params.get("fps") is not None:
        capture.frame_rate = int(params["fps"])
    if params.get("bitrate") is not None:
        capture.bitrate = int(params["bitrate"])
    if params.get("display"):
        capture.display = str(params["display"])
    if params.get("format"):
        capture.format = str(params["format"])

    return config


def _parse_ice_server(data: dict[str, Any] | str | None, prefix: str) -> IceServerConfig | None:
    """Parse a {url, username, credential} section, or a bare url."""
    if not data:
        return None
    if isinstance(data, str):
        data = {"url": data}
    elif not isinstance(data, dict):
        logger.warning(f"Ignoring {prefix} section, expected a url or a mapping: {data!r}")
        return None
    return IceServerConfig.from_params(
        {
            prefix: data.get("url"),
            prefix + "User": data.get("username"),
            prefix + "Pwd": data.get("credential"),
        },
        prefix,
    )


def load_config(
    path: Path | None = None,
    file_reader: Callable[[Path], dict[str, Any] | None] | None = None,
) -> Config:
    """Load configuration from file.

    Args:
        path: Path to config file. If None, uses default path.
        file_reader: Injectable file reader for testing.

    Returns:
        Config object with values from file or defaults.
    """
    config_path = get_config_path(path)
    reader = file_reader or _default_file_reader

    data = reader(config_path)

    if data is None:
        return Config()

    capture_data = data.get("capture") or {}
    capture_config = CaptureConfig(
        height=capture_data.get("height", DEFAULT_HEIGHT),
        frame_rate=capture_data.get("frame_rate", DEFAULT_FRAME_RATE),
        bitrate=capture_data.get("bitrate", DEFAULT_BITRATE),
        display=capture_data.get("display", _default_display()),
        format=capture_data.get("format", _default_capture_format()),
    )

    return Config(
        turn=_parse_ice_server(data.get("turn"), "turn"),
        stun=_parse_ice_server(data.get("stun"), "stun"),
        capture=capture_config,
        policy=data.get("policy", Config.policy),
        latency_interval=data.get("latency_interval", Config.latency_interval),
        log_level=data.get("log_level", Config.log_level),
        log_file=data.get("log_file", Config.log_file),
    )


def validate_config(config: Config) -> None:
    """Check that a session can be started with this config.

    Args:
        config: Config to check.

    Raises:
        ConfigurationError: If the TURN server, user or password is missing,
            a capture setting is not positive or the codec policy is unknown.
    """
    turn = config.turn
    if turn is None or not turn.username or not turn.credential:
        raise ConfigurationError(
            "TURN server (or user/pwd) not provided. Expected: "
            "turn=example.com:1234 turnUser=me turnPwd=qwerty "
            "(stun, stunUser and stunPwd are optional)"
        )

    capture = config.capture
    for name, value in (
        ("height", capture.height),
        ("frame_rate", capture.frame_rate),
        ("bitrate", capture.bitrate),
    ):
        if not isinstance(value, int) or value <= 0:
            raise ConfigurationError(f"capture {name} must be a positive integer, got {value!r}")

    if config.latency_interval <= 0:
        raise ConfigurationError("latency_interval must be positive")

    if config.policy not in POLICIES:
        raise ConfigurationError(
            f"Unknown codec policy {config.policy!r} (known: {', '.join(sorted(POLICIES))})"
        )

    logger.info(
        f"Requested height: {capture.height} pix, fps: {capture.frame_rate}, "
        f"video bit rate: {capture.bitrate // 1000} kbps"
    )
