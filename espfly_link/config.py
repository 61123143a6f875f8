"""Configuration loader for espfly-link."""

from __future__ import annotations

from configparser import ConfigParser
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .crtp.dispatcher import DEFAULT_CONTROL_HZ
from .crtp.transport import (
    DEFAULT_DEVICE_HOST,
    DEFAULT_DEVICE_PORT,
    DEFAULT_LOCAL_PORT,
    DEFAULT_MAX_QUEUE,
    DEFAULT_RECV_TIMEOUT_S,
)

DEFAULT_CONFIG_PATH = Path("~/.config/espfly-link/espfly-link.cfg").expanduser()


@dataclass(slots=True)
class LinkConfig:
    remote_host: str = DEFAULT_DEVICE_HOST
    remote_port: int = DEFAULT_DEVICE_PORT
    local_port: int = DEFAULT_LOCAL_PORT
    recv_timeout_s: float = DEFAULT_RECV_TIMEOUT_S
    max_queue: int = DEFAULT_MAX_QUEUE
    control_hz: float = DEFAULT_CONTROL_HZ


@dataclass(slots=True)
class BridgeConfig:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 8765


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = None


@dataclass(slots=True)
class AppConfig:
    link: LinkConfig
    bridge: BridgeConfig
    logging: LoggingConfig
    path: Path


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = path or DEFAULT_CONFIG_PATH
    parser = ConfigParser()
    parser.read_dict(
        {
            "link": {
                "remote_host": DEFAULT_DEVICE_HOST,
                "remote_port": str(DEFAULT_DEVICE_PORT),
                "local_port": str(DEFAULT_LOCAL_PORT),
                "recv_timeout_s": str(DEFAULT_RECV_TIMEOUT_S),
                "max_queue": str(DEFAULT_MAX_QUEUE),
                "control_hz": str(DEFAULT_CONTROL_HZ),
            },
            "bridge": {
                "enabled": "false",
                "host": "127.0.0.1",
                "port": "8765",
            },
            "logging": {
                "level": "INFO",
                "path": "",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    control_hz = parser.getfloat("link", "control_hz")
    if control_hz <= 0:
        raise ValueError(f"link.control_hz must be > 0, got {control_hz}")

    link = LinkConfig(
        remote_host=parser.get("link", "remote_host").strip(),
        remote_port=parser.getint("link", "remote_port"),
        local_port=parser.getint("link", "local_port"),
        recv_timeout_s=parser.getfloat("link", "recv_timeout_s"),
        max_queue=parser.getint("link", "max_queue"),
        control_hz=control_hz,
    )

    bridge = BridgeConfig(
        enabled=parser.getboolean("bridge", "enabled"),
        host=parser.get("bridge", "host").strip(),
        port=parser.getint("bridge", "port"),
    )

    log_path_value = parser.get("logging", "path").strip()
    logging_config = LoggingConfig(
        level=parser.get("logging", "level").strip() or "INFO",
        path=Path(log_path_value).expanduser() if log_path_value else None,
    )

    return AppConfig(link=link, bridge=bridge, logging=logging_config, path=config_path)
