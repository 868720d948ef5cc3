"""Configuration loader for rc-relay."""

from __future__ import annotations

import os
from configparser import ConfigParser
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from . import constants


@dataclass(slots=True)
class RelayConfig:
    host: str = constants.DEFAULT_RELAY_HOST
    port: int = constants.DEFAULT_RELAY_PORT
    subscriber_queue_size: int = constants.DEFAULT_SUBSCRIBER_QUEUE_SIZE
    heartbeat_seconds: float = 30.0  # websocket ping interval, 0 disables


@dataclass(slots=True)
class DeviceConfig:
    server_url: str = constants.DEFAULT_SERVER_URL
    stop_on_disconnect: bool = False
    health_host: str = "127.0.0.1"
    health_port: int = 0
    wifi_ssid: Optional[str] = None  # consumed by the network-association layer
    wifi_password: Optional[str] = None


@dataclass(slots=True)
class ResilienceConfig:
    reconnect_initial_seconds: float = 1.0
    reconnect_max_seconds: float = 30.0
    reconnect_jitter_ratio: float = 0.5
    reconnect_degraded_after: int = 10


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = None
    log_network: bool = False


@dataclass(slots=True)
class RcRelayConfig:
    relay: RelayConfig
    device: DeviceConfig
    resilience: ResilienceConfig
    logging: LoggingConfig
    raw: ConfigParser
    path: Path


def _clamp_port(value: int) -> int:
    return max(0, min(65535, value))


def _optional(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def load_config(
    path: Optional[Path] = None, *, environ: Optional[Mapping[str, str]] = None
) -> RcRelayConfig:
    """Load configuration from disk, applying defaults where necessary.

    ``environ`` defaults to ``os.environ``; ``RC_RELAY_SERVER_URL`` overrides
    the device's relay URL.
    """

    config_path = path or constants.DEFAULT_CONFIG_PATH
    env = os.environ if environ is None else environ

    parser = ConfigParser()
    parser.read_dict(
        {
            "relay": {
                "host": constants.DEFAULT_RELAY_HOST,
                "port": str(constants.DEFAULT_RELAY_PORT),
                "subscriber_queue_size": str(constants.DEFAULT_SUBSCRIBER_QUEUE_SIZE),
                "heartbeat_seconds": "30.0",
            },
            "device": {
                "server_url": constants.DEFAULT_SERVER_URL,
                "stop_on_disconnect": "false",
                "health_host": "127.0.0.1",
                "health_port": "0",
            },
            "resilience": {
                "reconnect_initial_seconds": "1.0",
                "reconnect_max_seconds": "30.0",
                "reconnect_jitter_ratio": "0.5",
                "reconnect_degraded_after": "10",
            },
            "logging": {
                "level": "INFO",
                "path": "",
                "log_network": "false",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    server_url_override = env.get(constants.SERVER_URL_ENV)
    if server_url_override:
        parser.set("device", "server_url", server_url_override)

    relay = RelayConfig(
        host=parser.get("relay", "host"),
        port=_clamp_port(
            parser.getint("relay", "port", fallback=constants.DEFAULT_RELAY_PORT)
        ),
        subscriber_queue_size=max(
            1,
            parser.getint(
                "relay",
                "subscriber_queue_size",
                fallback=constants.DEFAULT_SUBSCRIBER_QUEUE_SIZE,
            ),
        ),
        heartbeat_seconds=max(
            0.0, parser.getfloat("relay", "heartbeat_seconds", fallback=30.0)
        ),
    )

    device = DeviceConfig(
        server_url=parser.get("device", "server_url"),
        stop_on_disconnect=parser.getboolean(
            "device", "stop_on_disconnect", fallback=False
        ),
        health_host=parser.get("device", "health_host", fallback="127.0.0.1"),
        health_port=_clamp_port(parser.getint("device", "health_port", fallback=0)),
        wifi_ssid=_optional(parser.get("device", "wifi_ssid", fallback=None)),
        wifi_password=_optional(parser.get("device", "wifi_password", fallback=None)),
    )

    initial = max(
        0.0, parser.getfloat("resilience", "reconnect_initial_seconds", fallback=1.0)
    )
    resilience = ResilienceConfig(
        reconnect_initial_seconds=initial,
        reconnect_max_seconds=max(
            initial,
            parser.getfloat("resilience", "reconnect_max_seconds", fallback=30.0),
        ),
        reconnect_jitter_ratio=max(
            0.0,
            min(
                1.0,
                parser.getfloat("resilience", "reconnect_jitter_ratio", fallback=0.5),
            ),
        ),
        reconnect_degraded_after=max(
            1,
            parser.getint("resilience", "reconnect_degraded_after", fallback=10),
        ),
    )

    log_path_value = parser.get("logging", "path", fallback="").strip()
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(log_path_value).expanduser() if log_path_value else None,
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    return RcRelayConfig(
        relay=relay,
        device=device,
        resilience=resilience,
        logging=logging_config,
        raw=parser,
        path=config_path,
    )


def save_config(config: RcRelayConfig) -> None:
    """Persist the current configuration to disk."""

    config_path = config.path
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as stream:
        config.raw.write(stream)
