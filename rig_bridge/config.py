"""Configuration loader for rig-bridge."""

from __future__ import annotations

import os
from configparser import ConfigParser
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional
from urllib.parse import unquote, urlparse

from . import constants

_DEFAULT_PORTS = {"mqtt": 1883, "tcp": 1883, "mqtts": 8883, "ssl": 8883}
_TLS_SCHEMES = {"mqtts", "ssl"}


class ConfigError(ValueError):
    """Raised when a configuration value cannot be interpreted."""


@dataclass(slots=True)
class BrokerConfig:
    url: str = constants.DEFAULT_BROKER_URL
    host: str = "localhost"
    port: int = 1883
    tls: bool = False
    username: Optional[str] = None
    password: Optional[str] = None
    topic: str = constants.DEFAULT_COMMAND_TOPIC
    client_id: Optional[str] = None
    keepalive: int = 60
    qos: int = 0


@dataclass(slots=True)
class RigConfig:
    backend: str = constants.DEFAULT_BACKEND
    max_power: int = constants.DEFAULT_MOTOR_MAX_POWER  # 100% reference for every routine
    motor_port: str = constants.DEFAULT_MOTOR_PORT
    light_port: str = constants.DEFAULT_LIGHT_PORT


@dataclass(slots=True)
class SimulationConfig:
    hub_name: str = "Simulated Hub"
    discovery_delay_seconds: float = 1.0
    time_scale: float = 1.0


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = None
    log_network: bool = False


@dataclass(slots=True)
class HealthConfig:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 0


@dataclass(slots=True)
class BridgeConfig:
    broker: BrokerConfig
    rig: RigConfig
    simulation: SimulationConfig
    logging: LoggingConfig
    health: HealthConfig
    raw: ConfigParser
    path: Path


def parse_broker_url(
    url: str,
) -> tuple[str, int, bool, Optional[str], Optional[str]]:
    """Split a broker URL into host, port, TLS flag and credentials."""

    text = url.strip()
    if "://" not in text:
        text = f"mqtt://{text}"

    parsed = urlparse(text)
    scheme = parsed.scheme.lower()
    if scheme not in _DEFAULT_PORTS:
        raise ConfigError(f"Unsupported broker URL scheme: {parsed.scheme!r}")
    if not parsed.hostname:
        raise ConfigError(f"Broker URL has no host: {url!r}")

    try:
        port = parsed.port or _DEFAULT_PORTS[scheme]
    except ValueError as exc:
        raise ConfigError(f"Broker URL has an invalid port: {url!r}") from exc

    username = unquote(parsed.username) if parsed.username else None
    password = unquote(parsed.password) if parsed.password else None
    return parsed.hostname, port, scheme in _TLS_SCHEMES, username, password


def _apply_environment(parser: ConfigParser, environ: Mapping[str, str]) -> None:
    overrides = (
        (constants.ENV_BROKER_URL, "broker", "url"),
        (constants.ENV_COMMAND_TOPIC, "broker", "topic"),
        (constants.ENV_MOTOR_MAX_POWER, "rig", "max_power"),
        (constants.ENV_BACKEND, "rig", "backend"),
        (constants.ENV_LOG_LEVEL, "logging", "level"),
    )
    for variable, section, key in overrides:
        value = environ.get(variable)
        if value:
            parser.set(section, key, value)


def _parse_max_power(value: str) -> int:
    try:
        power = int(value.strip())
    except ValueError:
        power = constants.DEFAULT_MOTOR_MAX_POWER
    return max(0, min(100, power))


def load_config(
    path: Optional[Path] = None, *, environ: Optional[Mapping[str, str]] = None
) -> BridgeConfig:
    """Load configuration from disk and the environment, applying defaults."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    env = os.environ if environ is None else environ

    parser = ConfigParser()
    parser.read_dict(
        {
            "broker": {
                "url": constants.DEFAULT_BROKER_URL,
                "topic": constants.DEFAULT_COMMAND_TOPIC,
                "keepalive": "60",
                "qos": "0",
            },
            "rig": {
                "backend": constants.DEFAULT_BACKEND,
                "max_power": str(constants.DEFAULT_MOTOR_MAX_POWER),
                "motor_port": constants.DEFAULT_MOTOR_PORT,
                "light_port": constants.DEFAULT_LIGHT_PORT,
            },
            "simulation": {
                "hub_name": "Simulated Hub",
                "discovery_delay_seconds": "1.0",
                "time_scale": "1.0",
            },
            "logging": {
                "level": "INFO",
                "log_network": "false",
            },
            "health": {
                "enabled": "false",
                "host": "127.0.0.1",
                "port": "0",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    _apply_environment(parser, env)

    broker_url = parser.get("broker", "url")
    host, port, tls, username, password = parse_broker_url(broker_url)

    broker = BrokerConfig(
        url=broker_url,
        host=host,
        port=port,
        tls=tls,
        username=parser.get("broker", "username", fallback=username),
        password=parser.get("broker", "password", fallback=password),
        topic=parser.get("broker", "topic"),
        client_id=parser.get("broker", "client_id", fallback=None),
        keepalive=max(5, parser.getint("broker", "keepalive", fallback=60)),
        qos=max(0, min(2, parser.getint("broker", "qos", fallback=0))),
    )

    rig = RigConfig(
        backend=parser.get("rig", "backend").strip().lower(),
        max_power=_parse_max_power(parser.get("rig", "max_power")),
        motor_port=parser.get("rig", "motor_port").strip(),
        light_port=parser.get("rig", "light_port").strip(),
    )
    if rig.motor_port == rig.light_port:
        raise ConfigError(
            f"Motor and light cannot share port {rig.motor_port!r}"
        )

    simulation = SimulationConfig(
        hub_name=parser.get("simulation", "hub_name"),
        discovery_delay_seconds=max(
            0.0,
            parser.getfloat("simulation", "discovery_delay_seconds", fallback=1.0),
        ),
        time_scale=max(0.0, parser.getfloat("simulation", "time_scale", fallback=1.0)),
    )

    log_path_value = parser.get("logging", "path", fallback="").strip()
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(log_path_value).expanduser() if log_path_value else None,
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    health = HealthConfig(
        enabled=parser.getboolean("health", "enabled", fallback=False),
        host=parser.get("health", "host", fallback="127.0.0.1"),
        port=parser.getint("health", "port", fallback=0),
    )

    return BridgeConfig(
        broker=broker,
        rig=rig,
        simulation=simulation,
        logging=logging_config,
        health=health,
        raw=parser,
        path=config_path,
    )
