"""
Broker configuration - loads config.yaml and resolves the broker URI
"""

import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union
from urllib.parse import urlparse

import yaml

from device_upgrade.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.yaml"
DEFAULT_CONFIG_PATH = Path("config") / CONFIG_FILENAME

# scheme -> (transport, use_tls, default port)
BROKER_SCHEMES = {
    "tcp": ("tcp", False, 1883),
    "mqtt": ("tcp", False, 1883),
    "ssl": ("tcp", True, 8883),
    "tls": ("tcp", True, 8883),
    "mqtts": ("tcp", True, 8883),
    "ws": ("websockets", False, 80),
    "wss": ("websockets", True, 443),
}


@dataclass(frozen=True)
class BrokerEndpoint:
    host: str
    port: int
    transport: str = "tcp"
    use_tls: bool = False
    path: str = "/mqtt"


@dataclass(frozen=True)
class BrokerConfig:
    """Connection settings for the MQTT broker, loaded once at startup"""

    broker: str
    client_id: str
    username: str = ""
    password: str = ""
    response_topic: str = ""

    def endpoint(self) -> BrokerEndpoint:
        return parse_broker_uri(self.broker)


def parse_broker_uri(uri: str) -> BrokerEndpoint:
    """
    Split a broker address such as tcp://host:1883 into its parts
    A bare host:port is treated as tcp://
    """
    if "://" not in uri:
        uri = f"tcp://{uri}"

    parsed = urlparse(uri)
    scheme = parsed.scheme.lower()
    if scheme not in BROKER_SCHEMES:
        raise ConfigError(f"Unsupported broker scheme '{scheme}' in {uri}")

    try:
        port = parsed.port
    except ValueError as e:
        raise ConfigError(f"Invalid broker port in {uri}: {e}") from e

    if not parsed.hostname:
        raise ConfigError(f"Broker address has no host: {uri}")

    transport, use_tls, default_port = BROKER_SCHEMES[scheme]
    return BrokerEndpoint(
        host=parsed.hostname,
        port=port or default_port,
        transport=transport,
        use_tls=use_tls,
        path=parsed.path or "/mqtt",
    )


def candidate_paths() -> List[Path]:
    """Config locations in lookup order"""
    paths = [Path(CONFIG_FILENAME)]

    exec_dir = Path(sys.argv[0] or sys.executable).resolve().parent
    paths.append(exec_dir / CONFIG_FILENAME)

    # Inside a macOS .app bundle the launcher sits in Contents/MacOS
    if exec_dir.parent.name == "Contents":
        paths.append(exec_dir.parent / "Resources" / CONFIG_FILENAME)

    return paths


def find_config_path() -> Path:
    for path in candidate_paths():
        if path.is_file():
            return path
    return DEFAULT_CONFIG_PATH


def _require(section: dict, key: str, where: str) -> str:
    value = section.get(key)
    if value is None or value == "":
        raise ConfigError(f"Missing required setting {where}.{key}")
    if not isinstance(value, str):
        raise ConfigError(f"Setting {where}.{key} must be a string")
    return value


def parse_config(data: object) -> BrokerConfig:
    """Build a BrokerConfig from the parsed YAML document"""
    if not isinstance(data, dict) or not isinstance(data.get("mqtt"), dict):
        raise ConfigError("Config file has no 'mqtt' section")

    mqtt_section = data["mqtt"]
    topics = mqtt_section.get("topics") or {}
    if not isinstance(topics, dict):
        raise ConfigError("Setting mqtt.topics must be a mapping")

    config = BrokerConfig(
        broker=_require(mqtt_section, "broker", "mqtt"),
        client_id=_require(mqtt_section, "clientId", "mqtt"),
        username=str(mqtt_section.get("username") or ""),
        password=str(mqtt_section.get("password") or ""),
        response_topic=_require(topics, "upgrade", "mqtt.topics"),
    )
    # Fail early on a broker address we cannot dial
    config.endpoint()
    return config


def load_config(path: Optional[Union[str, os.PathLike]] = None) -> BrokerConfig:
    """Load the broker configuration from path, or from the first config.yaml found"""
    config_path = Path(path) if path else find_config_path()
    logger.info("Loading config from %s", config_path)

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read config file {config_path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    return parse_config(data)
