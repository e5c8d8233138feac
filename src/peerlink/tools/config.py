"""
Client configuration.

Values come from PEERLINK_* environment variables, with the ICE server list
optionally read from a JSON file named by PEERLINK_ICE_CONFIG_PATH. The CLI
overrides a few of them afterwards.
"""

import json
import os
import platform
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
from .logger import log_info, log_warning, log_error


API_VERSION = "1.0"
CLIENT_VERSION = "1.0.0"

DEFAULT_ICE_SERVERS = [{"urls": "stun:stun.l.google.com:19302"}]


@dataclass
class ClientConfig:
    server_url: str = "http://localhost:8080"
    application_name: str = "default"
    username: Optional[str] = None
    credential: Optional[Any] = None
    rooms: Dict[str, dict] = field(default_factory=lambda: {"default": {}})
    ice_servers: List[dict] = field(default_factory=lambda: list(DEFAULT_ICE_SERVERS))

    auto_media: bool = True
    data_enabled: bool = True
    use_fresh_ice_each_peer: bool = False

    # Largest data channel message before the chunk codec splits it
    max_message_length: int = 1000
    # Seconds between building a peer connection and creating its offer
    offer_delay: float = 0.1
    ack_timeout: float = 10

    log_level: str = "INFO"
    log_dir: Optional[str] = None
    mtls_cert: Optional[str] = None
    mtls_key: Optional[str] = None

    api_version: str = API_VERSION
    client_version: str = CLIENT_VERSION
    os_name: str = field(default_factory=platform.system)
    language: str = field(default_factory=lambda: os.getenv("LANG", "en").split(".")[0])


def _parse_bool_env(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes", "on")


def _parse_rooms(value: str) -> Dict[str, dict]:
    return {name.strip(): {} for name in value.split(",") if name.strip()}


def _load_file_ice_servers() -> Optional[List[dict]]:
    """Read the ICE server list from PEERLINK_ICE_CONFIG_PATH, if it names a usable file."""
    env_path = os.getenv("PEERLINK_ICE_CONFIG_PATH")
    if not env_path:
        return None

    path = Path(env_path)
    if not path.is_file():
        log_warning(f"PEERLINK_ICE_CONFIG_PATH {path} is not a file, using defaults")
        return None

    try:
        with path.open("r", encoding="utf-8") as fp:
            data = json.load(fp)
    except json.JSONDecodeError as e:
        log_error(f"Failed to parse ICE config {path}: {e}")
        return None
    except OSError as e:
        log_error(f"Failed to read ICE config {path}: {e}")
        return None

    servers = data.get("iceServers") if isinstance(data, dict) else data
    if not isinstance(servers, list):
        log_warning(f"ICE config file {path} has no iceServers list")
        return None
    log_info(f"Loaded {len(servers)} ICE servers from {path}")
    return servers


def load_config(**overrides) -> ClientConfig:
    """
    Build the client configuration.

    Priority order:
      1. Keyword overrides (CLI flags), when not None.
      2. PEERLINK_* environment variables.
      3. Built-in defaults.
    """
    config = ClientConfig()

    if os.getenv("PEERLINK_SERVER_URL"):
        config.server_url = os.getenv("PEERLINK_SERVER_URL")
    if os.getenv("PEERLINK_APPLICATION"):
        config.application_name = os.getenv("PEERLINK_APPLICATION")
    if os.getenv("PEERLINK_USERNAME"):
        config.username = os.getenv("PEERLINK_USERNAME")
    if os.getenv("PEERLINK_CREDENTIAL"):
        config.credential = os.getenv("PEERLINK_CREDENTIAL")
    if os.getenv("PEERLINK_ROOMS"):
        config.rooms = _parse_rooms(os.getenv("PEERLINK_ROOMS"))

    config.auto_media = _parse_bool_env(os.getenv("PEERLINK_AUTO_MEDIA"), config.auto_media)
    config.data_enabled = _parse_bool_env(os.getenv("PEERLINK_DATA_ENABLED"), config.data_enabled)
    config.use_fresh_ice_each_peer = _parse_bool_env(
        os.getenv("PEERLINK_FRESH_ICE_EACH_PEER"), config.use_fresh_ice_each_peer
    )

    if os.getenv("PEERLINK_MAX_MESSAGE_LENGTH"):
        config.max_message_length = int(os.getenv("PEERLINK_MAX_MESSAGE_LENGTH"))
    if os.getenv("PEERLINK_LOG_LEVEL"):
        config.log_level = os.getenv("PEERLINK_LOG_LEVEL").upper()
    if os.getenv("PEERLINK_LOG_DIR"):
        config.log_dir = os.getenv("PEERLINK_LOG_DIR")
    if os.getenv("PEERLINK_MTLS_CERT"):
        config.mtls_cert = os.path.expanduser(os.getenv("PEERLINK_MTLS_CERT"))
    if os.getenv("PEERLINK_MTLS_KEY"):
        config.mtls_key = os.path.expanduser(os.getenv("PEERLINK_MTLS_KEY"))

    ice_servers = _load_file_ice_servers()
    if ice_servers is not None:
        config.ice_servers = ice_servers

    for key, value in overrides.items():
        if value is None:
            continue
        if not hasattr(config, key):
            raise AttributeError(f"Unknown configuration option: {key}")
        if key == "rooms" and isinstance(value, (list, tuple)):
            value = {name: {} for name in value}
        setattr(config, key, value)

    return config
