"""
Configuration management for tvcast.

This module loads the casting configuration from TOML files: the packaged
``defaults.toml`` first, then an optional user file on top of it.
"""

from __future__ import annotations

import logging
import secrets
import string
import tomllib
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Path to the config directory
CONFIG_DIR = Path(__file__).parent

DEFAULT_CONFIG_FILE = CONFIG_DIR / "defaults.toml"

DEVICE_UUID_LENGTH = 35
_UUID_ALPHABET = string.ascii_uppercase + string.digits


@dataclass(frozen=True)
class CastConfig:
    """Loaded casting configuration."""

    # Single feature flag, read once at start().
    enabled: bool = True
    host: str = "0.0.0.0"
    friendly_name: str = "Living Room TV"
    model_name: str = "Apple TV"
    version: str = "1.0"

    descriptor_port: int = 9958
    receiver_port: int = 9959
    beacon_port: int = 9960

    advertise_interval: float = 1.0
    default_volume: int = 30

    connect_timeout: float = 10.0
    handshake_timeout: float = 10.0
    request_timeout: float = 5.0
    discovery_timeout: float = 5.0

    mdns_service_type: str = "_bilibili-cast._tcp.local."
    mdns_service_name: str = "ATV-Bilibili-Cast-Receiver"

    uuid_file: str = "cache/device_uuid"
    log_dir: str = "logs"

    def with_overrides(self, **overrides: Any) -> CastConfig:
        """Return a copy with the non-None overrides applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def _coerce(name: str, value: Any, default: Any) -> Any:
    """Accept ``value`` if it matches the default's type, else keep the default."""
    expected = type(default)
    if expected is float and isinstance(value, int) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, expected) and not (expected is int and isinstance(value, bool)):
        return value
    logger.warning(
        "Ignoring config key %s: expected %s, got %r", name, expected.__name__, value
    )
    return default


def _apply(config: CastConfig, data: dict[str, Any]) -> CastConfig:
    known = {f.name: getattr(config, f.name) for f in fields(config)}
    section = data.get("cast", data)
    updates: dict[str, Any] = {}
    for key, value in section.items():
        if key not in known:
            logger.debug("Ignoring unknown config key %s", key)
            continue
        updates[key] = _coerce(key, value, known[key])
    return replace(config, **updates)


def load_config(config_path: Path | None = None) -> CastConfig:
    """
    Load casting configuration.

    Args:
        config_path: Optional user TOML file layered over the packaged defaults.

    Returns:
        Loaded CastConfig instance.
    """
    config = CastConfig()

    logger.debug("Loading default config from %s", DEFAULT_CONFIG_FILE)
    with DEFAULT_CONFIG_FILE.open("rb") as f:
        config = _apply(config, tomllib.load(f))

    if config_path is not None:
        logger.debug("Loading config from %s", config_path)
        with config_path.open("rb") as f:
            config = _apply(config, tomllib.load(f))

    return config


def get_or_create_device_uuid(path: Path) -> str:
    """
    Get or create the persistent device identifier.

    The identifier is embedded in SSDP USNs and in the device description,
    so mobile apps recognise the same TV across restarts.

    Format: 35 upper-case alphanumeric characters.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    if path.exists():
        try:
            stored = path.read_text().strip()
            if len(stored) == DEVICE_UUID_LENGTH and stored.isalnum():
                logger.debug("Using existing device UUID: %s", stored)
                return stored
            if stored:
                logger.info("Replacing malformed device UUID in %s", path)
        except OSError as e:
            logger.warning("Could not read device UUID: %s", e)

    new_uuid = "".join(secrets.choice(_UUID_ALPHABET) for _ in range(DEVICE_UUID_LENGTH))

    try:
        path.write_text(new_uuid)
        logger.info("Generated new device UUID: %s", new_uuid)
    except OSError as e:
        logger.warning("Could not save device UUID: %s", e)

    return new_uuid
