"""Settings loading for wifi-rtt-radar."""

from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional

from .models import PermissionGrants, PlatformGeneration

logger = logging.getLogger(__name__)

_CONFIG_ENV_VAR = "WIFI_RTT_CONFIG"
_CONFIG_PATHS = [
    os.path.expanduser("~/.config/wifi-rtt/config.toml"),
    os.path.expanduser("~/.config/wifi-rtt/config.json"),
]
_SCAN_MODES = {"auto", "nmcli", "mock"}


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load raw settings from file (TOML preferred, JSON fallback).

    Search order:
    1. Explicit ``config_path`` argument
    2. ``$WIFI_RTT_CONFIG`` environment variable
    3. ``~/.config/wifi-rtt/config.toml``
    4. ``~/.config/wifi-rtt/config.json``

    The first existing file wins. Unreadable or malformed files yield ``{}``.
    """
    if config_path:
        paths = [config_path]
    else:
        env = os.environ.get(_CONFIG_ENV_VAR)
        paths = [env] if env else _CONFIG_PATHS

    for path in paths:
        if not os.path.exists(path):
            continue
        try:
            if path.endswith(".toml"):
                if sys.version_info >= (3, 11):
                    import tomllib
                else:
                    import tomli as tomllib
                with open(path, "rb") as f:
                    return tomllib.load(f)
            with open(path) as f:
                return json.load(f)
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable config %s: %s", path, exc)
            return {}
    return {}


@dataclass
class Settings:
    interface: str = "wlan0"
    scan_mode: str = "auto"
    platform: str = "modern"
    nearby_wifi_devices: bool = True
    fine_location: bool = True
    location_enabled: bool = True
    ranging_timeout_s: float = 10.0
    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "INFO"

    @classmethod
    def from_mapping(cls, raw: Dict[str, Any]) -> "Settings":
        known = {f.name for f in fields(cls)}
        settings = cls(**{k: v for k, v in raw.items() if k in known})
        if settings.scan_mode not in _SCAN_MODES:
            raise ValueError(f"scan_mode must be one of {sorted(_SCAN_MODES)}, got {settings.scan_mode!r}")
        PlatformGeneration(settings.platform)
        return settings

    @property
    def generation(self) -> PlatformGeneration:
        return PlatformGeneration(self.platform)

    @property
    def grants(self) -> PermissionGrants:
        return PermissionGrants(
            nearby_wifi_devices=self.nearby_wifi_devices,
            fine_location=self.fine_location,
            location_enabled=self.location_enabled,
        )


def load_settings(config_path: Optional[str] = None) -> Settings:
    return Settings.from_mapping(load_config(config_path))
