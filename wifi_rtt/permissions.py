from __future__ import annotations

from typing import Protocol

from .models import PermissionGrants, PlatformGeneration


def can_range(grants: PermissionGrants, generation: PlatformGeneration) -> bool:
    """Decide whether the scan/range workflow may run at all.

    Modern platforms gate Wi-Fi discovery behind the nearby-devices grant;
    precise location is not consulted there even if the host asked for it.
    Legacy platforms only offer the precise-location path.
    """
    if generation is PlatformGeneration.MODERN:
        return grants.nearby_wifi_devices
    return grants.fine_location


class GrantProvider(Protocol):
    def grants(self) -> PermissionGrants:
        ...


class StaticGrantProvider:
    """Grants fixed at startup, typically read from the settings file."""

    def __init__(self, grants: PermissionGrants) -> None:
        self._grants = grants

    def grants(self) -> PermissionGrants:
        return self._grants

    def update(self, grants: PermissionGrants) -> None:
        self._grants = grants
