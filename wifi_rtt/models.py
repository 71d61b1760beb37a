from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple


@dataclass(frozen=True)
class AccessPointSnapshot:
    bssid: str
    ssid: str
    level: int
    frequency: int
    capabilities: str
    rtt_capable: bool


@dataclass(frozen=True)
class RangingMeasurement:
    bssid: str
    distance_mm: int
    distance_std_dev_mm: int


@dataclass(frozen=True)
class ViewEntry:
    bssid: str
    ssid: str
    level: int
    frequency: int
    capabilities: str
    rtt_capable: bool
    distance_m: Optional[float] = None
    distance_std_dev_m: Optional[float] = None

    @classmethod
    def from_snapshot(cls, snapshot: AccessPointSnapshot) -> "ViewEntry":
        return cls(
            bssid=snapshot.bssid,
            ssid=snapshot.ssid,
            level=snapshot.level,
            frequency=snapshot.frequency,
            capabilities=snapshot.capabilities,
            rtt_capable=snapshot.rtt_capable,
        )

    @property
    def ranged(self) -> bool:
        return self.distance_m is not None

    def with_distance(self, distance_mm: int, std_dev_mm: int) -> "ViewEntry":
        # Both distance fields are always set together.
        return replace(
            self,
            distance_m=distance_mm / 1000,
            distance_std_dev_m=std_dev_mm / 1000,
        )

    def to_payload(self) -> Dict:
        return {
            "bssid": self.bssid,
            "ssid": self.ssid,
            "level": self.level,
            "frequency": self.frequency,
            "capabilities": self.capabilities,
            "rtt_capable": self.rtt_capable,
            "distance_m": self.distance_m,
            "distance_std_dev_m": self.distance_std_dev_m,
        }


@dataclass(frozen=True)
class PermissionGrants:
    nearby_wifi_devices: bool
    fine_location: bool
    location_enabled: bool = True


class PlatformGeneration(str, Enum):
    """Which permission model the host platform uses for Wi-Fi discovery."""

    LEGACY = "legacy"
    MODERN = "modern"


class CycleState(str, Enum):
    IDLE = "idle"
    PERMISSION_CHECKED = "permission_checked"
    SCANNED = "scanned"
    RANGING_REQUESTED = "ranging_requested"
    MERGED = "merged"


ViewList = Tuple[ViewEntry, ...]
BssidSet = FrozenSet[str]
