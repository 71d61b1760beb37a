from __future__ import annotations

import asyncio
import logging
import math
import random
import re
import shutil
from typing import Dict, List, Optional, Protocol, Set, Tuple

from .models import AccessPointSnapshot

logger = logging.getLogger(__name__)

_MAC_RE = re.compile(r"[0-9A-Fa-f]{2}(?:-[0-9A-Fa-f]{2}){5}|[0-9A-Fa-f]{2}(?::[0-9A-Fa-f]{2}){5}")
_BSS_HEADER_RE = re.compile(r"^BSS ([0-9A-Fa-f:]{17})")
_FIELD_SPLIT_RE = re.compile(r"(?<!\\):")


class ScanSource(Protocol):
    async def radio_enabled(self) -> bool:
        ...

    async def scan(self) -> List[AccessPointSnapshot]:
        ...


def normalize_bssid(raw: str) -> str:
    return raw.strip().replace("-", ":").upper()


async def _run(*cmd: str) -> Tuple[int, str, str]:
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await proc.communicate()
    return (
        proc.returncode,
        stdout.decode(errors="ignore"),
        stderr.decode(errors="ignore"),
    )


def parse_nmcli_rows(text: str, rtt_responders: Set[str]) -> List[AccessPointSnapshot]:
    """Parse ``nmcli -t -f SSID,BSSID,SIGNAL,CHAN,FREQ,SECURITY`` output.

    Terse mode escapes ``:`` inside values as ``\\:``; older builds leave
    the BSSID unescaped, so the BSSID column is located by pattern.
    """
    out: List[AccessPointSnapshot] = []
    seen: Set[str] = set()
    for row in text.splitlines():
        parts = [p.replace("\\:", ":") for p in _FIELD_SPLIT_RE.split(row)]
        bssid_idx = next((i for i, p in enumerate(parts) if _MAC_RE.fullmatch(p)), None)
        if bssid_idx is None:
            # Unescaped BSSID spread over six fields.
            mac_start = next(
                (i for i in range(len(parts) - 5) if _MAC_RE.fullmatch(":".join(parts[i : i + 6]))),
                None,
            )
            if mac_start is None:
                continue
            parts = parts[:mac_start] + [":".join(parts[mac_start : mac_start + 6])] + parts[mac_start + 6 :]
            bssid_idx = mac_start
        ssid = ":".join(parts[:bssid_idx]).strip()
        bssid = normalize_bssid(parts[bssid_idx])
        tail = parts[bssid_idx + 1 :]
        if len(tail) < 4 or bssid in seen:
            continue
        try:
            signal_pct = float(tail[0])
            freq_match = re.match(r"\s*(\d+)", tail[2])
            if freq_match is None:
                continue
            freq = int(freq_match.group(1))
        except ValueError:
            continue
        seen.add(bssid)
        out.append(
            AccessPointSnapshot(
                bssid=bssid,
                ssid=ssid,
                level=int(round(-100.0 + signal_pct / 2.0)),
                frequency=freq,
                capabilities=":".join(tail[3:]).strip(),
                rtt_capable=bssid in rtt_responders,
            )
        )
    return out


def parse_iw_ftm_responders(text: str) -> Set[str]:
    """BSSIDs whose Extended Capabilities in ``iw scan dump`` list FTM Responder."""
    responders: Set[str] = set()
    current: Optional[str] = None
    for line in text.splitlines():
        header = _BSS_HEADER_RE.match(line)
        if header:
            current = normalize_bssid(header.group(1))
            continue
        if current and "ftm responder" in line.lower():
            responders.add(current)
    return responders


class _SnapshotMemory:
    """Remembers the last scan so ranging sources can look APs up by BSSID."""

    def __init__(self) -> None:
        self.last_snapshot: Dict[str, AccessPointSnapshot] = {}

    def _remember(self, snapshots: List[AccessPointSnapshot]) -> List[AccessPointSnapshot]:
        self.last_snapshot = {s.bssid: s for s in snapshots}
        return snapshots

    def frequency_of(self, bssid: str) -> Optional[int]:
        ap = self.last_snapshot.get(bssid)
        return ap.frequency if ap else None

    def level_of(self, bssid: str) -> Optional[int]:
        ap = self.last_snapshot.get(bssid)
        return ap.level if ap else None


class WifiScanner(_SnapshotMemory):
    """Linux scanner: nmcli for the AP list, iw for FTM responder flags."""

    def __init__(self, interface: str = "wlan0") -> None:
        super().__init__()
        self.interface = interface
        self._has_iw = shutil.which("iw") is not None

    async def radio_enabled(self) -> bool:
        try:
            code, stdout, _ = await _run("nmcli", "radio", "wifi")
        except OSError as exc:
            logger.warning("nmcli unavailable: %s", exc)
            return False
        return code == 0 and stdout.strip().lower() == "enabled"

    async def scan(self) -> List[AccessPointSnapshot]:
        cmd = [
            "nmcli",
            "-t",
            "-f",
            "SSID,BSSID,SIGNAL,CHAN,FREQ,SECURITY",
            "dev",
            "wifi",
            "list",
            "--rescan",
            "yes",
        ]
        try:
            code, stdout, stderr = await _run(*cmd)
        except OSError as exc:
            logger.warning("nmcli scan failed to start: %s", exc)
            return self._remember([])
        if code != 0:
            if "not authorized" in stderr.lower():
                raise PermissionError(stderr.strip())
            logger.warning("nmcli scan exited with %s: %s", code, stderr.strip())
            return self._remember([])
        responders = await self._ftm_responders()
        return self._remember(parse_nmcli_rows(stdout, responders))

    async def _ftm_responders(self) -> Set[str]:
        if not self._has_iw:
            return set()
        try:
            code, stdout, stderr = await _run("iw", "dev", self.interface, "scan", "dump")
        except OSError as exc:
            logger.warning("iw scan dump failed to start: %s", exc)
            return set()
        if code != 0:
            logger.debug("iw scan dump exited with %s: %s", code, stderr.strip())
            return set()
        return parse_iw_ftm_responders(stdout)


class MockWifiScanner(_SnapshotMemory):
    """Synthetic access points for machines without nmcli."""

    def __init__(self, radio_on: bool = True) -> None:
        super().__init__()
        self.radio_on = radio_on
        self._mock_catalog = [
            ("NEO-MESH", "AA:11:22:33:44:01", 2412, "WPA2", True),
            ("ZION-HUB", "AA:11:22:33:44:02", 2437, "WPA2", False),
            ("MATRIX-NODE", "AA:11:22:33:44:03", 2462, "WPA3", True),
            ("SENTINEL-5G", "AA:11:22:33:44:04", 5180, "WPA2", True),
            ("", "AA:11:22:33:44:05", 5200, "", False),
        ]
        self._phase = 0.0

    async def radio_enabled(self) -> bool:
        return self.radio_on

    async def scan(self) -> List[AccessPointSnapshot]:
        self._phase += 0.3
        out: List[AccessPointSnapshot] = []
        for i, (ssid, bssid, freq, sec, rtt) in enumerate(self._mock_catalog):
            wave = 12.0 * (0.6 * math.sin(self._phase + i * 0.7) + 0.4 * math.sin(self._phase * 0.5 + i))
            noise = random.uniform(-2.5, 2.5)
            level = max(-95.0, min(-30.0, -62.0 + wave + noise))
            out.append(
                AccessPointSnapshot(
                    bssid=bssid,
                    ssid=ssid,
                    level=int(round(level)),
                    frequency=freq,
                    capabilities=sec,
                    rtt_capable=rtt,
                )
            )
        return self._remember(out)
