from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
import tempfile
from typing import Callable, FrozenSet, List, Optional, Protocol

from .models import RangingMeasurement
from .wifi_scanner import _run, normalize_bssid

logger = logging.getLogger(__name__)

RANGING_TIMEOUT_CODE = -1
RANGING_NO_TARGETS_CODE = -2

# Path-loss exponent and reference level at 1 m for synthetic ranging.
_MOCK_PATH_LOSS = 3.0
_MOCK_REF_RSSI = -37

_TARGET_RE = re.compile(r"Target:\s*(?P<mac>[0-9A-Fa-f:]{17}),\s*status:\s*(?P<status>-?\d+)(?P<rest>.*)")
_DISTANCE_RE = re.compile(r"distance:\s*(?P<dist>-?\d+)(?:\s*\(±\s*(?P<spread>\d+)\))?\s*cm")


class RangingError(Exception):
    """Ranging request failed; ``code`` is opaque and only reported."""

    def __init__(self, code: int, message: str = "") -> None:
        super().__init__(message or f"ranging failed with code {code}")
        self.code = code


class RangingSource(Protocol):
    async def available(self) -> bool:
        ...

    async def request(self, bssids: FrozenSet[str]) -> List[RangingMeasurement]:
        ...


def parse_ftm_results(text: str) -> List[RangingMeasurement]:
    """Parse ``iw ... measurement ftm_request`` output.

    Distances are reported in centimetres; targets with a non-zero status
    carry no measurement and are dropped.
    """
    out: List[RangingMeasurement] = []
    for line in text.splitlines():
        target = _TARGET_RE.search(line)
        if not target or int(target.group("status")) != 0:
            continue
        distance = _DISTANCE_RE.search(target.group("rest"))
        if not distance:
            continue
        spread_cm = int(distance.group("spread") or 0)
        out.append(
            RangingMeasurement(
                bssid=normalize_bssid(target.group("mac")),
                distance_mm=int(distance.group("dist")) * 10,
                distance_std_dev_mm=spread_cm * 10,
            )
        )
    return out


class IwRangingSource:
    """802.11mc fine timing measurement through ``iw``."""

    def __init__(self, interface: str, frequencies: Callable[[str], Optional[int]]) -> None:
        self.interface = interface
        self._frequencies = frequencies

    async def available(self) -> bool:
        if shutil.which("iw") is None:
            return False
        try:
            code, stdout, _ = await _run("iw", "list")
        except OSError as exc:
            logger.warning("iw list failed to start: %s", exc)
            return False
        text = stdout.lower()
        return code == 0 and "peer measurement" in text and "ftm" in text

    def _target_lines(self, bssids: FrozenSet[str]) -> List[str]:
        lines = []
        for bssid in sorted(bssids):
            freq = self._frequencies(bssid)
            if freq is None:
                logger.warning("No scanned frequency for %s, skipping", bssid)
                continue
            lines.append(f"{bssid.lower()} bw=20 cf={freq} asap")
        return lines

    async def request(self, bssids: FrozenSet[str]) -> List[RangingMeasurement]:
        lines = self._target_lines(bssids)
        if not lines:
            raise RangingError(RANGING_NO_TARGETS_CODE, "no rangeable targets")
        fd, path = tempfile.mkstemp(suffix=".ftm")
        try:
            with os.fdopen(fd, "w") as f:
                f.write("\n".join(lines) + "\n")
            code, stdout, stderr = await _run(
                "iw", "dev", self.interface, "measurement", "ftm_request", path
            )
        finally:
            os.unlink(path)
        if code != 0:
            if "not permitted" in stderr.lower():
                raise PermissionError(stderr.strip())
            raise RangingError(code, stderr.strip())
        return parse_ftm_results(stdout)


class MockRangingSource:
    """Distances derived from scanned signal level with a log-distance model."""

    def __init__(
        self,
        levels: Callable[[str], Optional[int]],
        delay_s: float = 0.2,
        fail_code: Optional[int] = None,
    ) -> None:
        self._levels = levels
        self.delay_s = delay_s
        self.fail_code = fail_code

    async def available(self) -> bool:
        return True

    async def request(self, bssids: FrozenSet[str]) -> List[RangingMeasurement]:
        await asyncio.sleep(self.delay_s)
        if self.fail_code is not None:
            raise RangingError(self.fail_code)
        out: List[RangingMeasurement] = []
        for bssid in sorted(bssids):
            level = self._levels(bssid)
            if level is None:
                continue
            distance_mm = int(1000 * 10 ** ((_MOCK_REF_RSSI - level) / (10.0 * _MOCK_PATH_LOSS)))
            out.append(RangingMeasurement(bssid, distance_mm, distance_mm // 10))
        return out
