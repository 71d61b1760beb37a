from __future__ import annotations

import asyncio
import logging
from typing import Dict, FrozenSet, Iterable, Optional

from .display_state import DisplayState
from .models import CycleState, PlatformGeneration, RangingMeasurement, ViewEntry, ViewList
from .permissions import GrantProvider, can_range
from .ranging import RANGING_TIMEOUT_CODE, RangingError, RangingSource
from .wifi_scanner import ScanSource

logger = logging.getLogger(__name__)


def merge_measurements(entries: Iterable[ViewEntry], measurements: Iterable[RangingMeasurement]) -> ViewList:
    """Attach ranging results to the entries they were requested for.

    Only RTT-capable entries are annotated. Results for BSSIDs outside
    ``entries`` are dropped; entries without a result are left as they are.
    The first result wins when a BSSID is reported twice.
    """
    by_bssid: Dict[str, RangingMeasurement] = {}
    for m in measurements:
        by_bssid.setdefault(m.bssid, m)

    merged = []
    for entry in entries:
        m = by_bssid.get(entry.bssid) if entry.rtt_capable else None
        if m is None:
            merged.append(entry)
        else:
            merged.append(entry.with_distance(m.distance_mm, m.distance_std_dev_mm))
    return tuple(merged)


class ScanRangeMerger:
    """Runs one permission -> scan -> range -> merge cycle per trigger.

    Only one cycle may be active at a time; ``trigger`` refuses to start a
    second one until the outstanding ranging request has completed, failed,
    timed out or been cancelled.
    """

    def __init__(
        self,
        grants: GrantProvider,
        generation: PlatformGeneration,
        scanner: ScanSource,
        ranging: RangingSource,
        display: DisplayState,
        ranging_timeout_s: float = 10.0,
    ) -> None:
        self.grants = grants
        self.generation = generation
        self.scanner = scanner
        self.ranging = ranging
        self.display = display
        self.ranging_timeout_s = ranging_timeout_s
        self.state = CycleState.IDLE
        self.last_failure_code: Optional[int] = None
        self._active = False
        self._cycle = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def busy(self) -> bool:
        return self._active

    async def trigger(self) -> bool:
        if self._active:
            logger.warning("Scan requested while cycle %d is still active, ignoring", self._cycle)
            return False
        self._active = True
        self._cycle += 1
        self.last_failure_code = None
        logger.debug("Cycle %d started", self._cycle)

        targets: Optional[FrozenSet[str]] = None
        try:
            targets = await self._scan_phase()
        finally:
            if not targets:
                self._finish(CycleState.IDLE)

        if targets:
            self.state = CycleState.RANGING_REQUESTED
            logger.info("Requesting ranging for %d access points", len(targets))
            self._task = asyncio.create_task(self._range(self._cycle, targets))
        return True

    def cancel(self) -> bool:
        task = self._task
        if task is None or task.done():
            return False
        task.cancel()
        # Bumping the cycle makes any late completion a no-op.
        self._cycle += 1
        self._finish(CycleState.IDLE)
        logger.info("Ranging request cancelled")
        return True

    async def wait(self) -> None:
        task = self._task
        if task is not None:
            await asyncio.wait([task])

    async def _scan_phase(self) -> Optional[FrozenSet[str]]:
        try:
            grants = self.grants.grants()
        except PermissionError as exc:
            logger.warning("Permission check rejected: %s", exc)
            return self._abort()
        except Exception:
            logger.exception("Permission lookup failed")
            return self._abort()
        if not can_range(grants, self.generation):
            logger.info("Permissions not granted, cannot scan and range")
            return self._abort()
        if not grants.location_enabled:
            logger.info("Location services are disabled")
            return self._abort()
        self.state = CycleState.PERMISSION_CHECKED

        try:
            if not await self.scanner.radio_enabled():
                logger.info("Wi-Fi radio is disabled")
                return self._abort()
            if not await self.ranging.available():
                logger.info("Wi-Fi RTT is not available on this device")
                return self._abort()
            snapshots = await self.scanner.scan()
        except PermissionError as exc:
            logger.error("Scan rejected by platform: %s", exc)
            return self._abort()
        except Exception:
            logger.exception("Scan failed")
            return self._abort()

        entries = [ViewEntry.from_snapshot(s) for s in snapshots]
        self.state = CycleState.SCANNED
        self.display.publish(entries)
        logger.info("Scan results: %d access points", len(entries))

        targets = frozenset(e.bssid for e in entries if e.rtt_capable)
        logger.info("RTT capable access points: %d", len(targets))
        return targets or None

    async def _range(self, cycle: int, bssids: FrozenSet[str]) -> None:
        try:
            measurements = await asyncio.wait_for(self.ranging.request(bssids), self.ranging_timeout_s)
        except asyncio.CancelledError:
            if cycle == self._cycle:
                self._finish(CycleState.IDLE)
            raise
        except asyncio.TimeoutError:
            logger.error("Ranging timed out after %.1fs", self.ranging_timeout_s)
            self._fail(cycle, RANGING_TIMEOUT_CODE)
        except RangingError as exc:
            logger.error("Ranging failed with code: %s", exc.code)
            self._fail(cycle, exc.code)
        except PermissionError as exc:
            logger.error("Ranging rejected by platform: %s", exc)
            self._fail(cycle, None)
        except Exception:
            logger.exception("Ranging request raised unexpectedly")
            self._fail(cycle, None)
        else:
            if cycle != self._cycle:
                return
            logger.info("Ranging results received: %d results", len(measurements))
            merged = merge_measurements(self.display.value, measurements)
            self.state = CycleState.MERGED
            self.display.publish(merged)
            self._finish(CycleState.MERGED)

    def _abort(self) -> None:
        self.state = CycleState.IDLE
        self.display.clear()

    def _fail(self, cycle: int, code: Optional[int]) -> None:
        # Scan-only results stay on display.
        if cycle != self._cycle:
            return
        self.last_failure_code = code
        self._finish(CycleState.IDLE)

    def _finish(self, state: CycleState) -> None:
        self.state = state
        self._active = False
        self._task = None
