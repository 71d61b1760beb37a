from __future__ import annotations

import asyncio
import json
import logging
import shutil
import time
from typing import Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, load_settings
from .display_state import DisplayState
from .merger import ScanRangeMerger
from .models import CycleState, ViewList
from .permissions import StaticGrantProvider
from .ranging import IwRangingSource, MockRangingSource
from .wifi_scanner import MockWifiScanner, WifiScanner

logger = logging.getLogger(__name__)


def build_merger(settings: Settings, display: DisplayState) -> ScanRangeMerger:
    mode = settings.scan_mode
    if mode == "auto":
        mode = "nmcli" if shutil.which("nmcli") else "mock"
    if mode == "mock":
        scanner = MockWifiScanner()
        ranging = MockRangingSource(scanner.level_of)
    else:
        scanner = WifiScanner(settings.interface)
        ranging = IwRangingSource(settings.interface, scanner.frequency_of)
    logger.info("Using %s scan mode on %s", mode, settings.interface)
    return ScanRangeMerger(
        StaticGrantProvider(settings.grants),
        settings.generation,
        scanner,
        ranging,
        display,
        ranging_timeout_s=settings.ranging_timeout_s,
    )


def snapshot_packet(
    merger: ScanRangeMerger,
    entries: Optional[ViewList] = None,
    state: Optional[CycleState] = None,
) -> dict:
    if entries is None:
        entries = merger.display.value
    if state is None:
        state = merger.state
    return {
        "type": "snapshot",
        "timestamp": time.time(),
        "state": state.value,
        "entries": [e.to_payload() for e in entries],
    }


def create_app(settings: Optional[Settings] = None, merger: Optional[ScanRangeMerger] = None) -> FastAPI:
    settings = settings or load_settings()
    if merger is None:
        merger = build_merger(settings, DisplayState())

    app = FastAPI(title="Wi-Fi RTT Radar")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.merger = merger

    @app.get("/health")
    async def health() -> dict:
        return {"ok": True}

    @app.get("/access-points")
    async def access_points() -> dict:
        return snapshot_packet(merger)

    @app.post("/scan")
    async def scan() -> dict:
        if not await merger.trigger():
            raise HTTPException(status_code=409, detail="scan already in progress")
        return snapshot_packet(merger)

    @app.post("/scan/cancel")
    async def cancel_scan() -> dict:
        return {"cancelled": merger.cancel()}

    @app.websocket("/ws")
    async def ws_radar(ws: WebSocket) -> None:
        await ws.accept()
        updates: asyncio.Queue = asyncio.Queue()
        # State is captured at publish time, not at send time.
        unsubscribe = merger.display.subscribe(lambda value: updates.put_nowait((merger.state, value)))
        try:
            await ws.send_text(json.dumps(snapshot_packet(merger)))
            while True:
                # Non-blocking receive for control messages
                try:
                    msg = await asyncio.wait_for(ws.receive_text(), timeout=0.05)
                    payload = json.loads(msg)
                    if payload.get("type") == "scan":
                        if not await merger.trigger():
                            await ws.send_text(json.dumps({"type": "busy"}))
                    elif payload.get("type") == "cancel":
                        merger.cancel()
                except asyncio.TimeoutError:
                    pass
                except (ValueError, AttributeError):
                    logger.debug("Ignoring malformed control message")

                while not updates.empty():
                    state, entries = updates.get_nowait()
                    await ws.send_text(json.dumps(snapshot_packet(merger, entries, state)))
        except WebSocketDisconnect:
            logger.debug("Websocket client disconnected")
        finally:
            unsubscribe()

    return app
