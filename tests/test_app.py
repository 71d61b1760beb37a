from fastapi.testclient import TestClient

from fakes import FakeRanging, FakeScanner, ap, make_merger
from wifi_rtt.app import build_merger, create_app
from wifi_rtt.config import Settings
from wifi_rtt.display_state import DisplayState
from wifi_rtt.models import PermissionGrants, RangingMeasurement
from wifi_rtt.ranging import MockRangingSource
from wifi_rtt.wifi_scanner import MockWifiScanner


def make_client(merger):
    return TestClient(create_app(Settings(scan_mode="mock"), merger=merger))


def test_health():
    with make_client(make_merger(FakeScanner([]), FakeRanging())) as client:
        assert client.get("/health").json() == {"ok": True}


def test_access_points_empty_before_first_scan():
    with make_client(make_merger(FakeScanner([]), FakeRanging())) as client:
        body = client.get("/access-points").json()
        assert body["type"] == "snapshot"
        assert body["state"] == "idle"
        assert body["entries"] == []


def test_scan_returns_scan_results_and_rejects_overlap():
    ranging = FakeRanging(results=[RangingMeasurement("A1", 2500, 150)], hold=True)
    merger = make_merger(FakeScanner([ap("A1", True), ap("A2", False)]), ranging)
    with make_client(merger) as client:
        resp = client.post("/scan")
        assert resp.status_code == 200
        body = resp.json()
        assert body["state"] == "ranging_requested"
        assert [e["bssid"] for e in body["entries"]] == ["A1", "A2"]
        assert all(e["distance_m"] is None for e in body["entries"])

        assert client.post("/scan").status_code == 409

        assert client.post("/scan/cancel").json() == {"cancelled": True}
        assert client.post("/scan/cancel").json() == {"cancelled": False}
        after = client.get("/access-points").json()
        assert after["state"] == "idle"
        assert [e["bssid"] for e in after["entries"]] == ["A1", "A2"]


def test_scan_without_permission_returns_empty_list():
    merger = make_merger(
        FakeScanner([ap("A1", True)]),
        FakeRanging(),
        grants=PermissionGrants(nearby_wifi_devices=False, fine_location=True),
    )
    with make_client(merger) as client:
        body = client.post("/scan").json()
        assert body["entries"] == []
        assert body["state"] == "idle"


def test_websocket_streams_scan_then_ranging():
    ranging = FakeRanging(results=[RangingMeasurement("A1", 2500, 150)])
    merger = make_merger(FakeScanner([ap("A1", True), ap("A2", False)]), ranging)
    with make_client(merger) as client:
        with client.websocket_connect("/ws") as ws:
            assert ws.receive_json()["entries"] == []
            ws.send_json({"type": "scan"})
            scanned_packet = ws.receive_json()
            assert scanned_packet["state"] == "scanned"
            scanned = scanned_packet["entries"]
            assert [e["distance_m"] for e in scanned] == [None, None]
            merged_packet = ws.receive_json()
            assert merged_packet["state"] == "merged"
            merged = merged_packet["entries"]
            assert merged[0]["distance_m"] == 2.5
            assert merged[0]["distance_std_dev_m"] == 0.15
            assert merged[1]["distance_m"] is None


def test_build_merger_mock_mode():
    merger = build_merger(Settings(scan_mode="mock"), DisplayState())
    assert isinstance(merger.scanner, MockWifiScanner)
    assert isinstance(merger.ranging, MockRangingSource)


def test_websocket_reports_busy_while_cycle_active():
    ranging = FakeRanging(hold=True)
    merger = make_merger(FakeScanner([ap("A1", True)]), ranging)
    with make_client(merger) as client:
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"type": "scan"})
            assert ws.receive_json()["state"] == "scanned"
            ws.send_json({"type": "scan"})
            assert ws.receive_json() == {"type": "busy"}
            assert len(ranging.requests) <= 1
        assert client.post("/scan/cancel").json() == {"cancelled": True}
