import asyncio

from wifi_rtt.ranging import MockRangingSource, RangingError, parse_ftm_results
from wifi_rtt.wifi_scanner import MockWifiScanner, normalize_bssid, parse_iw_ftm_responders, parse_nmcli_rows

NMCLI_OUTPUT = "\n".join(
    [
        r"HomeNet:AA\:BB\:CC\:DD\:EE\:01:70:36:5180 MHz:WPA2",
        r"Cafe\:Guest:AA\:BB\:CC\:DD\:EE\:02:40:6:2437 MHz:WPA1 WPA2",
        r":AA\:BB\:CC\:DD\:EE\:03:20:11:2462 MHz:",
        "garbage line",
    ]
)

IW_DUMP = """BSS aa:bb:cc:dd:ee:01(on wlan0) -- associated
\tfreq: 5180
\tsignal: -45.00 dBm
\tSSID: HomeNet
\tExtended capabilities:
\t\t * Extended Channel Switching
\t\t * FTM Responder
BSS aa:bb:cc:dd:ee:02(on wlan0)
\tfreq: 2437
\tSSID: Cafe:Guest
\tExtended capabilities:
\t\t * BSS Transition
"""

FTM_OUTPUT = """Measurement result for wlan0 (cookie 12):
Target: aa:bb:cc:dd:ee:01, status: 0, rtt: 1234 (±120) psec, distance: 250 (±15) cm
Target: aa:bb:cc:dd:ee:02, status: 1
Target: aa:bb:cc:dd:ee:03, status: 0, rtt: 800 psec, distance: 120 cm
"""


def test_parse_nmcli_rows_handles_escaped_fields():
    rows = parse_nmcli_rows(NMCLI_OUTPUT, {"AA:BB:CC:DD:EE:01"})
    assert [r.bssid for r in rows] == ["AA:BB:CC:DD:EE:01", "AA:BB:CC:DD:EE:02", "AA:BB:CC:DD:EE:03"]
    home, cafe, hidden = rows
    assert home.level == -65
    assert home.frequency == 5180
    assert home.rtt_capable
    assert cafe.ssid == "Cafe:Guest"
    assert cafe.capabilities == "WPA1 WPA2"
    assert not cafe.rtt_capable
    assert hidden.ssid == ""
    assert hidden.capabilities == ""


def test_parse_nmcli_rows_accepts_unescaped_bssid():
    rows = parse_nmcli_rows("Lab:aa:bb:cc:dd:ee:09:50:1:2412:WPA2", set())
    assert len(rows) == 1
    assert rows[0].ssid == "Lab"
    assert rows[0].bssid == "AA:BB:CC:DD:EE:09"
    assert rows[0].frequency == 2412


def test_parse_nmcli_rows_drops_duplicate_bssids():
    text = NMCLI_OUTPUT + "\n" + r"Again:AA\:BB\:CC\:DD\:EE\:01:10:36:5180 MHz:WPA2"
    rows = parse_nmcli_rows(text, set())
    assert len(rows) == 3


def test_parse_iw_ftm_responders():
    assert parse_iw_ftm_responders(IW_DUMP) == {"AA:BB:CC:DD:EE:01"}


def test_parse_ftm_results_converts_to_millimetres():
    results = parse_ftm_results(FTM_OUTPUT)
    assert [(r.bssid, r.distance_mm, r.distance_std_dev_mm) for r in results] == [
        ("AA:BB:CC:DD:EE:01", 2500, 150),
        ("AA:BB:CC:DD:EE:03", 1200, 0),
    ]


def test_normalize_bssid():
    assert normalize_bssid(" aa-bb-cc-dd-ee-ff ") == "AA:BB:CC:DD:EE:FF"


def test_mock_sources_cooperate():
    async def go():
        scanner = MockWifiScanner()
        snaps = await scanner.scan()
        capable = frozenset(s.bssid for s in snaps if s.rtt_capable)
        results = await MockRangingSource(scanner.level_of, delay_s=0).request(capable)
        return snaps, capable, results

    snaps, capable, results = asyncio.run(go())
    assert len(snaps) == 5
    assert {r.bssid for r in results} == capable
    assert all(r.distance_mm > 0 and r.distance_std_dev_mm >= 0 for r in results)


def test_mock_ranging_failure_code():
    async def go():
        source = MockRangingSource(lambda _bssid: -50, delay_s=0, fail_code=3)
        try:
            await source.request(frozenset({"X"}))
        except RangingError as exc:
            return exc.code
        return None

    assert asyncio.run(go()) == 3
