import asyncio
import base64
import sys
from pathlib import Path

import httpx
import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from grandlyon_client import (  # noqa: E402
    DEFAULT_TRAFFIC_ALERTS_URL,
    FetchError,
    GrandLyonClient,
    PartialFetchError,
    extract_vehicle_activities,
)

MAIN_URL = "https://data.example.org/alerts.json"
JUNIOR_URL = "https://data.example.org/junior.json"
VM_URL = "https://data.example.org/vm.json"


def _client(handler, **kwargs):
    options = {
        "email": "user@example.org",
        "password": "secret",
        "traffic_alerts_url": MAIN_URL,
        "junior_direct_url": JUNIOR_URL,
        "vehicle_monitoring_url": VM_URL,
        "transport": httpx.MockTransport(handler),
    }
    options.update(kwargs)
    return GrandLyonClient(**options)


def _run(client, method):
    async def scenario():
        try:
            return await getattr(client, method)()
        finally:
            await client.aclose()

    return asyncio.run(scenario())


def test_fetch_traffic_alerts_merges_sources_with_basic_auth():
    seen_auth = []

    def handler(request):
        seen_auth.append(request.headers.get("Authorization"))
        if str(request.url) == MAIN_URL:
            return httpx.Response(200, json={"values": [{"ligne_cli": "A"}]})
        return httpx.Response(200, json={"values": [{"ligne": "J1"}, "garbage"]})

    alerts = _run(_client(handler), "fetch_traffic_alerts")

    assert alerts == [{"ligne_cli": "A"}, {"ligne": "J1"}]
    expected = "Basic " + base64.b64encode(b"user@example.org:secret").decode()
    assert seen_auth == [expected, expected]


def test_junior_failure_is_partial():
    def handler(request):
        if str(request.url) == MAIN_URL:
            return httpx.Response(200, json={"values": [{"ligne_cli": "A"}]})
        return httpx.Response(502)

    with pytest.raises(PartialFetchError) as excinfo:
        _run(_client(handler), "fetch_traffic_alerts")

    assert excinfo.value.records == [{"ligne_cli": "A"}]
    assert excinfo.value.failures[0].status_code == 502
    assert excinfo.value.failures[0].source == "junior_direct"


def test_main_failure_with_junior_up_is_partial():
    def handler(request):
        if str(request.url) == MAIN_URL:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200, json={"values": [{"ligne": "J1"}]})

    with pytest.raises(PartialFetchError) as excinfo:
        _run(_client(handler), "fetch_traffic_alerts")

    assert excinfo.value.records == [{"ligne": "J1"}]
    assert excinfo.value.failures[0].status_code is None


def test_all_sources_failing_raises_fetch_error():
    def handler(request):
        return httpx.Response(401)

    with pytest.raises(FetchError) as excinfo:
        _run(_client(handler), "fetch_traffic_alerts")

    assert not isinstance(excinfo.value, PartialFetchError)
    assert excinfo.value.status_code == 401


def test_timeout_is_a_fetch_error():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(FetchError) as excinfo:
        _run(_client(handler, junior_direct_url=None), "fetch_traffic_alerts")

    assert excinfo.value.status_code is None
    assert "timed out" in str(excinfo.value)


def test_invalid_json_is_a_fetch_error():
    def handler(request):
        return httpx.Response(200, content=b"<html>maintenance</html>")

    with pytest.raises(FetchError):
        _run(_client(handler, junior_direct_url=None), "fetch_traffic_alerts")


def test_fake_alert_injection_is_always_new():
    def handler(request):
        return httpx.Response(200, json={"values": []})

    client = _client(handler, junior_direct_url=None, fake_alert_line="T1")

    async def scenario():
        try:
            return await client.fetch_traffic_alerts(), await client.fetch_traffic_alerts()
        finally:
            await client.aclose()

    first, second = asyncio.run(scenario())
    assert first[0]["ligne_cli"] == "T1"
    assert first[0]["message"] != second[0]["message"]


def test_fetch_vehicle_monitoring_returns_raw_payload():
    body = {"Siri": {"ServiceDelivery": {"VehicleMonitoringDelivery": []}}}

    def handler(request):
        assert str(request.url) == VM_URL
        return httpx.Response(200, json=body)

    assert _run(_client(handler), "fetch_vehicle_monitoring") == body


def test_fetch_vehicle_monitoring_requires_url():
    def handler(request):
        raise AssertionError("no request expected")

    with pytest.raises(FetchError):
        _run(_client(handler, vehicle_monitoring_url=None), "fetch_vehicle_monitoring")


def test_extract_vehicle_activities():
    payload = {
        "Siri": {
            "ServiceDelivery": {
                "VehicleMonitoringDelivery": [
                    {"VehicleActivity": [{"id": 1}, {"id": 2}]},
                    {"VehicleActivity": None},
                    "junk",
                    {"VehicleActivity": [{"id": 3}]},
                ]
            }
        }
    }
    assert extract_vehicle_activities(payload) == [{"id": 1}, {"id": 2}, {"id": 3}]
    assert extract_vehicle_activities(None) == []
    assert extract_vehicle_activities({"Siri": None}) == []
    assert extract_vehicle_activities({"Siri": {"ServiceDelivery": {}}}) == []


def test_from_env(monkeypatch):
    monkeypatch.setenv("EMAIL", " user@example.org ")
    monkeypatch.setenv("PASSWORD", "secret")
    monkeypatch.delenv("TRAFFIC_ALERTS_URL", raising=False)
    monkeypatch.setenv("TRAFFIC_JUNIOR_DIRECT_URL", "")
    monkeypatch.setenv("VEHICLE_MONITORING_URL", VM_URL)
    monkeypatch.setenv("TRAFFIC_FAKE_ALERT", "1")
    monkeypatch.delenv("TRAFFIC_FAKE_LINE", raising=False)

    client = GrandLyonClient.from_env()

    assert client._traffic_alerts_url == DEFAULT_TRAFFIC_ALERTS_URL
    assert client._junior_direct_url is None
    assert client._vehicle_monitoring_url == VM_URL
    assert client._fake_alert_line == "A"
