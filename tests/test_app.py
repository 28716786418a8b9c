import asyncio
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import app as app_module  # noqa: E402
from alert_keys import dedupe_alerts  # noqa: E402
from alert_socket import AlertSubscriptionRouter  # noqa: E402
from feed_refresher import FeedRefresher  # noqa: E402
from grandlyon_client import FetchError, extract_vehicle_activities  # noqa: E402
from positions_stream import PositionsBroadcaster  # noqa: E402
from snapshot_cache import SnapshotCache  # noqa: E402

ALERTS = [
    {"ligne_cli": "A", "message": "Métro A interrompu", "titre": "Incident", "n": 1},
    {"ligne_cli": "A", "message": "Métro A interrompu", "titre": "Incident", "n": 2},
    {"ligne_cli": "C3", "message": "Déviation", "titre": "Travaux", "n": 3},
]
POSITIONS = {
    "Siri": {
        "ServiceDelivery": {
            "VehicleMonitoringDelivery": [
                {"VehicleActivity": [{"VehicleRef": "1"}, {"VehicleRef": "2"}]},
            ]
        }
    }
}


class CountingFetcher:
    def __init__(self, result):
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        await asyncio.sleep(0)
        if isinstance(self.result, BaseException):
            raise self.result
        return self.result


def _build(alerts_result=ALERTS, positions_result=POSITIONS):
    router = AlertSubscriptionRouter()
    channel = PositionsBroadcaster()
    alerts_fetcher = CountingFetcher(alerts_result)
    positions_fetcher = CountingFetcher(positions_result)
    traffic_feed = FeedRefresher(
        "traffic",
        alerts_fetcher,
        SnapshotCache("traffic"),
        3600,
        dedupe=dedupe_alerts,
        on_new_records=router.dispatch,
    )
    positions_feed = FeedRefresher(
        "vehicle_monitoring",
        positions_fetcher,
        SnapshotCache("vehicle_monitoring"),
        30,
        extract_records=extract_vehicle_activities,
        on_snapshot=channel.push,
    )
    application = app_module.create_app(
        traffic_feed=traffic_feed,
        positions_feed=positions_feed,
        alert_router=router,
        positions_channel=channel,
        start_refresh=False,
    )
    return application, alerts_fetcher, positions_fetcher


@pytest.fixture()
def service():
    application, alerts_fetcher, positions_fetcher = _build()
    with TestClient(application) as client:
        yield client, alerts_fetcher, positions_fetcher


def test_health(service):
    client, _, _ = service
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_status_does_not_fetch(service):
    client, alerts_fetcher, _ = service
    body = client.get("/traffic/status").json()
    assert body["success"] is True
    assert body["data"] == {"count": 0, "lastUpdated": None}
    assert body["lastUpdated"] is None
    assert alerts_fetcher.calls == 0


def test_alerts_populate_cache_once(service):
    client, alerts_fetcher, _ = service

    first = client.get("/traffic/alerts").json()
    second = client.get("/traffic/alerts").json()
    status = client.get("/traffic/status").json()

    assert alerts_fetcher.calls == 1
    assert first["success"] is True
    assert len(first["data"]) == 2
    assert first["lastUpdated"].endswith("Z")
    assert second["data"] == first["data"]
    assert status["data"]["count"] == 2
    assert status["data"]["lastUpdated"] == first["lastUpdated"]


def test_alerts_failed_bootstrap_serves_empty_cache():
    application, alerts_fetcher, _ = _build(alerts_result=FetchError("down", status_code=503))
    with TestClient(application) as client:
        body = client.get("/traffic/alerts").json()
    assert body["success"] is True
    assert body["data"] == []
    assert body["lastUpdated"] is None
    assert alerts_fetcher.calls == 1


def test_alerts_unexpected_bootstrap_error_serves_empty_cache():
    application, alerts_fetcher, _ = _build(alerts_result=ValueError("unexpected upstream shape"))
    with TestClient(application) as client:
        resp = client.get("/traffic/alerts")
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["data"] == []
    assert alerts_fetcher.calls == 1


def test_vehicle_monitoring_positions_and_status(service):
    client, _, positions_fetcher = service

    positions = client.get("/vehicle-monitoring/positions").json()
    status = client.get("/vehicle-monitoring/status").json()

    assert positions["data"] == POSITIONS
    assert status["data"]["count"] == 2
    assert positions_fetcher.calls == 1


def test_unknown_route(service):
    client, _, _ = service
    resp = client.get("/nope")
    assert resp.status_code == 404
    body = resp.json()
    assert body["success"] is False
    assert body["error"] == "Route not found"


def test_alert_socket_protocol(service):
    client, _, _ = service
    with client.websocket_connect("/traffic/alerts/ws") as ws:
        assert ws.receive_json() == {"type": "welcome", "maxFavorites": 50}

        ws.send_text("{broken")
        assert ws.receive_json() == {"type": "error", "error": "invalid_json"}

        ws.send_json({"type": "subscribe", "lines": "A"})
        assert ws.receive_json() == {"type": "error", "error": "invalid_lines"}

        ws.send_json({"type": "subscribe", "lines": ["A", " C3 ", "A"]})
        assert ws.receive_json() == {
            "type": "subscribed",
            "lines": ["A", "C3"],
            "maxFavorites": 50,
            "truncated": False,
        }

        ws.send_json({"type": "ping"})
        assert ws.receive_json() == {"type": "pong"}

        ws.send_json({"type": "hello"})
        assert ws.receive_json() == {"type": "error", "error": "unknown_type"}


def test_alert_socket_close_unsubscribes():
    application, _, _ = _build()
    router = application.state.alert_router
    with TestClient(application) as client:
        with client.websocket_connect("/traffic/alerts/ws") as ws:
            ws.receive_json()
            ws.send_json({"type": "subscribe", "lines": ["A"]})
            ws.receive_json()
            assert len(router.subscribers("A")) == 1
        client.get("/health")  # let the server side observe the close
        assert router.subscribers("A") == set()
        assert router.connection_count == 0


def test_idle_alert_subscriber_survives_heartbeats():
    application, _, _ = _build()
    router = application.state.alert_router
    with TestClient(application) as client:
        with client.websocket_connect("/traffic/alerts/ws") as ws:
            ws.receive_json()
            ws.send_json({"type": "subscribe", "lines": ["A"]})
            ws.receive_json()

            client.portal.call(router.heartbeat)
            client.portal.call(router.heartbeat)

            assert len(router.subscribers("A")) == 1
            # no server-initiated frame is queued ahead of the reply
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}
