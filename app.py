"""
TCL Live Mirror: traffic alerts and vehicle positions (FastAPI service)

Purpose
=======
Mirror the GrandLyon TCL open-data feeds, keep the latest snapshot of each in
memory, and republish it to many clients at once.

Key features
------------
- Poll the traffic alert datasets (main + Junior Direct) and the SIRI vehicle
  monitoring dataset on fixed intervals.
- Collapse duplicate alerts and detect alerts that are new for their line.
- REST polling endpoints for both feeds.
- WebSocket push of new alerts, filtered by the lines each client follows.
- Server-Sent Events (SSE) broadcast of every vehicle positions snapshot.

Run
---
$ uvicorn app:app --port 3000 --ws-ping-interval 30 --ws-ping-timeout 30

Environment
-----------
- PYTHON >= 3.10
- pip install fastapi "uvicorn[standard]" httpx
"""

from __future__ import annotations
from typing import Any, Dict, Optional
from datetime import datetime, timezone
import os

from fastapi import FastAPI, HTTPException, Request, WebSocket
from fastapi.responses import JSONResponse, StreamingResponse

from alert_keys import dedupe_alerts
from alert_socket import AlertSubscriptionRouter, serve_alert_socket
from feed_refresher import FeedRefresher
from grandlyon_client import GrandLyonClient, extract_vehicle_activities
from positions_stream import SSE_HEADERS, PositionsBroadcaster
from snapshot_cache import SnapshotCache, isoformat_utc

# ---------------------------
# Config
# ---------------------------
PORT = int(os.getenv("PORT", "3000"))
TRAFFIC_REFRESH_S = int(os.getenv("TRAFFIC_REFRESH_S", str(60 * 60)))
VEHICLE_MONITORING_REFRESH_S = int(os.getenv("VEHICLE_MONITORING_REFRESH_S", "30"))
WS_PING_INTERVAL_S = float(os.getenv("WS_PING_INTERVAL_S", "30"))
WS_PING_TIMEOUT_S = float(os.getenv("WS_PING_TIMEOUT_S", "30"))


def _now_iso() -> str:
    return isoformat_utc(datetime.now(timezone.utc))


def build_response(
    success: bool,
    data: Any,
    last_updated: Optional[datetime],
    error: Optional[str] = None,
) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "success": success,
        "data": data,
        "timestamp": _now_iso(),
        "lastUpdated": isoformat_utc(last_updated),
    }
    if error is not None:
        body["error"] = error
    return body


def build_traffic_feed(client: GrandLyonClient, router: AlertSubscriptionRouter) -> FeedRefresher:
    return FeedRefresher(
        "traffic",
        client.fetch_traffic_alerts,
        SnapshotCache("traffic"),
        TRAFFIC_REFRESH_S,
        dedupe=dedupe_alerts,
        on_new_records=router.dispatch,
    )


def build_positions_feed(client: GrandLyonClient, channel: PositionsBroadcaster) -> FeedRefresher:
    return FeedRefresher(
        "vehicle_monitoring",
        client.fetch_vehicle_monitoring,
        SnapshotCache("vehicle_monitoring"),
        VEHICLE_MONITORING_REFRESH_S,
        extract_records=extract_vehicle_activities,
        on_snapshot=channel.push,
    )


def create_app(
    traffic_feed: Optional[FeedRefresher] = None,
    positions_feed: Optional[FeedRefresher] = None,
    alert_router: Optional[AlertSubscriptionRouter] = None,
    positions_channel: Optional[PositionsBroadcaster] = None,
    client: Optional[GrandLyonClient] = None,
    start_refresh: bool = True,
) -> FastAPI:
    """Build the service; components not supplied are wired to GrandLyon."""
    alert_router = alert_router or AlertSubscriptionRouter()
    positions_channel = positions_channel or PositionsBroadcaster()
    if client is None and (traffic_feed is None or positions_feed is None):
        client = GrandLyonClient.from_env()
    traffic_feed = traffic_feed or build_traffic_feed(client, alert_router)
    positions_feed = positions_feed or build_positions_feed(client, positions_channel)

    app = FastAPI(title="TCL Live Mirror")
    app.state.traffic_feed = traffic_feed
    app.state.positions_feed = positions_feed
    app.state.alert_router = alert_router
    app.state.positions_channel = positions_channel
    app.state.grandlyon_client = client

    @app.on_event("startup")
    async def start_feeds() -> None:
        if not start_refresh:
            return
        traffic_feed.start()
        positions_feed.start()
        print("[startup] traffic alerts and vehicle monitoring refresh scheduled")

    @app.on_event("shutdown")
    async def stop_feeds() -> None:
        await traffic_feed.stop()
        await positions_feed.stop()
        await alert_router.stop()
        await positions_channel.stop()
        if client is not None:
            await client.aclose()

    @app.exception_handler(404)
    async def not_found_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            {"success": False, "error": "Route not found", "timestamp": _now_iso()},
            status_code=404,
        )

    @app.get("/health")
    async def health():
        return {"status": "ok", "timestamp": _now_iso()}

    # ---------------------------
    # Traffic alerts
    # ---------------------------
    @app.get("/traffic/alerts")
    async def get_all_alerts():
        snapshot = await traffic_feed.get_or_populate()
        return build_response(True, list(snapshot.records), snapshot.captured_at)

    @app.get("/traffic/status")
    async def get_traffic_status():
        snapshot = traffic_feed.list_records()
        return build_response(True, snapshot.status(), snapshot.captured_at)

    @app.websocket("/traffic/alerts/ws")
    async def traffic_alerts_ws(websocket: WebSocket):
        await serve_alert_socket(alert_router, websocket)

    # ---------------------------
    # Vehicle monitoring
    # ---------------------------
    @app.get("/vehicle-monitoring/positions")
    async def get_vehicle_monitoring():
        snapshot = await positions_feed.get_or_populate()
        return build_response(True, snapshot.payload, snapshot.captured_at)

    @app.get("/vehicle-monitoring/status")
    async def get_vehicle_monitoring_status():
        snapshot = positions_feed.list_records()
        return build_response(True, snapshot.status(), snapshot.captured_at)

    @app.get("/vehicle-monitoring/stream")
    async def stream_vehicle_monitoring():
        """SSE stream of vehicle positions.

        The current snapshot is sent on connect, then every refresh is pushed
        as a ``positions`` event, with ``heartbeat`` events in between.
        """
        initial = positions_feed.list_records()
        return StreamingResponse(
            positions_channel.stream(initial),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=PORT,
        ws_ping_interval=WS_PING_INTERVAL_S,
        ws_ping_timeout=WS_PING_TIMEOUT_S,
    )
