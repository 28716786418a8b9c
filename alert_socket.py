"""WebSocket push of traffic alerts to clients subscribed to their lines.

Client protocol (JSON text frames)::

    -> {"type": "subscribe", "lines": ["A", "C3", ...]}
    -> {"type": "ping"}
    <- {"type": "welcome", "maxFavorites": 50}
    <- {"type": "subscribed", "lines": [...], "maxFavorites": 50, "truncated": false}
    <- {"type": "alert", "line": "A", "key": "...", "timestamp": "...", "alert": {...}}
    <- {"type": "pong"}
    <- {"type": "error", "error": "invalid_json" | "invalid_message" | "invalid_lines" | "unknown_type"}

Liveness is detected by the transport: uvicorn sends protocol-level pings
(``--ws-ping-interval`` / ``--ws-ping-timeout``) that client stacks answer on
their own, and a dead socket surfaces as ``websocket.disconnect``. The
router heartbeat only sweeps connections whose transport has closed or whose
last write failed; it never sends frames of its own.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from alert_keys import alert_key, line_key, normalize_field
from snapshot_cache import isoformat_utc

MAX_FAVORITES = 50
HEARTBEAT_INTERVAL_S = 30.0


class MalformedClientMessage(Exception):
    """A client frame that cannot be acted upon; ``code`` is sent back."""

    def __init__(self, code: str) -> None:
        super().__init__(code)
        self.code = code


class AlertConnection:
    """One live WebSocket client of the alert push channel."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self.is_alive = True

    async def send(self, text: str) -> bool:
        if self.websocket.application_state != WebSocketState.CONNECTED:
            return False
        try:
            await self.websocket.send_text(text)
        except Exception:
            return False  # cleanup happens when the receive loop sees the close
        return True

    async def probe(self) -> bool:
        return (
            self.websocket.application_state == WebSocketState.CONNECTED
            and self.websocket.client_state == WebSocketState.CONNECTED
        )

    async def terminate(self) -> None:
        if self.websocket.application_state == WebSocketState.DISCONNECTED:
            return
        try:
            await self.websocket.close(code=1001)
        except RuntimeError:
            pass  # already closing


def normalize_lines(value: Sequence[Any]) -> Tuple[List[str], bool]:
    """Trim, stringify and de-duplicate requested lines, capped at MAX_FAVORITES.

    ``truncated`` is true only when more than MAX_FAVORITES distinct lines
    remained after normalisation.
    """
    lines: List[str] = []
    seen: Set[str] = set()
    for item in value:
        line = normalize_field(item)
        if not line or line in seen:
            continue
        seen.add(line)
        lines.append(line)
    return lines[:MAX_FAVORITES], len(lines) > MAX_FAVORITES


def parse_client_message(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            raise MalformedClientMessage("invalid_json")
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError):
        raise MalformedClientMessage("invalid_json")
    if not isinstance(payload, dict) or "type" not in payload:
        raise MalformedClientMessage("invalid_message")
    return payload


class AlertSubscriptionRouter:
    """Indexes connections by subscribed line and routes new alerts to them.

    All index mutations and deliveries happen on the event loop thread, so
    the two maps below are always consistent with each other.
    """

    def __init__(self, heartbeat_interval_s: float = HEARTBEAT_INTERVAL_S) -> None:
        self.heartbeat_interval_s = heartbeat_interval_s
        self._connections: Set[Any] = set()
        self._subscriptions: Dict[Any, Set[str]] = {}
        self._by_line: Dict[str, Set[Any]] = {}
        self._heartbeat_task: Optional[asyncio.Task] = None

    # ---------------------------
    # Index maintenance
    # ---------------------------
    def subscribe(self, connection: Any, lines: Sequence[Any]) -> Tuple[List[str], bool]:
        """Replace the subscription of ``connection`` with ``lines``."""
        normalized, truncated = normalize_lines(lines)
        self.unsubscribe(connection)
        self._subscriptions[connection] = set(normalized)
        for line in normalized:
            self._by_line.setdefault(line, set()).add(connection)
        return normalized, truncated

    def unsubscribe(self, connection: Any) -> None:
        current = self._subscriptions.pop(connection, None)
        if not current:
            return
        for line in current:
            bucket = self._by_line.get(line)
            if bucket is None:
                continue
            bucket.discard(connection)
            if not bucket:
                del self._by_line[line]

    def subscribers(self, line: str) -> Set[Any]:
        return set(self._by_line.get(line, ()))

    def lines_of(self, connection: Any) -> Set[str]:
        return set(self._subscriptions.get(connection, ()))

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    # ---------------------------
    # Connection lifecycle
    # ---------------------------
    async def connect(self, connection: Any) -> None:
        self._connections.add(connection)
        connection.is_alive = True
        self._ensure_heartbeat()
        await self._send_json(connection, {"type": "welcome", "maxFavorites": MAX_FAVORITES})

    def disconnect(self, connection: Any) -> None:
        self._connections.discard(connection)
        self.unsubscribe(connection)

    async def handle_message(self, connection: Any, raw: Any) -> None:
        """Answer one client frame. Malformed input never closes the socket."""
        connection.is_alive = True
        try:
            reply = self._handle(connection, parse_client_message(raw))
        except MalformedClientMessage as exc:
            reply = {"type": "error", "error": exc.code}
        await self._send_json(connection, reply)

    def _handle(self, connection: Any, message: Mapping[str, Any]) -> Dict[str, Any]:
        kind = message.get("type")
        if kind == "subscribe":
            raw_lines = message.get("lines")
            if not isinstance(raw_lines, list):
                raise MalformedClientMessage("invalid_lines")
            lines, truncated = self.subscribe(connection, raw_lines)
            return {
                "type": "subscribed",
                "lines": lines,
                "maxFavorites": MAX_FAVORITES,
                "truncated": truncated,
            }
        if kind == "ping":
            return {"type": "pong"}
        raise MalformedClientMessage("unknown_type")

    # ---------------------------
    # Delivery
    # ---------------------------
    async def _deliver(self, connection: Any, text: str) -> bool:
        if await connection.send(text):
            return True
        connection.is_alive = False
        return False

    async def _send_json(self, connection: Any, payload: Mapping[str, Any]) -> bool:
        return await self._deliver(connection, json.dumps(payload, ensure_ascii=False))

    async def dispatch(self, alerts: Iterable[Mapping[str, Any]]) -> int:
        """Push each alert to the connections subscribed to its line.

        Returns the number of frames written.
        """
        timestamp = isoformat_utc(datetime.now(timezone.utc))
        delivered = 0
        for alert in alerts:
            line = line_key(alert)
            if not line:
                continue
            bucket = self._by_line.get(line)
            if not bucket:
                continue
            message = json.dumps(
                {
                    "type": "alert",
                    "line": line,
                    "key": alert_key(alert),
                    "timestamp": timestamp,
                    "alert": dict(alert),
                },
                ensure_ascii=False,
            )
            for connection in list(bucket):
                # A connection may have closed while an earlier send awaited.
                if line not in self._subscriptions.get(connection, ()):
                    continue
                if await self._deliver(connection, message):
                    delivered += 1
        return delivered

    # ---------------------------
    # Heartbeat
    # ---------------------------
    async def heartbeat(self) -> None:
        """Evict connections found dead on the previous sweep, check the rest.

        A connection is dead when its transport has closed or a write to it
        failed, so a half-dead socket lives at most two intervals.
        """
        for connection in list(self._connections):
            if not connection.is_alive:
                print("[alerts_ws] evicting dead connection")
                self.disconnect(connection)
                await connection.terminate()
                continue
            connection.is_alive = await connection.probe()

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval_s)
            try:
                await self.heartbeat()
            except Exception as exc:
                print(f"[alerts_ws] heartbeat error: {exc}")

    def _ensure_heartbeat(self) -> None:
        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def stop(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._connections.clear()
        self._subscriptions.clear()
        self._by_line.clear()


async def serve_alert_socket(router: AlertSubscriptionRouter, websocket: WebSocket) -> None:
    """Run one client of the alert push channel until it disconnects."""
    await websocket.accept()
    connection = AlertConnection(websocket)
    await router.connect(connection)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes")
            await router.handle_message(connection, raw)
    finally:
        router.disconnect(connection)


__all__ = [
    "MAX_FAVORITES",
    "HEARTBEAT_INTERVAL_S",
    "AlertConnection",
    "AlertSubscriptionRouter",
    "MalformedClientMessage",
    "normalize_lines",
    "parse_client_message",
    "serve_alert_socket",
]
