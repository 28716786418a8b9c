"""SSE broadcast of vehicle monitoring snapshots.

Every listener is a bounded queue of pre-encoded SSE frames drained by its
own ``StreamingResponse`` generator. The channel writes each refreshed
snapshot to all of them and keeps idle proxies from closing the stream with
a heartbeat event that only runs while someone is listening.
"""

from __future__ import annotations

import asyncio
import json
from typing import AsyncIterator, Iterable, Optional, Set

from snapshot_cache import Snapshot, isoformat_utc

HEARTBEAT_INTERVAL_S = 20.0
LISTENER_QUEUE_SIZE = 10
HEARTBEAT_FRAME = "event: heartbeat\ndata: {}\n\n"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def encode_positions(snapshot: Snapshot) -> str:
    data = {
        "count": snapshot.count,
        "lastUpdated": isoformat_utc(snapshot.captured_at),
        "payload": snapshot.payload,
    }
    return f"event: positions\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


class PositionsBroadcaster:
    def __init__(
        self,
        heartbeat_interval_s: float = HEARTBEAT_INTERVAL_S,
        queue_size: int = LISTENER_QUEUE_SIZE,
    ) -> None:
        self.heartbeat_interval_s = heartbeat_interval_s
        self.queue_size = queue_size
        self._listeners: Set[asyncio.Queue] = set()
        self._heartbeat_task: Optional[asyncio.Task] = None

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    @property
    def heartbeat_running(self) -> bool:
        return self._heartbeat_task is not None and not self._heartbeat_task.done()

    def register(self, initial: Optional[Snapshot] = None) -> asyncio.Queue:
        """Add a listener; a populated ``initial`` snapshot is queued for it alone."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._listeners.add(queue)
        self._start_heartbeat()
        if initial is not None and initial.is_populated:
            self.push(initial, targets=[queue])
        return queue

    def unregister(self, queue: asyncio.Queue) -> None:
        self._listeners.discard(queue)
        self._stop_heartbeat_if_idle()

    def push(self, snapshot: Snapshot, targets: Optional[Iterable[asyncio.Queue]] = None) -> None:
        encoded = encode_positions(snapshot)
        self._write(encoded, self._listeners if targets is None else targets)

    def _write(self, encoded: str, targets: Iterable[asyncio.Queue]) -> None:
        for queue in list(targets):
            try:
                queue.put_nowait(encoded)
            except asyncio.QueueFull:
                pass  # Drop update for slow clients

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval_s)
            self._write(HEARTBEAT_FRAME, self._listeners)

    def _start_heartbeat(self) -> None:
        if not self.heartbeat_running:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    def _stop_heartbeat_if_idle(self) -> None:
        if self._listeners or self._heartbeat_task is None:
            return
        self._heartbeat_task.cancel()
        self._heartbeat_task = None

    async def stream(self, initial: Optional[Snapshot] = None) -> AsyncIterator[str]:
        """Yield SSE frames for one client until the response is torn down."""
        queue = self.register(initial)
        try:
            while True:
                yield await queue.get()
        finally:
            self.unregister(queue)

    async def stop(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        self._listeners.clear()
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        print("[positions_sse] vehicle monitoring stream stopped")


__all__ = [
    "HEARTBEAT_FRAME",
    "HEARTBEAT_INTERVAL_S",
    "PositionsBroadcaster",
    "SSE_HEADERS",
    "encode_positions",
]
