"""Periodic refresh of one upstream feed into its snapshot cache.

Each cycle fetches the feed, collapses duplicates, swaps the cache and then
notifies the push channels. A failed fetch leaves the cache untouched and is
retried on the next tick; notification failures are logged and never undo
the swap.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Set

from alert_keys import detect_new_alerts, index_alerts_by_line
from grandlyon_client import PartialFetchError
from snapshot_cache import Snapshot, SnapshotCache

Fetcher = Callable[[], Awaitable[Any]]
Hook = Callable[[Any], Any]


class FeedRefresher:
    """Owns the refresh loop and the query facade of a single feed.

    ``fetch`` returns either a list of records or, when ``extract_records`` is
    given, a raw payload from which the records are extracted (the payload
    is kept on the snapshot). ``on_new_records`` receives the alerts whose
    line/key pair was absent from the previous snapshot; ``on_snapshot``
    receives every fresh snapshot.
    """

    def __init__(
        self,
        name: str,
        fetch: Fetcher,
        cache: SnapshotCache,
        interval_s: float,
        *,
        extract_records: Optional[Callable[[Any], List[Mapping[str, Any]]]] = None,
        dedupe: Optional[Callable[[Sequence[Mapping[str, Any]]], List[Mapping[str, Any]]]] = None,
        on_new_records: Optional[Hook] = None,
        on_snapshot: Optional[Hook] = None,
    ) -> None:
        self.name = name
        self.cache = cache
        self.interval_s = interval_s
        self._fetch = fetch
        self._extract_records = extract_records
        self._dedupe = dedupe
        self._on_new_records = on_new_records
        self._on_snapshot = on_snapshot
        self._task: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Task] = None

    # ---------------------------
    # Refresh cycle
    # ---------------------------
    async def refresh(self) -> Snapshot:
        """Run one refresh cycle, sharing it with concurrent callers.

        Raises ``FetchError`` when the upstream fetch fails.
        """
        task = self._inflight
        if task is None or task.done():
            task = asyncio.ensure_future(self._refresh_once())
            self._inflight = task
            task.add_done_callback(self._clear_inflight)
        return await asyncio.shield(task)

    def _clear_inflight(self, task: asyncio.Task) -> None:
        if self._inflight is task:
            self._inflight = None
        # Mark the outcome as retrieved; awaiters may all have been cancelled.
        if not task.cancelled():
            task.exception()

    async def _refresh_once(self) -> Snapshot:
        previous = self.cache.read()
        previous_index: Optional[Dict[str, Set[str]]] = None
        if self._on_new_records is not None and previous.is_populated:
            previous_index = index_alerts_by_line(previous.records)

        try:
            fetched = await self._fetch()
        except PartialFetchError as exc:
            print(f"[{self.name}] {exc}; serving the remaining sources")
            fetched = exc.records

        payload: Any = None
        if self._extract_records is not None:
            payload = fetched
            records = list(self._extract_records(fetched))
        else:
            records = list(fetched or [])

        if self._dedupe is not None:
            unique = self._dedupe(records)
            removed = len(records) - len(unique)
            if removed > 0:
                print(f"[{self.name}] removed {removed} duplicate record(s)")
            records = unique

        snapshot = self.cache.replace(records, payload=payload)
        print(f"[{self.name}] cache updated with {snapshot.count} records")

        if previous_index is not None:
            new_records = detect_new_alerts(snapshot.records, previous_index)
            if new_records:
                print(f"[{self.name}] {len(new_records)} new record(s) since last refresh")
                await self._notify(self._on_new_records, new_records)
        if self._on_snapshot is not None:
            await self._notify(self._on_snapshot, snapshot)
        return snapshot

    async def _notify(self, hook: Optional[Hook], arg: Any) -> None:
        if hook is None:
            return
        try:
            result = hook(arg)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            print(f"[{self.name}] failed to notify subscribers: {exc}")

    # ---------------------------
    # Scheduling
    # ---------------------------
    async def _tick(self) -> None:
        try:
            await self.refresh()
        except Exception as exc:
            print(f"[{self.name}] scheduled refresh failed: {exc}")

    async def _run(self) -> None:
        if not self.cache.read().is_populated:
            await self._tick()
        while True:
            await asyncio.sleep(self.interval_s)
            await self._tick()

    def start(self) -> asyncio.Task:
        """Start the refresh loop; returns the task handle owning it."""
        if self._task is None or self._task.done():
            print(f"[{self.name}] starting scheduled refresh every {self.interval_s:g}s")
            self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self) -> None:
        """Cancel the loop and any refresh still in flight; no hook runs after."""
        task, self._task = self._task, None
        inflight, self._inflight = self._inflight, None
        if task is None and inflight is None:
            return
        for pending in (task, inflight):
            if pending is None or pending.done():
                continue
            pending.cancel()
            try:
                await pending
            except asyncio.CancelledError:
                pass
        print(f"[{self.name}] scheduled refresh stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ---------------------------
    # Query facade
    # ---------------------------
    def status(self) -> dict:
        """Count and capture time of the cached snapshot; never fetches."""
        return self.cache.read().status()

    def list_records(self) -> Snapshot:
        return self.cache.read()

    async def get_or_populate(self) -> Snapshot:
        """Return the cached snapshot, fetching once first if never populated."""
        if not self.cache.read().is_populated:
            print(f"[{self.name}] cache is empty, fetching initial data...")
            try:
                await self.refresh()
            except Exception as exc:
                print(f"[{self.name}] initial fetch failed: {exc}")
        return self.cache.read()


__all__ = ["FeedRefresher"]
