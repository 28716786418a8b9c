"""In-memory snapshot cache for one upstream feed."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional, Tuple


def isoformat_utc(dt: Optional[datetime]) -> Optional[str]:
    """Render ``dt`` as ``2024-05-01T12:00:00.000Z`` (``None`` passes through)."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    text = dt.astimezone(timezone.utc).isoformat(timespec="milliseconds")
    return text.replace("+00:00", "Z")


@dataclass(frozen=True)
class Snapshot:
    """Point-in-time capture of a feed's full record set."""
    records: Tuple[Mapping[str, Any], ...] = ()
    captured_at: Optional[datetime] = None
    count: int = 0
    payload: Any = None  # raw upstream body for nested formats (SIRI)

    @property
    def is_populated(self) -> bool:
        return self.captured_at is not None

    def status(self) -> dict:
        return {"count": self.count, "lastUpdated": isoformat_utc(self.captured_at)}


EMPTY_SNAPSHOT = Snapshot()


class SnapshotCache:
    """Holds the latest snapshot of a feed.

    ``replace`` swaps a single reference, so a reader always holds either the
    complete old snapshot or the complete new one. Snapshots are frozen and
    their record tuple is never mutated after construction.
    """

    def __init__(self, name: str = "feed") -> None:
        self.name = name
        self._snapshot: Snapshot = EMPTY_SNAPSHOT

    def read(self) -> Snapshot:
        return self._snapshot

    def replace(
        self,
        records: Iterable[Mapping[str, Any]],
        payload: Any = None,
        captured_at: Optional[datetime] = None,
    ) -> Snapshot:
        frozen = tuple(records)
        snapshot = Snapshot(
            records=frozen,
            captured_at=captured_at or datetime.now(timezone.utc),
            count=len(frozen),
            payload=payload,
        )
        self._snapshot = snapshot
        return snapshot


__all__ = ["EMPTY_SNAPSHOT", "Snapshot", "SnapshotCache", "isoformat_utc"]
