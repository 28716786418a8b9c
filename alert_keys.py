"""Stable identifiers for TCL traffic alerts.

Upstream alert records carry volatile bookkeeping fields (``n``, ``debut``,
``fin``) that change between refreshes for what riders consider the same
alert. The helpers here derive:

* a *line key* used to route an alert to subscribers of that line, and
* an *alert key* built only from the fields riders care about, used both to
  collapse duplicates and to detect alerts that are new since the last
  refresh.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set

Alert = Mapping[str, Any]

# Most specific field first. The main dataset uses ``ligne_cli``; the other
# spellings show up in the Junior Direct dataset and older exports.
LINE_FIELDS = (
    "ligne_cli",
    "ligne",
    "ligne_id",
    "ligne_code",
    "line",
    "line_id",
    "line_code",
)


def normalize_field(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        trimmed = value.strip()
        return trimmed or None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    return None


def line_key(alert: Alert) -> Optional[str]:
    """Return the first non-empty line identifier of ``alert``, if any."""
    for name in LINE_FIELDS:
        normalized = normalize_field(alert.get(name))
        if normalized:
            return normalized
    return None


def alert_key(alert: Alert) -> str:
    """Return the deduplication key of ``alert``.

    The key is a compact JSON object with a fixed member order so that two
    alerts with the same message, title, line, cause, type and mode always
    produce byte-identical keys, whatever order their fields arrived in.
    """
    payload = {
        "message": normalize_field(alert.get("message")),
        "titre": normalize_field(alert.get("titre")),
        "line": line_key(alert),
        "cause": normalize_field(alert.get("cause")),
        "type": normalize_field(alert.get("type")),
        "mode": normalize_field(alert.get("mode")),
    }
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def dedupe_alerts(alerts: Iterable[Alert]) -> List[Alert]:
    seen: Set[str] = set()
    unique: List[Alert] = []
    for alert in alerts:
        key = alert_key(alert)
        if key in seen:
            continue
        seen.add(key)
        unique.append(alert)
    return unique


def index_alerts_by_line(alerts: Iterable[Alert]) -> Dict[str, Set[str]]:
    """Map each line to the alert keys present for it in ``alerts``."""
    index: Dict[str, Set[str]] = {}
    for alert in alerts:
        line = line_key(alert)
        if not line:
            continue
        index.setdefault(line, set()).add(alert_key(alert))
    return index


def detect_new_alerts(
    alerts: Sequence[Alert],
    previous_index: Mapping[str, Set[str]],
) -> List[Alert]:
    """Return the alerts of ``alerts`` that were not indexed for their line.

    Alerts without a line cannot be routed to anyone and are never reported.
    """
    new_alerts: List[Alert] = []
    for alert in alerts:
        line = line_key(alert)
        if not line:
            continue
        previous_keys = previous_index.get(line)
        if previous_keys is None or alert_key(alert) not in previous_keys:
            new_alerts.append(alert)
    return new_alerts


__all__ = [
    "LINE_FIELDS",
    "normalize_field",
    "line_key",
    "alert_key",
    "dedupe_alerts",
    "index_alerts_by_line",
    "detect_new_alerts",
]
