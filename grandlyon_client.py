"""Async client for the GrandLyon open-data portal (TCL datasets)."""
from __future__ import annotations

import asyncio
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx


DEFAULT_TRAFFIC_ALERTS_URL = (
    "https://data.grandlyon.com/fr/datapusher/ws/rdata/tcl_sytral.tclalertetrafic_2/all.json"
    "?start=1&filename=alertes-trafic-reseau-transports-commun-lyonnais-v2"
)
DEFAULT_TIMEOUT_S = 30.0


class FetchError(Exception):
    """An upstream dataset could not be fetched.

    ``status_code`` is set when the portal answered with a non-2xx status and
    left as ``None`` for timeouts, transport failures and undecodable bodies.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        source: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.source = source


class PartialFetchError(FetchError):
    """Some sources of a multi-source fetch failed, the others succeeded.

    ``records`` holds what the healthy sources returned so callers can keep
    serving them instead of leaving their cache stale.
    """

    def __init__(self, records: List[Dict[str, Any]], failures: Sequence[FetchError]) -> None:
        names = ", ".join(f.source or "unknown" for f in failures)
        super().__init__(f"degraded fetch, failed sources: {names}")
        self.records = records
        self.failures = list(failures)


def extract_vehicle_activities(payload: Any) -> List[Dict[str, Any]]:
    """Flatten the VehicleActivity entries of a SIRI VehicleMonitoring body."""
    if not isinstance(payload, dict):
        return []
    siri = payload.get("Siri")
    delivery_root = siri.get("ServiceDelivery") if isinstance(siri, dict) else None
    deliveries = (
        delivery_root.get("VehicleMonitoringDelivery")
        if isinstance(delivery_root, dict)
        else None
    )
    if not isinstance(deliveries, list):
        return []
    activities: List[Dict[str, Any]] = []
    for delivery in deliveries:
        if not isinstance(delivery, dict):
            continue
        entries = delivery.get("VehicleActivity")
        if isinstance(entries, list):
            activities.extend(entries)
    return activities


class GrandLyonClient:
    """Fetches traffic alerts and vehicle monitoring data with Basic auth."""

    def __init__(
        self,
        email: str,
        password: str,
        traffic_alerts_url: str = DEFAULT_TRAFFIC_ALERTS_URL,
        junior_direct_url: Optional[str] = None,
        vehicle_monitoring_url: Optional[str] = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        fake_alert_line: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._auth = httpx.BasicAuth(email, password)
        self._traffic_alerts_url = traffic_alerts_url
        self._junior_direct_url = junior_direct_url or None
        self._vehicle_monitoring_url = vehicle_monitoring_url or None
        self._timeout = httpx.Timeout(timeout_s)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._fake_alert_line = fake_alert_line
        self._fake_alert_counter = 0

    @classmethod
    def from_env(cls) -> "GrandLyonClient":
        """Build a ``GrandLyonClient`` from environment configuration.

        * ``EMAIL`` / ``PASSWORD`` - GrandLyon data portal account.
        * ``TRAFFIC_ALERTS_URL`` - main alert dataset (defaults to the TCL one).
        * ``TRAFFIC_JUNIOR_DIRECT_URL`` - optional second alert dataset.
        * ``VEHICLE_MONITORING_URL`` - SIRI VehicleMonitoring dataset.
        * ``UPSTREAM_TIMEOUT_S`` - per-request timeout in seconds.
        * ``TRAFFIC_FAKE_ALERT=1`` / ``TRAFFIC_FAKE_LINE`` - inject a test alert.
        """
        fake_line: Optional[str] = None
        if os.getenv("TRAFFIC_FAKE_ALERT") == "1":
            fake_line = (os.getenv("TRAFFIC_FAKE_LINE") or "A").strip() or "A"
        return cls(
            email=(os.getenv("EMAIL") or "").strip(),
            password=os.getenv("PASSWORD") or "",
            traffic_alerts_url=(os.getenv("TRAFFIC_ALERTS_URL") or "").strip()
            or DEFAULT_TRAFFIC_ALERTS_URL,
            junior_direct_url=(os.getenv("TRAFFIC_JUNIOR_DIRECT_URL") or "").strip() or None,
            vehicle_monitoring_url=(os.getenv("VEHICLE_MONITORING_URL") or "").strip() or None,
            timeout_s=float(os.getenv("UPSTREAM_TIMEOUT_S", str(DEFAULT_TIMEOUT_S))),
            fake_alert_line=fake_line,
        )

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                auth=self._auth,
                timeout=self._timeout,
                headers={"Content-Type": "application/json"},
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _get_json(self, url: str, source: str) -> Any:
        client = await self._ensure_client()
        try:
            response = await client.get(url)
        except httpx.TimeoutException as exc:
            raise FetchError(f"{source}: request timed out", source=source) from exc
        except httpx.HTTPError as exc:
            raise FetchError(f"{source}: {exc}", source=source) from exc
        if response.status_code < 200 or response.status_code >= 300:
            raise FetchError(
                f"{source}: API responded with status {response.status_code}",
                status_code=response.status_code,
                source=source,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise FetchError(f"{source}: invalid JSON body", source=source) from exc

    async def _get_values(self, url: str, source: str) -> List[Dict[str, Any]]:
        data = await self._get_json(url, source)
        values = data.get("values") if isinstance(data, dict) else None
        if not isinstance(values, list):
            return []
        return [v for v in values if isinstance(v, dict)]

    def _fake_alert(self) -> Dict[str, Any]:
        self._fake_alert_counter += 1
        return {
            "titre": "Test alert (fake)",
            "message": f"Fake traffic alert #{self._fake_alert_counter}",
            "ligne_cli": self._fake_alert_line,
            "cause": "test",
            "type": "test",
            "mode": "test",
            "debut": datetime.now(timezone.utc).isoformat(),
        }

    async def fetch_traffic_alerts(self) -> List[Dict[str, Any]]:
        """Fetch every configured alert dataset concurrently.

        Raises ``FetchError`` when all sources fail and ``PartialFetchError``
        (with the surviving records attached) when only some of them do.
        """
        sources: List[Tuple[str, str]] = [("traffic", self._traffic_alerts_url)]
        if self._junior_direct_url:
            sources.append(("junior_direct", self._junior_direct_url))

        results = await asyncio.gather(
            *(self._get_values(url, name) for name, url in sources),
            return_exceptions=True,
        )

        records: List[Dict[str, Any]] = []
        failures: List[FetchError] = []
        for (name, _url), result in zip(sources, results):
            if isinstance(result, FetchError):
                failures.append(result)
            elif isinstance(result, BaseException):
                raise result
            else:
                records.extend(result)

        if len(failures) == len(sources):
            raise failures[0]

        if self._fake_alert_line:
            print(f"[traffic] injecting fake traffic alert for line {self._fake_alert_line}")
            records.append(self._fake_alert())

        if failures:
            raise PartialFetchError(records, failures)
        return records

    async def fetch_vehicle_monitoring(self) -> Dict[str, Any]:
        if not self._vehicle_monitoring_url:
            raise FetchError(
                "vehicle_monitoring: VEHICLE_MONITORING_URL is not configured",
                source="vehicle_monitoring",
            )
        data = await self._get_json(self._vehicle_monitoring_url, "vehicle_monitoring")
        if not isinstance(data, dict):
            raise FetchError(
                "vehicle_monitoring: unexpected payload shape",
                source="vehicle_monitoring",
            )
        return data


__all__ = [
    "DEFAULT_TRAFFIC_ALERTS_URL",
    "FetchError",
    "PartialFetchError",
    "GrandLyonClient",
    "extract_vehicle_activities",
]
