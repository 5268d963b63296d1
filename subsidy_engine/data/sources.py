"""
Measurement source adapters — IoT meters, government registries, verifiers.

Each adapter produces a lazy, restartable sequence of timestamped readings:
every call to ``fetch_measurements`` starts a fresh pull from the source and
yields readings as pages arrive. Consumers never depend on a push mechanism.

Adapters raise Unavailable when the source cannot be reached, times out or
returns something unparseable.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, AsyncIterator

import httpx

from subsidy_engine.domain.schema import Measurement
from subsidy_engine.errors import Unavailable

logger = logging.getLogger(__name__)


class SourceKind(str, Enum):
    IOT = "iot"
    GOVERNMENT = "government"
    THIRD_PARTY = "third_party"


class MeasurementSource(ABC):
    """A pull-based source of readings for one or more source ids."""

    kind: SourceKind

    @abstractmethod
    def fetch_measurements(
        self, source_id: str, window_from: datetime, window_to: datetime
    ) -> AsyncIterator[Measurement]:
        """Yield readings for ``source_id`` within ``[window_from, window_to)``."""

    async def aclose(self) -> None:
        """Release connections. Default: nothing to release."""


class StaticMeasurementSource(MeasurementSource):
    """
    Source backed by fixed readings. Used for tests and replaying captured
    data. ``error`` makes every fetch fail with that exception.
    """

    def __init__(
        self,
        readings: dict[str, list[Measurement]] | None = None,
        kind: SourceKind = SourceKind.IOT,
        error: Exception | None = None,
    ) -> None:
        self.kind = kind
        self.readings = readings or {}
        self.error = error
        self.fetch_count = 0

    async def fetch_measurements(
        self, source_id: str, window_from: datetime, window_to: datetime
    ) -> AsyncIterator[Measurement]:
        self.fetch_count += 1
        if self.error is not None:
            raise self.error
        for reading in self.readings.get(source_id, []):
            yield reading


# Path templates and query parameter names per source kind.
_ENDPOINTS: dict[SourceKind, dict[str, str]] = {
    SourceKind.IOT: {
        "path": "/devices/{source_id}/production",
        "from": "from",
        "to": "to",
    },
    SourceKind.GOVERNMENT: {
        "path": "/facilities/{source_id}/energy-data",
        "from": "start_date",
        "to": "end_date",
    },
    SourceKind.THIRD_PARTY: {
        "path": "/verifications/{source_id}/measurements",
        "from": "from",
        "to": "to",
    },
}


class HttpMeasurementSource(MeasurementSource):
    """
    Async REST adapter for a measurement platform.

    Expects pages shaped like::

        {"measurements": [{"timestamp": "...", "value": 12.5, "quality": 0.98}],
         "next_cursor": "opaque-or-null"}
    """

    def __init__(
        self,
        kind: SourceKind,
        base_url: str,
        api_key: str = "",
        timeout: float = 15.0,
        metric: str = "hydrogen_production_kg",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.kind = kind
        self.base_url = base_url.rstrip("/")
        self.metric = metric
        self.timeout = timeout
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def fetch_measurements(
        self, source_id: str, window_from: datetime, window_to: datetime
    ) -> AsyncIterator[Measurement]:
        endpoint = _ENDPOINTS[self.kind]
        params: dict[str, Any] = {
            endpoint["from"]: window_from.isoformat(),
            endpoint["to"]: window_to.isoformat(),
            "metric": self.metric,
        }
        path = endpoint["path"].format(source_id=source_id)
        client = await self._ensure_client()

        pages = 0
        while True:
            try:
                resp = await client.get(path, params=params)
                resp.raise_for_status()
                data = resp.json()
            except httpx.TimeoutException as exc:
                raise Unavailable(
                    f"{self.kind.value} source {source_id} timed out"
                ) from exc
            except (httpx.HTTPError, ValueError) as exc:
                raise Unavailable(
                    f"{self.kind.value} source {source_id} failed: {type(exc).__name__}"
                ) from exc
            measurements = data.get("measurements") if isinstance(data, dict) else None
            if not isinstance(measurements, list):
                raise Unavailable(
                    f"{self.kind.value} source {source_id} returned an unexpected body"
                )

            pages += 1
            for raw in measurements:
                yield self._parse(source_id, raw)

            cursor = data.get("next_cursor")
            if not cursor:
                break
            params["cursor"] = cursor

        logger.debug(
            "Fetched %d page(s) from %s source %s", pages, self.kind.value, source_id
        )

    def _parse(self, source_id: str, raw: Any) -> Measurement:
        try:
            reading = Measurement(
                timestamp=datetime.fromisoformat(raw["timestamp"]),
                value=Decimal(str(raw["value"])),
                quality=raw.get("quality"),
            )
        except (KeyError, TypeError, ValueError, InvalidOperation) as exc:
            raise Unavailable(
                f"{self.kind.value} source {source_id} returned a malformed reading"
            ) from exc
        if reading.timestamp.tzinfo is None:
            raise Unavailable(
                f"{self.kind.value} source {source_id} returned a reading without a UTC offset"
            )
        return reading
