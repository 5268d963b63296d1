"""
Data Aggregator — trust-weighted totals from untrusted measurement sources.

A logical source name (the milestone's verification source) may be backed by
several underlying sources, e.g. an IoT meter, a government registry entry
and a third-party verifier. All of them are fetched concurrently under a
bounded timeout. A failing source reduces the reported reliability instead
of failing the aggregation; only when every source fails is the result
Unavailable.

The aggregator enforces no trust threshold. Callers compare
``data_reliability`` against their own policy.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable

from subsidy_engine.data.sources import MeasurementSource
from subsidy_engine.domain.schema import AggregationResult, SourceOutcome, utcnow
from subsidy_engine.errors import InvalidArgument, NotFound, Unavailable

logger = logging.getLogger(__name__)

CacheKey = tuple[str, datetime, datetime]


@dataclass(frozen=True)
class SourceBinding:
    """One underlying source contributing to a logical source."""

    label: str
    adapter: MeasurementSource
    source_id: str
    timeout: float = 15.0


class DataAggregator:
    """
    Collects readings for a logical source over ``[window_from, window_to)``.

    Results are cached per (source, window) for ``cache_ttl_seconds``. A hit
    is returned only while younger than the TTL; callers that need
    authoritative data pass ``use_cache=False``.
    """

    def __init__(
        self,
        bindings: dict[str, list[SourceBinding]] | None = None,
        cache_ttl_seconds: float = 3600,
        min_quality: float | None = None,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.bindings: dict[str, list[SourceBinding]] = dict(bindings or {})
        self.cache_ttl_seconds = cache_ttl_seconds
        self.min_quality = min_quality
        self.clock = clock
        self.monotonic = monotonic
        self._cache: dict[CacheKey, tuple[float, AggregationResult]] = {}

    def register_source(self, name: str, bindings: list[SourceBinding]) -> None:
        if not bindings:
            raise InvalidArgument(f"Source {name} needs at least one binding")
        self.bindings[name] = list(bindings)
        self.invalidate(name)
        logger.info(
            "Source registered: %s -> %s", name, [b.label for b in bindings]
        )

    def invalidate(self, source: str | None = None) -> None:
        if source is None:
            self._cache.clear()
            return
        for key in [k for k in self._cache if k[0] == source]:
            self._cache.pop(key, None)

    async def aclose(self) -> None:
        adapters = {id(b.adapter): b.adapter for bs in self.bindings.values() for b in bs}
        for adapter in adapters.values():
            await adapter.aclose()

    async def aggregate(
        self,
        source: str,
        window_from: datetime,
        window_to: datetime,
        use_cache: bool = True,
    ) -> AggregationResult:
        """
        Aggregate every binding of ``source`` over the window.

        Raises:
            InvalidArgument: window_from is not before window_to.
            NotFound: no bindings are registered for ``source``.
            Unavailable: every underlying source failed.
        """
        if window_from >= window_to:
            raise InvalidArgument("Aggregation window must start before it ends")

        bindings = self.bindings.get(source)
        if not bindings:
            raise NotFound(f"No data sources registered for {source}")

        key: CacheKey = (source, window_from, window_to)
        if use_cache:
            cached = self._cache.get(key)
            if cached is not None:
                expires_at, result = cached
                if self.monotonic() < expires_at:
                    logger.debug("Aggregation cache hit: %s", source)
                    return result.model_copy(update={"from_cache": True})
                self._cache.pop(key, None)

        outcomes = await asyncio.gather(
            *(self._fetch_one(b, window_from, window_to) for b in bindings)
        )
        fulfilled = [o for o in outcomes if o.ok]

        if not fulfilled:
            logger.error(
                "All %d source(s) failed for %s: %s",
                len(outcomes), source, [o.error for o in outcomes],
            )
            raise Unavailable(f"No data source for {source} responded")

        total = sum((o.total_value for o in fulfilled), Decimal("0"))
        result = AggregationResult(
            source=source,
            window_from=window_from,
            window_to=window_to,
            total_value=int(total),
            data_point_count=sum(o.data_point_count for o in fulfilled),
            data_reliability=len(fulfilled) / len(outcomes),
            sources=list(outcomes),
            fetched_at=self.clock(),
        )

        if len(fulfilled) < len(outcomes):
            logger.warning(
                "Partial aggregation for %s: %d/%d sources (reliability %.0f%%)",
                source, len(fulfilled), len(outcomes), result.reliability_percent,
            )

        self._cache[key] = (self.monotonic() + self.cache_ttl_seconds, result)
        return result

    async def _fetch_one(
        self, binding: SourceBinding, window_from: datetime, window_to: datetime
    ) -> SourceOutcome:
        try:
            total, count = await asyncio.wait_for(
                self._collect(binding, window_from, window_to),
                timeout=binding.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Source %s timed out after %.1fs", binding.label, binding.timeout)
            return SourceOutcome(label=binding.label, ok=False, error="TimeoutError")
        except Unavailable as exc:
            logger.warning("Source %s unavailable: %s", binding.label, exc.message)
            return SourceOutcome(label=binding.label, ok=False, error=type(exc).__name__)
        except Exception as exc:
            logger.exception("Source %s failed unexpectedly", binding.label)
            return SourceOutcome(label=binding.label, ok=False, error=type(exc).__name__)

        return SourceOutcome(
            label=binding.label, ok=True, total_value=total, data_point_count=count
        )

    async def _collect(
        self, binding: SourceBinding, window_from: datetime, window_to: datetime
    ) -> tuple[Decimal, int]:
        total = Decimal("0")
        count = 0
        async for reading in binding.adapter.fetch_measurements(
            binding.source_id, window_from, window_to
        ):
            if not (window_from <= reading.timestamp < window_to):
                continue
            if (
                self.min_quality is not None
                and reading.quality is not None
                and reading.quality < self.min_quality
            ):
                continue
            total += reading.value
            count += 1
        return total, count
