"""Aggregation cycle: fetch, merge, enrich, score, publish.

The service owns the last-known-good :class:`Snapshot`.  A cycle builds a new
snapshot off to the side and swaps the reference in one assignment, so
readers always see either the previous or the current table.  Overlapping
cycles are allowed; whichever finishes last wins the swap.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Iterable, List, Optional, Sequence

from .broadcast import Broadcaster
from .cache import AGGREGATED_KEY, CacheService
from .config import Settings, get_settings
from .merge import merge_records
from .models import FilterRequest, Page, RawTokenRecord, ReconciledTokenRecord, Snapshot
from .providers.base import TokenProvider
from .query import filter_sort_paginate
from .scoring import score_records

logger = logging.getLogger(__name__)


class AggregationService:
    def __init__(
        self,
        providers: Sequence[TokenProvider],
        *,
        cache: CacheService | None = None,
        settings: Settings | None = None,
        broadcaster: Broadcaster | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.providers = tuple(providers)
        self.cache = cache
        self.broadcaster = broadcaster or Broadcaster(
            self.settings.websocket.price_change_threshold
        )
        self._snapshot: Optional[Snapshot] = None
        self.cycles = 0

    @property
    def snapshot(self) -> Snapshot:
        return self._snapshot if self._snapshot is not None else Snapshot()

    def all_tokens(self) -> List[ReconciledTokenRecord]:
        return self.snapshot.records()

    def get_token(self, address: str) -> ReconciledTokenRecord | None:
        return self.snapshot.get(address)

    async def _fetch_all(self) -> List[RawTokenRecord]:
        results = await asyncio.gather(
            *(provider.fetch_batch() for provider in self.providers),
            return_exceptions=True,
        )
        combined: List[RawTokenRecord] = []
        for provider, result in zip(self.providers, results):
            if isinstance(result, BaseException):
                logger.error("%s fetch_batch raised: %s", provider.name, result)
                continue
            logger.debug("%s returned %d record(s)", provider.name, len(result))
            combined.extend(result)
        return combined

    async def _enrich(self, records: List[RawTokenRecord]) -> List[RawTokenRecord]:
        for provider in self.providers:
            enrich = getattr(provider, "enrich", None)
            if enrich is not None and records:
                records = await enrich(records)
        return records

    async def run_cycle(self) -> List[ReconciledTokenRecord]:
        """Run one full cycle and return the reconciled records.

        Any unexpected failure is logged and the previous snapshot's records
        (possibly empty) are returned instead; no event is published.
        """

        previous = self._snapshot
        started = time.perf_counter()
        try:
            raw = await self._fetch_all()
            merged = merge_records(raw)
            enriched = await self._enrich(merged)
            scored = score_records(enriched)
            current = Snapshot.from_records(scored)
        except Exception:
            logger.exception("Aggregation cycle failed; keeping previous snapshot")
            return previous.records() if previous is not None else []

        if self.cache is not None:
            await self.cache.set(AGGREGATED_KEY, [record.to_dict() for record in scored])
        self._snapshot = current
        self.cycles += 1
        logger.info(
            "Aggregated %d token(s) from %d raw record(s) in %.2fs",
            len(current),
            len(raw),
            time.perf_counter() - started,
        )

        try:
            self.broadcaster.process(previous, current)
        except Exception:
            logger.exception("Change detection failed")
        return scored

    async def aggregate(self) -> List[ReconciledTokenRecord]:
        """Return the current aggregate, reading through the cache."""

        if self.cache is not None:
            cached = await self.cache.get(AGGREGATED_KEY)
            if isinstance(cached, list):
                try:
                    return [ReconciledTokenRecord.from_dict(item) for item in cached]
                except (TypeError, ValueError) as exc:
                    logger.warning("Discarding unreadable cached aggregate: %s", exc)
        # a miss with a live snapshot waits for the scheduler instead of refetching
        if self._snapshot is not None:
            return self._snapshot.records()
        return await self.run_cycle()

    async def filter_and_sort(self, request: FilterRequest | None = None) -> Page:
        records = await self.aggregate()
        return filter_sort_paginate(records, request)

    async def find_token(self, address: str) -> ReconciledTokenRecord | None:
        """Look ``address`` up, running a cycle first when it is not known yet."""

        record = self.get_token(address)
        if record is None:
            await self.run_cycle()
            record = self.get_token(address)
        return record


class RefreshScheduler:
    """Run :meth:`AggregationService.run_cycle` on a fixed interval."""

    def __init__(self, service: AggregationService, interval: float) -> None:
        self.service = service
        self.interval = float(interval)
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop())
        logger.info("Scheduled refresh every %.1fs", self.interval)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.service.run_cycle()
            except Exception:
                logger.exception("Scheduled refresh failed")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


def records_to_dicts(records: Iterable[ReconciledTokenRecord]) -> List[dict[str, Any]]:
    return [record.to_dict() for record in records]


__all__ = ["AggregationService", "RefreshScheduler", "records_to_dicts"]
