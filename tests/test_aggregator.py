from __future__ import annotations

import asyncio
import dataclasses
from typing import Any, List

import pytest

from token_aggregator.aggregator import AggregationService, RefreshScheduler
from token_aggregator.broadcast import Broadcaster
from token_aggregator.cache import AGGREGATED_KEY, CacheService
from token_aggregator.config import Settings, settings_from_env
from token_aggregator.models import FilterRequest


class StaticProvider:
    def __init__(self, name: str, records: List[Any]) -> None:
        self.name = name
        self.records = records
        self.calls = 0

    async def fetch_batch(self):
        self.calls += 1
        return list(self.records)


class BrokenProvider:
    name = "broken"

    async def fetch_batch(self):
        raise RuntimeError("provider exploded")


class TaggingProvider:
    name = "jupiter"

    def __init__(self, priced: set[str]) -> None:
        self.priced = priced

    async def fetch_batch(self):
        return []

    async def enrich(self, records):
        return [
            dataclasses.replace(r, sources=r.sources + ("jupiter",)) if r.token_address in self.priced else r
            for r in records
        ]


def _service(providers, *, cache=None, published=None) -> AggregationService:
    sink = published if published is not None else []
    broadcaster = Broadcaster(1.0, publish=lambda topic, event: sink.append(event))
    return AggregationService(providers, cache=cache, settings=Settings(), broadcaster=broadcaster)


@pytest.mark.asyncio
async def test_cycle_merges_enriches_and_scores(make_record):
    dex = StaticProvider("dexscreener", [make_record("A", volume_sol=500.0), make_record("B")])
    gecko = StaticProvider(
        "geckoterminal",
        [make_record("A", volume_sol=1000.0, sources=("geckoterminal",), protocol="orca")],
    )
    service = _service([dex, gecko, TaggingProvider({"A"})])

    records = await service.run_cycle()

    by_address = {r.token_address: r for r in records}
    assert [r.token_address for r in records] == ["A", "B"]
    assert by_address["A"].volume_sol == 1500.0
    assert by_address["A"].sources == ("dexscreener", "geckoterminal", "jupiter")
    assert by_address["A"].source_count == 3
    assert by_address["A"].protocol == "orca"
    assert by_address["B"].confidence_score == 20
    assert service.get_token("A") == by_address["A"]


@pytest.mark.asyncio
async def test_one_provider_failure_does_not_abort_cycle(make_record):
    service = _service([BrokenProvider(), StaticProvider("dexscreener", [make_record("A")])])

    records = await service.run_cycle()

    assert [r.token_address for r in records] == ["A"]


@pytest.mark.asyncio
async def test_failed_cycle_returns_previous_snapshot(make_record, monkeypatch):
    published: list = []
    service = _service([StaticProvider("dexscreener", [make_record("A")])], published=published)
    first = await service.run_cycle()
    published.clear()

    def explode(records):
        raise RuntimeError("merge bug")

    monkeypatch.setattr("token_aggregator.aggregator.merge_records", explode)

    assert await service.run_cycle() == first
    assert published == []
    assert service.snapshot.get("A") == first[0]


@pytest.mark.asyncio
async def test_failed_first_cycle_returns_empty(monkeypatch, make_record):
    service = _service([StaticProvider("dexscreener", [make_record("A")])])
    monkeypatch.setattr("token_aggregator.aggregator.score_records", lambda records: 1 / 0)

    assert await service.run_cycle() == []
    assert service.all_tokens() == []


@pytest.mark.asyncio
async def test_cycles_emit_change_events(make_record):
    published: list = []
    provider = StaticProvider("dexscreener", [make_record("A", price_sol=100.0)])
    service = _service([provider], published=published)

    await service.run_cycle()
    provider.records = [make_record("A", price_sol=102.0), make_record("B")]
    await service.run_cycle()

    assert [(e.type, e.token.token_address) for e in published] == [
        ("new_token", "A"),
        ("price_update", "A"),
        ("new_token", "B"),
    ]
    assert published[1].change_percentage == pytest.approx(2.0)


@pytest.mark.asyncio
async def test_aggregate_reads_through_cache(make_record, fake_redis):
    client = fake_redis()
    cache = CacheService(Settings(), client=client)
    provider = StaticProvider("dexscreener", [make_record("A", volume_sol=5.0, price_24hr_change=3.0)])
    service = _service([provider], cache=cache)

    first = await service.aggregate()
    second = await service.aggregate()

    assert provider.calls == 1
    assert AGGREGATED_KEY in client.store
    assert second == first
    assert second[0].price_24hr_change == 3.0


@pytest.mark.asyncio
async def test_aggregate_without_cache_reuses_snapshot(make_record):
    provider = StaticProvider("dexscreener", [make_record("A")])
    service = _service([provider])

    await service.aggregate()
    await service.aggregate()

    assert provider.calls == 1


@pytest.mark.asyncio
async def test_aggregate_with_unreachable_redis_serves_snapshot(make_record, fake_redis):
    published: list = []
    cache = CacheService(Settings(), client=fake_redis(fail=True))
    provider = StaticProvider("dexscreener", [make_record("A")])
    service = _service([provider], cache=cache, published=published)

    for _ in range(5):
        assert [r.token_address for r in await service.aggregate()] == ["A"]

    assert cache.is_enabled()
    assert provider.calls == 1
    assert service.cycles == 1
    assert [e.type for e in published] == ["new_token"]


@pytest.mark.asyncio
async def test_aggregate_works_with_cache_disabled(make_record):
    cache = CacheService(settings_from_env({"CACHE_ENABLED": "0"}))
    provider = StaticProvider("dexscreener", [make_record("A")])
    service = _service([provider], cache=cache)

    assert [r.token_address for r in await service.aggregate()] == ["A"]
    assert [r.token_address for r in await service.aggregate()] == ["A"]
    assert provider.calls == 1


@pytest.mark.asyncio
async def test_filter_and_sort_and_find_token(make_record):
    provider = StaticProvider(
        "dexscreener", [make_record("A", volume_sol=500.0), make_record("B", volume_sol=1000.0)]
    )
    service = _service([provider])

    page = await service.filter_and_sort(FilterRequest(limit=1))
    assert [r.token_address for r in page.data] == ["B"]
    assert page.next_cursor == "1"

    assert (await service.find_token("A")).token_address == "A"
    assert await service.find_token("missing") is None


@pytest.mark.asyncio
async def test_scheduler_survives_failed_cycles():
    calls = []

    class FlakyService:
        async def run_cycle(self):
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return []

    scheduler = RefreshScheduler(FlakyService(), interval=0.01)
    scheduler.start()
    for _ in range(100):
        if len(calls) >= 3:
            break
        await asyncio.sleep(0.01)
    await scheduler.stop()

    assert len(calls) >= 3
    assert not scheduler.running
