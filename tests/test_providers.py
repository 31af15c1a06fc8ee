from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List

import pytest

from token_aggregator.config import Settings, settings_from_env
from token_aggregator.governor import RateLimitConfig, RequestGovernor
from token_aggregator.providers import build_providers
from token_aggregator.providers.base import to_native
from token_aggregator.providers.dexscreener import DexScreenerProvider, map_pair
from token_aggregator.providers.geckoterminal import GeckoTerminalProvider, map_pool
from token_aggregator.providers.jupiter import BATCH_SIZE, JupiterProvider


class _DummyResponse:
    def __init__(self, payload: Any, *, status: int = 200) -> None:
        self._payload = payload
        self.status = status

    async def __aenter__(self) -> "_DummyResponse":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None

    async def read(self) -> bytes:
        return json.dumps(self._payload).encode()

    async def text(self) -> str:
        return json.dumps(self._payload)


class _DummySession:
    def __init__(self, responses: List[Any]) -> None:
        self._responses = list(responses)
        self.calls: List[Dict[str, Any]] = []

    def get(self, url: str, *, params: Dict[str, Any] | None = None) -> _DummyResponse:
        self.calls.append({"url": url, "params": dict(params or {})})
        if not self._responses:
            raise AssertionError("No more responses queued")
        response = self._responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response


async def _no_sleep(_: float) -> None:
    return None


def _governor() -> RequestGovernor:
    return RequestGovernor(RateLimitConfig(max_requests=100, window_ms=1000), sleep=_no_sleep)


def _settings(**env: str) -> Settings:
    return settings_from_env(env)


DEX_PAIR = {
    "chainId": "solana",
    "dexId": "raydium",
    "baseToken": {"address": "MintA", "name": "Alpha", "symbol": "ALP"},
    "priceNative": "0.5",
    "priceUsd": "2",
    "marketCap": 2000,
    "volume": {"h24": 400},
    "liquidity": {"usd": 100},
    "txns": {"h24": {"buys": 7, "sells": 3}},
    "priceChange": {"h1": 1.5, "h24": -4},
}

GECKO_POOL = {
    "id": "solana_PoolX",
    "attributes": {
        "name": "Beta / SOL",
        "base_token_price_usd": "4",
        "base_token_price_native_currency": "0.02",
        "reserve_in_usd": "800",
        "market_cap_usd": None,
        "volume_usd": {"h24": "1200"},
        "transactions": {"h24": {"buys": 10, "sells": 20}},
        "price_change_percentage": {"h1": "0.5", "h24": "8"},
    },
    "relationships": {
        "base_token": {"data": {"id": "solana_MintB"}},
        "dex": {"data": {"id": "orca"}},
    },
}


def test_to_native_divides_by_price_or_one():
    assert to_native(100, 4.0) == 25.0
    assert to_native(100, None) == 100.0
    assert to_native(100, 0.0) == 100.0
    assert to_native(None, 2.0) == 0.0


def test_map_pair_converts_usd_fields():
    record = map_pair(DEX_PAIR, fetched_at=1)

    assert record.token_address == "MintA"
    assert record.price_sol == 0.5
    assert record.market_cap_sol == 1000.0
    assert record.volume_sol == 200.0
    assert record.liquidity_sol == 50.0
    assert record.transaction_count == 10
    assert record.price_1hr_change == 1.5
    assert record.price_24hr_change == -4.0
    assert record.price_7d_change is None
    assert record.protocol == "raydium"
    assert record.sources == ("dexscreener",)


def test_map_pair_skips_other_chains():
    assert map_pair({**DEX_PAIR, "chainId": "ethereum"}) is None


def test_map_pool_reads_relationships():
    record = map_pool(GECKO_POOL, fetched_at=1)

    assert record.token_address == "MintB"
    assert record.token_ticker == "Beta"
    assert record.price_sol == 0.02
    assert record.volume_sol == 300.0
    assert record.liquidity_sol == 200.0
    assert record.market_cap_sol == 0.0
    assert record.transaction_count == 30
    assert record.price_24hr_change == 8.0
    assert record.protocol == "orca"


def test_dexscreener_trending_takes_first_five_per_query():
    pairs = [
        {**DEX_PAIR, "baseToken": {"address": f"Mint{i}", "name": "T", "symbol": "T"}}
        for i in range(7)
    ]
    session = _DummySession([_DummyResponse({"pairs": pairs}), _DummyResponse({"pairs": []})])
    provider = DexScreenerProvider(
        settings=_settings(DEXSCREENER_QUERIES="BONK,WIF"), governor=_governor(), session=session
    )

    records = asyncio.run(provider.fetch_batch())

    assert [r.token_address for r in records] == [f"Mint{i}" for i in range(5)]
    assert [c["params"] for c in session.calls] == [{"q": "BONK"}, {"q": "WIF"}]
    assert session.calls[0]["url"].endswith("/search")


def test_dexscreener_failed_query_keeps_partial_results():
    session = _DummySession([_DummyResponse({"pairs": [DEX_PAIR]}), _DummyResponse({}, status=500)])
    provider = DexScreenerProvider(
        settings=_settings(DEXSCREENER_QUERIES="A,B"), governor=_governor(), session=session
    )

    records = asyncio.run(provider.fetch_batch())

    assert [r.token_address for r in records] == ["MintA"]
    assert len(session.calls) == 2


def test_dexscreener_retries_rate_limited_request():
    session = _DummySession([_DummyResponse({}, status=429), _DummyResponse({"pairs": [DEX_PAIR]})])
    provider = DexScreenerProvider(
        settings=_settings(DEXSCREENER_QUERIES="A"), governor=_governor(), session=session
    )

    records = asyncio.run(provider.fetch_batch())

    assert len(records) == 1
    assert len(session.calls) == 2


def test_geckoterminal_top_pools_respects_limit():
    second = {**GECKO_POOL, "relationships": {"base_token": {"data": {"id": "solana_MintC"}}}}
    session = _DummySession([_DummyResponse({"data": [GECKO_POOL, second]})])
    provider = GeckoTerminalProvider(
        settings=_settings(GECKOTERMINAL_POOL_LIMIT="1"), governor=_governor(), session=session
    )

    records = asyncio.run(provider.fetch_batch())

    assert [r.token_address for r in records] == ["MintB"]
    assert session.calls[0]["url"].endswith("/networks/solana/pools")


def test_geckoterminal_token_info_failure_returns_none():
    session = _DummySession([_DummyResponse({"errors": []}, status=404)])
    provider = GeckoTerminalProvider(settings=Settings(), governor=_governor(), session=session)

    assert asyncio.run(provider.get_token_info("MintZ")) is None
    assert len(session.calls) == 1


def test_jupiter_batches_requests_and_enriches(make_record):
    addresses = [f"Mint{i}" for i in range(BATCH_SIZE + 1)]
    first = {"data": {"Mint0": {"price": 1.2}, "Mint1": {"price": 0}}}
    second = {"data": {addresses[-1]: {"price": "3.5"}}}
    session = _DummySession([_DummyResponse(first), _DummyResponse(second)])
    provider = JupiterProvider(settings=Settings(), governor=_governor(), session=session)
    records = [make_record(address) for address in addresses]

    enriched = asyncio.run(provider.enrich(records))

    assert len(session.calls) == 2
    assert len(session.calls[0]["params"]["ids"].split(",")) == BATCH_SIZE
    assert enriched[0].sources == ("dexscreener", "jupiter")
    assert enriched[1].sources == ("dexscreener",)
    assert enriched[-1].sources == ("dexscreener", "jupiter")
    assert enriched[0].price_sol == records[0].price_sol


def test_jupiter_failure_leaves_records_untouched(make_record):
    session = _DummySession([_DummyResponse({}, status=503)])
    provider = JupiterProvider(settings=Settings(), governor=_governor(), session=session)
    records = [make_record("MintA")]

    assert asyncio.run(provider.enrich(records)) == records
    assert asyncio.run(provider.fetch_batch()) == []


def test_build_providers_returns_fixed_order():
    names = [provider.name for provider in build_providers(Settings())]
    assert names == ["dexscreener", "geckoterminal", "jupiter"]


@pytest.mark.parametrize("status", [400, 404])
def test_permanent_errors_are_not_retried(status):
    session = _DummySession([_DummyResponse({}, status=status)])
    provider = DexScreenerProvider(
        settings=_settings(DEXSCREENER_QUERIES="A"), governor=_governor(), session=session
    )

    assert asyncio.run(provider.fetch_batch()) == []
    assert len(session.calls) == 1
