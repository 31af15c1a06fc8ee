from __future__ import annotations

import fnmatch
from typing import Any, Dict

import pytest

from token_aggregator import event_bus
from token_aggregator.config import get_settings
from token_aggregator.logging_utils import reset_warn_once_cache
from token_aggregator.models import RawTokenRecord


class FakeRedis:
    """In-memory stand-in for the handful of redis.asyncio calls the cache makes."""

    def __init__(self, *, fail: bool = False) -> None:
        self.store: Dict[str, str] = {}
        self.expiry: Dict[str, int] = {}
        self.fail = fail
        self.closed = False

    def _check(self) -> None:
        if self.fail:
            raise ConnectionError("redis down")

    async def get(self, key: str) -> Any:
        self._check()
        return self.store.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self._check()
        self.store[key] = value
        if ex:
            self.expiry[key] = ex
        return True

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
            self.expiry.pop(key, None)
        return removed

    async def scan_iter(self, match: str = "*"):
        self._check()
        for key in list(self.store):
            if fnmatch.fnmatch(key, match):
                yield key

    async def exists(self, key: str) -> int:
        self._check()
        return int(key in self.store)

    async def ttl(self, key: str) -> int:
        self._check()
        if key not in self.store:
            return -2
        return self.expiry.get(key, -1)

    async def ping(self) -> bool:
        self._check()
        return True

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def _isolate_globals():
    event_bus.reset()
    reset_warn_once_cache()
    get_settings.cache_clear()
    yield
    event_bus.reset()
    get_settings.cache_clear()


@pytest.fixture
def make_record():
    def _make(address: str = "Mint1", **overrides: Any) -> RawTokenRecord:
        values: dict[str, Any] = {
            "token_address": address,
            "token_name": f"Token {address}",
            "token_ticker": address[:4].upper(),
            "price_sol": 1.0,
            "market_cap_sol": 0.0,
            "volume_sol": 0.0,
            "liquidity_sol": 0.0,
            "transaction_count": 0,
            "price_1hr_change": 0.0,
            "sources": ("dexscreener",),
            "last_updated": 1_700_000_000_000,
        }
        values.update(overrides)
        return RawTokenRecord(**values)

    return _make


@pytest.fixture
def fake_redis():
    return FakeRedis

