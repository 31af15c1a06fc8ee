"""DexScreener REST adapter."""

from __future__ import annotations

import logging
from typing import Any, Iterable, List, Mapping, MutableMapping, Sequence

from ..models import UNKNOWN_PROTOCOL, RawTokenRecord, now_ms
from .base import TokenProvider, coerce_float, nested, to_native, txn_count

logger = logging.getLogger(__name__)

SOURCE = "dexscreener"
CHAIN_ID = "solana"
PER_QUERY_LIMIT = 5


def _extract_pairs(payload: Any) -> Sequence[MutableMapping[str, Any]]:
    if isinstance(payload, Mapping):
        pairs = payload.get("pairs")
        if isinstance(pairs, Sequence):
            return [pair for pair in pairs if isinstance(pair, MutableMapping)]
    return []


def map_pair(pair: Mapping[str, Any], *, fetched_at: int | None = None) -> RawTokenRecord | None:
    """Map one DexScreener pair to a record; non-Solana pairs yield ``None``."""

    if pair.get("chainId") != CHAIN_ID:
        return None
    base = pair.get("baseToken")
    if not isinstance(base, Mapping) or not base.get("address"):
        return None

    price_usd = coerce_float(pair.get("priceUsd"))
    change = pair.get("priceChange")
    return RawTokenRecord(
        token_address=str(base["address"]),
        token_name=str(base.get("name") or ""),
        token_ticker=str(base.get("symbol") or ""),
        price_sol=coerce_float(pair.get("priceNative")) or 0.0,
        market_cap_sol=to_native(pair.get("marketCap"), price_usd),
        volume_sol=to_native(nested(pair, "volume", "h24"), price_usd),
        liquidity_sol=to_native(nested(pair, "liquidity", "usd"), price_usd),
        transaction_count=txn_count(nested(pair, "txns", "h24")),
        price_1hr_change=coerce_float(nested(change, "h1")) or 0.0,
        price_24hr_change=coerce_float(nested(change, "h24")),
        price_7d_change=coerce_float(nested(change, "h7")),
        volume_24h=coerce_float(nested(pair, "volume", "h24")),
        protocol=str(pair.get("dexId") or UNKNOWN_PROTOCOL),
        sources=(SOURCE,),
        last_updated=fetched_at if fetched_at is not None else now_ms(),
    )


class DexScreenerProvider(TokenProvider):
    name = SOURCE

    @property
    def base_url(self) -> str:
        return self.settings.providers.dexscreener_base_url

    def _map_pairs(self, pairs: Iterable[Mapping[str, Any]]) -> List[RawTokenRecord]:
        fetched_at = now_ms()
        return self._map_each(list(pairs), lambda pair: map_pair(pair, fetched_at=fetched_at))

    async def search_tokens(self, query: str = "solana") -> List[RawTokenRecord]:
        try:
            payload = await self._get_json(f"{self.base_url}/search", params={"q": query})
        except Exception as exc:
            self._log_failure("search", exc, query=query)
            return []
        return self._map_pairs(_extract_pairs(payload))

    async def get_tokens_by_address(self, addresses: Iterable[str]) -> List[RawTokenRecord]:
        records: List[RawTokenRecord] = []
        for address in addresses:
            try:
                payload = await self._get_json(f"{self.base_url}/tokens/{address}")
            except Exception as exc:
                self._log_failure("token lookup", exc, address=address)
                continue
            records.extend(self._map_pairs(_extract_pairs(payload)))
        return records

    async def get_trending_tokens(self) -> List[RawTokenRecord]:
        # No trending endpoint; sample the top results of popular searches.
        records: List[RawTokenRecord] = []
        for query in self.settings.providers.dexscreener_queries:
            found = await self.search_tokens(query)
            records.extend(found[:PER_QUERY_LIMIT])
        return records

    async def fetch_batch(self) -> List[RawTokenRecord]:
        try:
            records = await self.get_trending_tokens()
        except Exception:
            logger.exception("DexScreener batch failed")
            return []
        logger.debug("DexScreener returned %d records", len(records))
        return records


__all__ = ["SOURCE", "map_pair", "DexScreenerProvider"]
