"""GeckoTerminal REST adapter."""

from __future__ import annotations

import logging
from typing import Any, List, Mapping, Sequence

from ..models import UNKNOWN_PROTOCOL, RawTokenRecord, now_ms
from .base import TokenProvider, coerce_float, nested, to_native, txn_count

logger = logging.getLogger(__name__)

SOURCE = "geckoterminal"
NETWORK = "solana"
_ID_PREFIX = f"{NETWORK}_"


def _extract_items(payload: Any) -> Sequence[Mapping[str, Any]]:
    if not isinstance(payload, Mapping):
        return []
    data = payload.get("data")
    if isinstance(data, Mapping):
        return [data]
    if isinstance(data, Sequence):
        return [item for item in data if isinstance(item, Mapping)]
    return []


def _strip_network(identifier: Any) -> str:
    value = str(identifier or "")
    return value[len(_ID_PREFIX):] if value.startswith(_ID_PREFIX) else value


def _base_address(pool: Mapping[str, Any], attributes: Mapping[str, Any]) -> str:
    if attributes.get("base_token_address"):
        return str(attributes["base_token_address"])
    related = nested(pool, "relationships", "base_token", "data", "id")
    if related:
        return _strip_network(related)
    if attributes.get("address"):
        return str(attributes["address"])
    return _strip_network(pool.get("id"))


def map_pool(pool: Mapping[str, Any], *, fetched_at: int | None = None) -> RawTokenRecord | None:
    """Map a GeckoTerminal pool (or token) resource to a record."""

    attributes = pool.get("attributes")
    if not isinstance(attributes, Mapping):
        return None
    address = _base_address(pool, attributes)
    if not address:
        return None

    price_usd = coerce_float(
        attributes.get("base_token_price_usd")
        or attributes.get("price_usd")
        or attributes.get("quote_token_price_usd")
    )
    name = str(attributes.get("name") or "Unknown")
    ticker = attributes.get("base_token_symbol") or attributes.get("symbol")
    if not ticker and " / " in name:
        ticker = name.split(" / ", 1)[0]
    change = attributes.get("price_change_percentage")
    protocol = attributes.get("dex_id") or nested(pool, "relationships", "dex", "data", "id")

    return RawTokenRecord(
        token_address=address,
        token_name=name,
        token_ticker=str(ticker or "UNKNOWN"),
        price_sol=coerce_float(attributes.get("base_token_price_native_currency")) or 0.0,
        market_cap_sol=to_native(attributes.get("market_cap_usd"), price_usd),
        volume_sol=to_native(nested(attributes, "volume_usd", "h24"), price_usd),
        liquidity_sol=to_native(attributes.get("reserve_in_usd"), price_usd),
        transaction_count=txn_count(nested(attributes, "transactions", "h24")),
        price_1hr_change=coerce_float(nested(change, "h1")) or 0.0,
        price_24hr_change=coerce_float(nested(change, "h24")),
        price_7d_change=coerce_float(nested(change, "h7")),
        volume_24h=coerce_float(nested(attributes, "volume_usd", "h24")),
        protocol=str(protocol or UNKNOWN_PROTOCOL),
        sources=(SOURCE,),
        last_updated=fetched_at if fetched_at is not None else now_ms(),
    )


class GeckoTerminalProvider(TokenProvider):
    name = SOURCE

    @property
    def base_url(self) -> str:
        return f"{self.settings.providers.geckoterminal_base_url}/networks/{NETWORK}"

    def _map_pools(self, pools: Sequence[Mapping[str, Any]]) -> List[RawTokenRecord]:
        fetched_at = now_ms()
        return self._map_each(pools, lambda pool: map_pool(pool, fetched_at=fetched_at))

    async def get_trending_tokens(self) -> List[RawTokenRecord]:
        try:
            payload = await self._get_json(f"{self.base_url}/trending_pools")
        except Exception as exc:
            self._log_failure("trending", exc)
            return []
        return self._map_pools(_extract_items(payload))

    async def get_top_pools(self, limit: int = 20) -> List[RawTokenRecord]:
        try:
            payload = await self._get_json(f"{self.base_url}/pools", params={"page": 1})
        except Exception as exc:
            self._log_failure("top pools", exc)
            return []
        return self._map_pools(_extract_items(payload))[:limit]

    async def get_token_info(self, address: str) -> RawTokenRecord | None:
        try:
            payload = await self._get_json(f"{self.base_url}/tokens/{address}")
        except Exception as exc:
            self._log_failure("token info", exc, address=address)
            return None
        mapped = self._map_pools(_extract_items(payload))
        return mapped[0] if mapped else None

    async def fetch_batch(self) -> List[RawTokenRecord]:
        try:
            records = await self.get_top_pools(self.settings.providers.geckoterminal_pool_limit)
        except Exception:
            logger.exception("GeckoTerminal batch failed")
            return []
        logger.debug("GeckoTerminal returned %d records", len(records))
        return records


__all__ = ["SOURCE", "map_pool", "GeckoTerminalProvider"]
