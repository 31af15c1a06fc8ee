"""Jupiter price adapter.

The price API has no token universe of its own, so this adapter contributes
by corroborating records other providers discovered (:meth:`enrich`).
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Any, Dict, Iterable, List, Mapping, Sequence, TypeVar

from ..models import RawTokenRecord
from .base import TokenProvider, coerce_float

logger = logging.getLogger(__name__)

SOURCE = "jupiter"
BATCH_SIZE = 100

R = TypeVar("R", bound=RawTokenRecord)


def _chunked(tokens: Sequence[str], size: int) -> List[Sequence[str]]:
    return [tokens[i : i + size] for i in range(0, len(tokens), size)]


def _extract_price(entry: Any) -> float | None:
    if isinstance(entry, Mapping):
        entry = entry.get("price")
    price = coerce_float(entry)
    if price is None or price <= 0:
        return None
    return price


class JupiterProvider(TokenProvider):
    name = SOURCE

    @property
    def price_url(self) -> str:
        return self.settings.providers.jupiter_price_url

    async def fetch_batch(self) -> List[RawTokenRecord]:
        return []

    async def get_token_prices(self, addresses: Iterable[str]) -> Dict[str, float]:
        """Return ``address -> USD price`` for every address Jupiter prices.

        A failed chunk is logged and skipped; the other chunks still count.
        """

        unique = list(dict.fromkeys(a for a in addresses if a))
        prices: Dict[str, float] = {}
        for chunk in _chunked(unique, BATCH_SIZE):
            try:
                payload = await self._get_json(self.price_url, params={"ids": ",".join(chunk)})
            except Exception as exc:
                self._log_failure("price fetch", exc, tokens=len(chunk))
                continue
            data = payload.get("data") if isinstance(payload, Mapping) else None
            if not isinstance(data, Mapping):
                continue
            for token in chunk:
                price = _extract_price(data.get(token))
                if price is not None:
                    prices[token] = price
        return prices

    async def enrich(self, records: Sequence[R]) -> List[R]:
        """Tag every record Jupiter has a price for with the ``jupiter`` source."""

        try:
            prices = await self.get_token_prices(r.token_address for r in records)
        except Exception:
            logger.exception("Jupiter enrichment failed")
            return list(records)
        enriched: List[R] = []
        for record in records:
            if record.token_address in prices and SOURCE not in record.sources:
                record = dataclasses.replace(record, sources=record.sources + (SOURCE,))
            enriched.append(record)
        if prices:
            logger.debug("Jupiter priced %d of %d tokens", len(prices), len(records))
        return enriched


__all__ = ["SOURCE", "BATCH_SIZE", "JupiterProvider"]
