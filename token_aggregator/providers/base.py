"""Shared plumbing for provider adapters."""

from __future__ import annotations

import abc
import logging
import math
from typing import Any, List, Mapping, Sequence

import aiohttp

from ..config import Settings, get_settings
from ..governor import RateLimitConfig, RequestGovernor, is_retryable
from ..http import fetch_json
from ..logging_utils import warn_once_per
from ..models import RawTokenRecord

logger = logging.getLogger(__name__)

_TRANSIENT_WARN_INTERVAL = 60.0


def coerce_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value.strip())
        except (TypeError, ValueError):
            return None
    else:
        return None
    if math.isnan(numeric) or math.isinf(numeric):
        return None
    return numeric


def coerce_int(value: Any) -> int:
    numeric = coerce_float(value)
    return int(numeric) if numeric is not None else 0


def to_native(value_usd: Any, price_usd: float | None) -> float:
    """Convert a USD amount into base-asset units via the token's USD price.

    An unknown or zero price divides by 1 instead of failing.
    """

    amount = coerce_float(value_usd) or 0.0
    divisor = price_usd if price_usd else 1.0
    return amount / divisor


def nested(data: Any, *keys: str) -> Any:
    cur = data
    for key in keys:
        if not isinstance(cur, Mapping):
            return None
        cur = cur.get(key)
    return cur


def txn_count(txns: Any) -> int:
    if not isinstance(txns, Mapping):
        return 0
    return coerce_int(txns.get("buys")) + coerce_int(txns.get("sells"))


class TokenProvider(abc.ABC):
    """A market-data source producing :class:`RawTokenRecord` batches.

    Subclasses implement :meth:`fetch_batch` and route every outbound call
    through :meth:`_get_json` so it is rate limited and retried by the
    provider's own governor.
    """

    name: str = "provider"

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        governor: RequestGovernor | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.governor = governor or RequestGovernor(RateLimitConfig.from_settings(self.settings.api))
        self._session = session

    @abc.abstractmethod
    async def fetch_batch(self) -> List[RawTokenRecord]:
        """Return this provider's current universe; never raises."""

    async def _get_json(self, url: str, params: Mapping[str, Any] | None = None) -> Any:
        return await self.governor.call(
            lambda: fetch_json(url, params=params, session=self._session)
        )

    def _log_failure(self, operation: str, exc: BaseException, **context: Any) -> None:
        detail = " ".join(f"{key}={value}" for key, value in context.items())
        if is_retryable(exc):
            warn_once_per(
                _TRANSIENT_WARN_INTERVAL,
                f"{self.name}:{operation}",
                "%s %s gave up after retries %s: %s",
                self.name,
                operation,
                detail,
                exc,
                logger=logger,
            )
        else:
            logger.error("%s %s failed %s: %s", self.name, operation, detail, exc)

    def _map_each(self, items: Sequence[Any], mapper) -> List[RawTokenRecord]:
        records: List[RawTokenRecord] = []
        for item in items:
            try:
                record = mapper(item)
            except (TypeError, ValueError) as exc:
                logger.debug("%s skipped malformed entry: %s", self.name, exc)
                continue
            if record is not None:
                records.append(record)
        return records

    def request_count(self) -> int:
        return self.governor.request_count()


__all__ = [
    "coerce_float",
    "coerce_int",
    "to_native",
    "nested",
    "txn_count",
    "TokenProvider",
]
