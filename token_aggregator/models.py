"""Record types shared by the providers, the merge pipeline and the API."""

from __future__ import annotations

import time
from dataclasses import dataclass, field, fields
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, List, Literal, Mapping, Optional, Tuple

UNKNOWN_PROTOCOL = "Unknown"

TimePeriod = Literal["1h", "24h", "7d"]
SortKey = Literal["volume", "price_change", "market_cap", "liquidity", "transaction_count"]
SortOrder = Literal["asc", "desc"]
UpdateType = Literal["new_token", "price_update", "volume_spike"]

TIME_PERIODS: Tuple[str, ...] = ("1h", "24h", "7d")
SORT_KEYS: Tuple[str, ...] = ("volume", "price_change", "market_cap", "liquidity", "transaction_count")
SORT_ORDERS: Tuple[str, ...] = ("asc", "desc")

NEW_TOKEN: UpdateType = "new_token"
PRICE_UPDATE: UpdateType = "price_update"
VOLUME_SPIKE: UpdateType = "volume_spike"

DEFAULT_PAGE_LIMIT = 20


def now_ms() -> int:
    return int(time.time() * 1000)


def _dedupe(values: Iterable[str]) -> Tuple[str, ...]:
    seen: Dict[str, None] = {}
    for value in values:
        if value:
            seen.setdefault(str(value), None)
    return tuple(seen)


@dataclass(frozen=True, slots=True)
class RawTokenRecord:
    """One provider's observation of a token, already in base-asset units.

    ``price_24hr_change``, ``price_7d_change`` and ``volume_24h`` are ``None``
    when the provider does not report them.
    """

    token_address: str
    token_name: str
    token_ticker: str
    price_sol: float
    market_cap_sol: float
    volume_sol: float
    liquidity_sol: float
    transaction_count: int
    price_1hr_change: float
    protocol: str = UNKNOWN_PROTOCOL
    sources: Tuple[str, ...] = ()
    last_updated: int = 0
    price_24hr_change: Optional[float] = None
    price_7d_change: Optional[float] = None
    volume_24h: Optional[float] = None

    def __post_init__(self) -> None:
        if not self.token_address:
            raise ValueError("token_address must be non-empty")
        object.__setattr__(self, "sources", _dedupe(self.sources))

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "sources":
                value = list(value)
            elif value is None:
                continue
            payload[f.name] = value
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]):
        known = {f.name for f in fields(cls)}
        kwargs = {key: value for key, value in data.items() if key in known}
        if "sources" in kwargs:
            kwargs["sources"] = tuple(kwargs["sources"] or ())
        return cls(**kwargs)


@dataclass(frozen=True, slots=True)
class ReconciledTokenRecord(RawTokenRecord):
    """Merged view of a token for one cycle; built by :mod:`.scoring`."""

    source_count: int = 0
    confidence_score: int = 0


@dataclass(frozen=True, slots=True)
class Snapshot:
    """Immutable address -> record table produced by one aggregation cycle."""

    tokens: Mapping[str, ReconciledTokenRecord] = field(
        default_factory=lambda: MappingProxyType({})
    )
    created_at: int = 0

    @classmethod
    def from_records(
        cls,
        records: Iterable[ReconciledTokenRecord],
        *,
        created_at: int | None = None,
    ) -> "Snapshot":
        table = {record.token_address: record for record in records}
        return cls(
            tokens=MappingProxyType(table),
            created_at=now_ms() if created_at is None else created_at,
        )

    def records(self) -> List[ReconciledTokenRecord]:
        return list(self.tokens.values())

    def get(self, address: str) -> ReconciledTokenRecord | None:
        return self.tokens.get(address)

    def __len__(self) -> int:
        return len(self.tokens)

    def __contains__(self, address: object) -> bool:
        return address in self.tokens

    def __iter__(self) -> Iterator[str]:
        return iter(self.tokens)


@dataclass(frozen=True, slots=True)
class FilterRequest:
    time_period: Optional[TimePeriod] = None
    sort_by: SortKey = "volume"
    sort_order: SortOrder = "desc"
    limit: int = DEFAULT_PAGE_LIMIT
    cursor: Optional[str] = None
    min_volume: Optional[float] = None
    min_market_cap: Optional[float] = None


@dataclass(slots=True)
class Page:
    data: List[ReconciledTokenRecord]
    next_cursor: Optional[str]
    has_more: bool
    total: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data": [record.to_dict() for record in self.data],
            "next_cursor": self.next_cursor,
            "has_more": self.has_more,
            "total": self.total,
        }


@dataclass(frozen=True, slots=True)
class UpdateEvent:
    type: UpdateType
    token: ReconciledTokenRecord
    change_percentage: Optional[float] = None
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": self.type,
            "token": self.token.to_dict(),
            "timestamp": self.timestamp,
        }
        if self.change_percentage is not None:
            payload["change_percentage"] = self.change_percentage
        return payload


__all__ = [
    "UNKNOWN_PROTOCOL",
    "TIME_PERIODS",
    "SORT_KEYS",
    "SORT_ORDERS",
    "NEW_TOKEN",
    "PRICE_UPDATE",
    "VOLUME_SPIKE",
    "DEFAULT_PAGE_LIMIT",
    "now_ms",
    "RawTokenRecord",
    "ReconciledTokenRecord",
    "Snapshot",
    "FilterRequest",
    "Page",
    "UpdateEvent",
]
