"""Filter, sort and paginate a snapshot's records.

Pagination is offset based: the cursor is the decimal offset of the next
page in the filtered, sorted sequence. Because snapshots are replaced every
cycle, a cursor issued against one cycle may skip or repeat records when used
against the next.
"""

from __future__ import annotations

from typing import Callable, Dict, Iterable, List, Optional

from .models import DEFAULT_PAGE_LIMIT, FilterRequest, Page, ReconciledTokenRecord

_Key = Callable[[ReconciledTokenRecord], float]

_CHANGE_FIELDS: Dict[str, str] = {
    "1h": "price_1hr_change",
    "24h": "price_24hr_change",
    "7d": "price_7d_change",
}

_SORT_FIELDS: Dict[str, str] = {
    "volume": "volume_sol",
    "market_cap": "market_cap_sol",
    "liquidity": "liquidity_sol",
    "transaction_count": "transaction_count",
}


def _change_field(time_period: Optional[str]) -> str:
    return _CHANGE_FIELDS.get(time_period or "1h", "price_1hr_change")


def _matches_period(record: ReconciledTokenRecord, time_period: str) -> bool:
    value = getattr(record, _change_field(time_period))
    return value is not None and abs(value) > 0


def _sort_key(request: FilterRequest) -> _Key:
    if request.sort_by == "price_change":
        field_name = _change_field(request.time_period)
        return lambda record: getattr(record, field_name) or 0.0
    field_name = _SORT_FIELDS.get(request.sort_by, "volume_sol")
    return lambda record: getattr(record, field_name)


def _parse_cursor(cursor: Optional[str]) -> int:
    if not cursor:
        return 0
    try:
        offset = int(cursor)
    except (TypeError, ValueError):
        return 0
    return max(offset, 0)


def apply_filters(
    records: Iterable[ReconciledTokenRecord], request: FilterRequest
) -> List[ReconciledTokenRecord]:
    filtered = list(records)
    if request.min_volume is not None:
        filtered = [r for r in filtered if r.volume_sol >= request.min_volume]
    if request.min_market_cap is not None:
        filtered = [r for r in filtered if r.market_cap_sol >= request.min_market_cap]
    if request.time_period:
        filtered = [r for r in filtered if _matches_period(r, request.time_period)]
    return filtered


def filter_sort_paginate(
    records: Iterable[ReconciledTokenRecord], request: FilterRequest | None = None
) -> Page:
    request = request or FilterRequest()
    filtered = apply_filters(records, request)
    filtered.sort(key=_sort_key(request), reverse=request.sort_order != "asc")

    limit = request.limit if request.limit and request.limit > 0 else DEFAULT_PAGE_LIMIT
    start = _parse_cursor(request.cursor)
    end = start + limit
    has_more = end < len(filtered)
    return Page(
        data=filtered[start:end],
        next_cursor=str(end) if has_more else None,
        has_more=has_more,
        total=len(filtered),
    )


__all__ = ["apply_filters", "filter_sort_paginate"]
