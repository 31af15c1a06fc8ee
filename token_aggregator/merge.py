"""Reconcile per-provider records that describe the same token.

Records are grouped by address and folded pairwise in arrival order:

=====================================  ===============================
field                                  rule
=====================================  ===============================
``sources``                            ordered union
``price_sol``, ``price_1hr_change``    mean
``volume_sol``, ``liquidity_sol``,     sum
``transaction_count``
``market_cap_sol``, ``last_updated``   max
``price_24hr_change``,                 mean when both present, else
``price_7d_change``                    whichever is present
``volume_24h``                         sum when both present, else
                                       whichever is present
``protocol``                           first value that is not
                                       ``"Unknown"``
name, ticker                           first seen
=====================================  ===============================

The running mean makes the result for three or more sources depend on
arrival order (``mean(mean(a, b), c)`` weights ``c`` twice as much as ``a``).
This is kept deliberately for compatibility; the cycle always concatenates
provider output in a fixed order so the result is reproducible.
"""

from __future__ import annotations

import dataclasses
from typing import Dict, Iterable, List, Optional

from .models import UNKNOWN_PROTOCOL, RawTokenRecord


def _mean(a: float, b: float) -> float:
    return (a + b) / 2


def _mean_optional(a: Optional[float], b: Optional[float]) -> Optional[float]:
    if a is not None and b is not None:
        return _mean(a, b)
    return a if a is not None else b


def _sum_optional(a: Optional[float], b: Optional[float]) -> Optional[float]:
    if a is not None and b is not None:
        return a + b
    return a if a is not None else b


def merge_pair(existing: RawTokenRecord, incoming: RawTokenRecord) -> RawTokenRecord:
    """Fold ``incoming`` into ``existing``; both must share an address."""

    if existing.token_address != incoming.token_address:
        raise ValueError(
            f"cannot merge {existing.token_address!r} with {incoming.token_address!r}"
        )
    protocol = existing.protocol if existing.protocol != UNKNOWN_PROTOCOL else incoming.protocol
    return dataclasses.replace(
        existing,
        sources=existing.sources + incoming.sources,
        price_sol=_mean(existing.price_sol, incoming.price_sol),
        volume_sol=existing.volume_sol + incoming.volume_sol,
        market_cap_sol=max(existing.market_cap_sol, incoming.market_cap_sol),
        liquidity_sol=existing.liquidity_sol + incoming.liquidity_sol,
        transaction_count=existing.transaction_count + incoming.transaction_count,
        price_1hr_change=_mean(existing.price_1hr_change, incoming.price_1hr_change),
        price_24hr_change=_mean_optional(existing.price_24hr_change, incoming.price_24hr_change),
        price_7d_change=_mean_optional(existing.price_7d_change, incoming.price_7d_change),
        volume_24h=_sum_optional(existing.volume_24h, incoming.volume_24h),
        last_updated=max(existing.last_updated, incoming.last_updated),
        protocol=protocol,
    )


def merge_records(records: Iterable[RawTokenRecord]) -> List[RawTokenRecord]:
    """Return one record per address, in order of first appearance."""

    merged: Dict[str, RawTokenRecord] = {}
    for record in records:
        existing = merged.get(record.token_address)
        merged[record.token_address] = record if existing is None else merge_pair(existing, record)
    return list(merged.values())


__all__ = ["merge_pair", "merge_records"]
