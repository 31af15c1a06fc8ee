"""Confidence scoring for reconciled records."""

from __future__ import annotations

from dataclasses import fields
from typing import Iterable, List, Sequence, Tuple

from .models import RawTokenRecord, ReconciledTokenRecord

SOURCE_POINTS = 20
SOURCE_CAP = 40
MAX_SCORE = 100

# (threshold, points), checked highest first; a value must exceed the threshold
LIQUIDITY_TIERS: Tuple[Tuple[float, int], ...] = ((100, 20), (50, 15), (10, 10))
VOLUME_TIERS: Tuple[Tuple[float, int], ...] = ((1000, 20), (500, 15), (100, 10))
TRANSACTION_TIERS: Tuple[Tuple[float, int], ...] = ((500, 20), (100, 15), (50, 10))

_RAW_FIELDS = tuple(f.name for f in fields(RawTokenRecord))


def _tier(value: float, tiers: Sequence[Tuple[float, int]]) -> int:
    for threshold, points in tiers:
        if value > threshold:
            return points
    return 0


def confidence_score(record: RawTokenRecord) -> int:
    """Score how well corroborated ``record`` is, from 0 to 100."""

    score = min(len(record.sources) * SOURCE_POINTS, SOURCE_CAP)
    score += _tier(record.liquidity_sol, LIQUIDITY_TIERS)
    score += _tier(record.volume_sol, VOLUME_TIERS)
    score += _tier(record.transaction_count, TRANSACTION_TIERS)
    return min(score, MAX_SCORE)


def reconcile(record: RawTokenRecord) -> ReconciledTokenRecord:
    values = {name: getattr(record, name) for name in _RAW_FIELDS}
    return ReconciledTokenRecord(
        **values,
        source_count=len(record.sources),
        confidence_score=confidence_score(record),
    )


def score_records(records: Iterable[RawTokenRecord]) -> List[ReconciledTokenRecord]:
    return [reconcile(record) for record in records]


__all__ = [
    "LIQUIDITY_TIERS",
    "VOLUME_TIERS",
    "TRANSACTION_TIERS",
    "confidence_score",
    "reconcile",
    "score_records",
]
