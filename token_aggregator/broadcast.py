"""Per-cycle change detection and fan-out of update events."""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, List, Optional

from . import event_bus
from .models import (
    NEW_TOKEN,
    PRICE_UPDATE,
    VOLUME_SPIKE,
    Snapshot,
    UpdateEvent,
    now_ms,
)

logger = logging.getLogger(__name__)

VOLUME_SPIKE_RATIO = 1.5

Publish = Callable[[str, Any], None]


def pct_change(old: float, new: float) -> float:
    """Percentage change from ``old`` to ``new``; ``0`` when ``old`` is zero."""
    if old == 0:
        return 0.0
    return (new - old) / old * 100


def detect_changes(
    previous: Optional[Snapshot],
    current: Snapshot,
    threshold: float,
    *,
    now: Optional[int] = None,
) -> List[UpdateEvent]:
    """Compare two snapshots and return the events describing ``current``.

    With no ``previous`` snapshot every token is new. Price and volume checks
    are independent, so one token can yield both a price update and a volume
    spike. Tokens that disappeared produce nothing.
    """

    stamp = now_ms() if now is None else now
    events: List[UpdateEvent] = []
    for record in current.records():
        old = previous.get(record.token_address) if previous is not None else None
        if old is None:
            events.append(UpdateEvent(NEW_TOKEN, record, timestamp=stamp))
            continue

        price_delta = pct_change(old.price_sol, record.price_sol)
        if abs(price_delta) >= threshold:
            events.append(UpdateEvent(PRICE_UPDATE, record, price_delta, stamp))

        if record.volume_sol > old.volume_sol * VOLUME_SPIKE_RATIO:
            volume_delta = pct_change(old.volume_sol, record.volume_sol)
            events.append(UpdateEvent(VOLUME_SPIKE, record, volume_delta, stamp))
    return events


class Broadcaster:
    """Publish :class:`UpdateEvent` objects on a transport topic."""

    def __init__(
        self,
        threshold: float = 1.0,
        *,
        topic: str = event_bus.TOKENS_TOPIC,
        publish: Publish | None = None,
    ) -> None:
        self.threshold = float(threshold)
        self.topic = topic
        self._publish = publish or event_bus.publish

    def broadcast(self, events: Iterable[UpdateEvent]) -> int:
        sent = 0
        for event in events:
            try:
                self._publish(self.topic, event)
            except Exception:
                logger.exception("Failed to publish %s for %s", event.type, event.token.token_address)
                continue
            sent += 1
        return sent

    def process(self, previous: Optional[Snapshot], current: Snapshot) -> List[UpdateEvent]:
        """Detect changes between two snapshots and publish them."""
        events = detect_changes(previous, current, self.threshold)
        if events:
            sent = self.broadcast(events)
            logger.info("Broadcast %d update event(s) on %s", sent, self.topic)
        return events


__all__ = ["VOLUME_SPIKE_RATIO", "pct_change", "detect_changes", "Broadcaster"]
