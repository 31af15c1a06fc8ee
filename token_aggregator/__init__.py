"""Multi-source token market data aggregation service."""

from __future__ import annotations

from .models import (
    FilterRequest,
    Page,
    RawTokenRecord,
    ReconciledTokenRecord,
    Snapshot,
    UpdateEvent,
)

__version__ = "1.0.0"

__all__ = [
    "__version__",
    "FilterRequest",
    "Page",
    "RawTokenRecord",
    "ReconciledTokenRecord",
    "Snapshot",
    "UpdateEvent",
]
