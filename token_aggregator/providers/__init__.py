"""Market-data provider adapters."""

from __future__ import annotations

from typing import Tuple

import aiohttp

from ..config import Settings, get_settings
from .base import TokenProvider
from .dexscreener import DexScreenerProvider
from .geckoterminal import GeckoTerminalProvider
from .jupiter import JupiterProvider


def build_providers(
    settings: Settings | None = None,
    *,
    session: aiohttp.ClientSession | None = None,
) -> Tuple[DexScreenerProvider, GeckoTerminalProvider, JupiterProvider]:
    """Create the three adapters, each with its own request governor."""

    settings = settings or get_settings()
    return (
        DexScreenerProvider(settings=settings, session=session),
        GeckoTerminalProvider(settings=settings, session=session),
        JupiterProvider(settings=settings, session=session),
    )


__all__ = [
    "TokenProvider",
    "DexScreenerProvider",
    "GeckoTerminalProvider",
    "JupiterProvider",
    "build_providers",
]
