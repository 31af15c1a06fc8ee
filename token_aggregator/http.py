from __future__ import annotations

import asyncio
import json as _json_std
import logging
import os
import weakref
from typing import Any, Mapping

import aiohttp

try:  # pragma: no cover - optional dependency
    import orjson as _ORJSON  # type: ignore[attr-defined]
except Exception:  # pragma: no cover - optional dependency
    _ORJSON = None

USE_ORJSON = _ORJSON is not None

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "TokenAggregator/1.0 (+https://local)"
DEFAULT_TIMEOUT_SEC = 10.0


class HTTPError(Exception):
    """Raised when an HTTP request returns a non-success status code."""

    def __init__(self, status: int, url: str, body: str = "") -> None:
        self.status = int(status)
        self.url = url
        self.body = body
        super().__init__(f"{url} -> {self.status}: {body[:300]}")


def dumps(obj: object) -> bytes:
    """Serialize *obj* to JSON bytes using ``orjson`` when available."""
    if USE_ORJSON:
        return _ORJSON.dumps(obj)
    return _json_std.dumps(obj, separators=(",", ":")).encode()


def loads(data: str | bytes) -> Any:
    """Deserialize JSON *data* using ``orjson`` when available."""
    if USE_ORJSON:
        if isinstance(data, str):
            data = data.encode()
        return _ORJSON.loads(data)
    if isinstance(data, bytes):
        data = data.decode()
    return _json_std.loads(data)


# One session per event loop; sessions must not be shared across loops.
_SESSIONS: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, aiohttp.ClientSession]" = weakref.WeakKeyDictionary()
_TIMEOUT_SEC = DEFAULT_TIMEOUT_SEC


def configure(*, timeout: float | None = None) -> None:
    """Set the total request timeout (seconds) used by new sessions."""
    global _TIMEOUT_SEC
    if timeout is not None and timeout > 0:
        _TIMEOUT_SEC = float(timeout)


async def get_session() -> aiohttp.ClientSession:
    """Return an aiohttp session bound to the current event loop."""
    loop = asyncio.get_running_loop()
    sess = _SESSIONS.get(loop)
    if sess is None or sess.closed:
        ua = os.getenv("HTTP_USER_AGENT", DEFAULT_USER_AGENT)
        sess = aiohttp.ClientSession(
            headers={"User-Agent": ua, "Accept": "application/json"},
            timeout=aiohttp.ClientTimeout(total=_TIMEOUT_SEC),
        )
        _SESSIONS[loop] = sess
    return sess


async def close_session() -> None:
    """Close all known aiohttp sessions."""
    to_close = list(_SESSIONS.values())
    _SESSIONS.clear()
    for sess in to_close:
        if sess.closed:
            continue
        try:
            await sess.close()
        except Exception as exc:  # pragma: no cover - best effort on shutdown
            logger.debug("Failed to close HTTP session: %s", exc)


async def fetch_json(
    url: str,
    *,
    params: Mapping[str, Any] | None = None,
    session: aiohttp.ClientSession | None = None,
) -> Any:
    """GET *url* once and return the decoded JSON body.

    Raises :class:`HTTPError` for status codes ``>= 400``; transport errors
    (timeouts, resets) propagate as raised by aiohttp. Retrying is the
    caller's concern.
    """

    sess = session or await get_session()
    async with sess.get(url, params=params) as response:
        if response.status >= 400:
            text = await response.text()
            raise HTTPError(response.status, url, text)
        raw = await response.read()
    return loads(raw)


__all__ = [
    "HTTPError",
    "USE_ORJSON",
    "dumps",
    "loads",
    "configure",
    "get_session",
    "close_session",
    "fetch_json",
]
