from __future__ import annotations

import json
import logging
import sys
import threading
import time
from datetime import datetime, timezone
from typing import Any, Iterable

DEFAULT_FORMAT = (
    "%(asctime)sZ [%(levelname)s] %(name)s:%(lineno)d | %(message)s"
)
DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"

_NOISY_LOGGERS: tuple[str, ...] = (
    "aiohttp.access",
    "asyncio",
)

_warn_once_lock = threading.Lock()
_warn_once_last_emit: dict[str, float] = {}

try:  # pragma: no cover - optional dependency
    import orjson as _ORJSON  # type: ignore[attr-defined]
except Exception:  # pragma: no cover - optional dependency
    _ORJSON = None


class _UTCFormatter(logging.Formatter):
    """Formatter that renders timestamps in UTC."""

    converter = time.gmtime


_LOG_RECORD_RESERVED = set(logging.LogRecord(None, 0, "", 0, "", (), None).__dict__.keys())
# set on the record by Formatter.format when another handler ran first
_LOG_RECORD_RESERVED.update({"message", "asctime"})


class JsonFormatter(logging.Formatter):
    """Structured logging formatter producing JSON payloads."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401 - short summary sufficient
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc)
            .replace(tzinfo=None)
            .isoformat(timespec="milliseconds")
            + "Z",
            "level": record.levelname,
            "logger": record.name,
            "line": record.lineno,
            "msg": record.getMessage(),
        }

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        # ``extra=`` fields passed to the logger end up as record attributes
        for key, value in record.__dict__.items():
            if key in payload or key.startswith("_") or key in _LOG_RECORD_RESERVED:
                continue
            payload[key] = value

        if _ORJSON is not None:
            return _ORJSON.dumps(payload, default=str).decode()
        return json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=str)


def parse_log_level(value: str | int | None) -> int:
    if not value:
        return logging.INFO
    if isinstance(value, int):
        return value
    level = str(value).strip().upper()
    if level.isdigit():
        return int(level)
    resolved = getattr(logging, level, None)
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(
    *,
    level: str | int | None = None,
    json_logs: bool = False,
    fmt: str | None = None,
    datefmt: str | None = None,
    quiet: Iterable[str] = _NOISY_LOGGERS,
) -> logging.StreamHandler:
    """Ensure a single ``StreamHandler`` to ``sys.stdout`` exists on the root logger.

    Calling this repeatedly reconfigures the same handler instead of stacking
    new ones, so the server entry point and tests can both call it safely.
    """

    resolved_level = parse_log_level(level)
    root = logging.getLogger()
    root.setLevel(resolved_level)

    sentinel_key = "_token_aggregator_stdout_handler"
    handler = getattr(root, sentinel_key, None)
    if not isinstance(handler, logging.StreamHandler) or handler not in root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        root.addHandler(handler)
        setattr(root, sentinel_key, handler)

    handler.setLevel(resolved_level)
    if json_logs:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(_UTCFormatter(fmt or DEFAULT_FORMAT, datefmt=datefmt or DEFAULT_DATEFMT))

    for name in quiet:
        logging.getLogger(name).setLevel(max(resolved_level, logging.WARNING))

    return handler


def warn_once_per(
    seconds: float,
    key: str,
    message: str,
    *args: Any,
    logger: logging.Logger | None = None,
    **kwargs: Any,
) -> bool:
    """Emit ``logger.warning`` for *message* at most once per *seconds* interval."""

    interval = max(0.0, seconds)
    now = time.monotonic()

    with _warn_once_lock:
        last = _warn_once_last_emit.get(key)
        if last is not None and interval > 0 and now - last < interval:
            return False
        _warn_once_last_emit[key] = now

    target = logger or logging.getLogger()
    target.warning(message, *args, **kwargs)
    return True


def reset_warn_once_cache() -> None:
    """Clear cached emission timestamps for :func:`warn_once_per`."""

    with _warn_once_lock:
        _warn_once_last_emit.clear()


__all__ = [
    "JsonFormatter",
    "parse_log_level",
    "setup_logging",
    "warn_once_per",
    "reset_warn_once_cache",
]
