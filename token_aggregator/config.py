"""Centralized runtime configuration.

Settings are read from the environment once and validated with pydantic.
Importers should use :func:`get_settings` instead of reaching for
``os.getenv`` directly; callers that mutate the environment (tests, the CLI)
refresh the cached object via :func:`refresh_settings`.
"""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Any, Dict, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

_TRUE_VALUES = {"1", "true", "yes", "y", "on", "enable", "enabled", "t"}
_FALSE_VALUES = {"0", "false", "no", "n", "off", "disable", "disabled", "f"}

DEFAULT_DEXSCREENER_QUERIES: Tuple[str, ...] = ("SOL", "BONK", "WIF", "MYRO", "SAMO")


class SettingsError(ValueError):
    """Raised when the environment holds an invalid configuration value."""


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class ServerSettings(_Frozen):
    host: str = "0.0.0.0"
    port: int = Field(default=3000, ge=0, le=65535)
    env: str = "development"

    @property
    def is_production(self) -> bool:
        return self.env.strip().lower() == "production"


class RedisSettings(_Frozen):
    url: Optional[str] = None
    host: str = "localhost"
    port: int = Field(default=6379, ge=1, le=65535)
    password: Optional[str] = None

    @property
    def dsn(self) -> str:
        if self.url:
            return self.url
        auth = f":{self.password}@" if self.password else ""
        return f"redis://{auth}{self.host}:{self.port}/0"


class CacheSettings(_Frozen):
    enabled: bool = True
    ttl: int = Field(default=30, gt=0)


class ApiSettings(_Frozen):
    rate_limit: int = Field(default=300, gt=0)
    window_ms: int = Field(default=60_000, gt=0)
    timeout_ms: int = Field(default=10_000, gt=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    max_backoff_ms: int = Field(default=30_000, gt=0)


class WebSocketSettings(_Frozen):
    price_change_threshold: float = Field(default=1.0, ge=0.0)


class ProviderSettings(_Frozen):
    dexscreener_base_url: str = "https://api.dexscreener.com/latest/dex"
    geckoterminal_base_url: str = "https://api.geckoterminal.com/api/v2"
    jupiter_price_url: str = "https://price.jup.ag/v4/price"
    dexscreener_queries: Tuple[str, ...] = DEFAULT_DEXSCREENER_QUERIES
    geckoterminal_pool_limit: int = Field(default=30, gt=0)

    @field_validator("dexscreener_queries", mode="before")
    @classmethod
    def _split_queries(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = [part.strip() for part in value.split(",")]
        if isinstance(value, (list, tuple)):
            cleaned = tuple(str(part).strip() for part in value if str(part).strip())
            if not cleaned:
                raise ValueError("dexscreener_queries must contain at least one query")
            return cleaned
        return value

    @field_validator("dexscreener_base_url", "geckoterminal_base_url", "jupiter_price_url")
    @classmethod
    def _strip_slash(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if not value.startswith(("http://", "https://")):
            raise ValueError(f"expected an http(s) URL, got {value!r}")
        return value


class LoggingSettings(_Frozen):
    level: str = "INFO"
    json_logs: bool = False


class Settings(_Frozen):
    server: ServerSettings = ServerSettings()
    redis: RedisSettings = RedisSettings()
    cache: CacheSettings = CacheSettings()
    api: ApiSettings = ApiSettings()
    refresh_interval: float = Field(default=30.0, gt=0)
    websocket: WebSocketSettings = WebSocketSettings()
    providers: ProviderSettings = ProviderSettings()
    logging: LoggingSettings = LoggingSettings()


# environment variable -> (group, field)
_ENV_MAP: Dict[str, Tuple[str | None, str]] = {
    "HOST": ("server", "host"),
    "PORT": ("server", "port"),
    "APP_ENV": ("server", "env"),
    "REDIS_URL": ("redis", "url"),
    "REDIS_HOST": ("redis", "host"),
    "REDIS_PORT": ("redis", "port"),
    "REDIS_PASSWORD": ("redis", "password"),
    "CACHE_ENABLED": ("cache", "enabled"),
    "CACHE_TTL": ("cache", "ttl"),
    "API_RATE_LIMIT": ("api", "rate_limit"),
    "API_RATE_WINDOW": ("api", "window_ms"),
    "API_TIMEOUT": ("api", "timeout_ms"),
    "API_BACKOFF_MULTIPLIER": ("api", "backoff_multiplier"),
    "API_MAX_BACKOFF": ("api", "max_backoff_ms"),
    "REFRESH_INTERVAL": (None, "refresh_interval"),
    "WS_PRICE_CHANGE_THRESHOLD": ("websocket", "price_change_threshold"),
    "DEXSCREENER_BASE_URL": ("providers", "dexscreener_base_url"),
    "GECKOTERMINAL_BASE_URL": ("providers", "geckoterminal_base_url"),
    "JUPITER_PRICE_URL": ("providers", "jupiter_price_url"),
    "DEXSCREENER_QUERIES": ("providers", "dexscreener_queries"),
    "GECKOTERMINAL_POOL_LIMIT": ("providers", "geckoterminal_pool_limit"),
    "LOG_LEVEL": ("logging", "level"),
    "LOG_JSON": ("logging", "json_logs"),
}

_BOOL_VARS = {"CACHE_ENABLED", "LOG_JSON"}


def parse_bool(value: str, default: bool) -> bool:
    norm = value.strip().lower()
    if norm in _TRUE_VALUES:
        return True
    if norm in _FALSE_VALUES:
        return False
    return default


def settings_from_env(env: Mapping[str, str] | None = None) -> Settings:
    """Build :class:`Settings` from ``env`` (defaults to ``os.environ``).

    Unset or blank variables fall back to the model defaults. Raises
    :class:`SettingsError` when a value fails validation.
    """

    source = os.environ if env is None else env
    groups: Dict[str, Dict[str, Any]] = {}
    top: Dict[str, Any] = {}
    for name, (group, key) in _ENV_MAP.items():
        raw = source.get(name)
        if raw is None or not str(raw).strip():
            continue
        value: Any = str(raw).strip()
        if name in _BOOL_VARS:
            default = name == "CACHE_ENABLED"
            value = parse_bool(value, default)
        if group is None:
            top[key] = value
        else:
            groups.setdefault(group, {})[key] = value
    try:
        return Settings(**top, **groups)
    except ValidationError as exc:
        raise SettingsError(str(exc)) from exc


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return settings_from_env()


def refresh_settings() -> Settings:
    """Drop the cached settings and rebuild them from the environment."""

    get_settings.cache_clear()
    return get_settings()


__all__ = [
    "SettingsError",
    "ServerSettings",
    "RedisSettings",
    "CacheSettings",
    "ApiSettings",
    "WebSocketSettings",
    "ProviderSettings",
    "LoggingSettings",
    "Settings",
    "parse_bool",
    "settings_from_env",
    "get_settings",
    "refresh_settings",
]
