"""HTTP and websocket surface for the aggregator.

Routes:

* ``GET /`` service banner
* ``GET /api/health``, ``/api/health/ready``, ``/api/health/live``
* ``GET /api/tokens`` filtered, sorted, paginated tokens
* ``GET /api/tokens/{address}`` one token
* ``POST /api/tokens/refresh`` run a cycle now
* ``GET /ws`` live updates (``subscribe:tokens`` / ``unsubscribe:tokens``)
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import signal
import time
from datetime import datetime, timezone
from typing import Any, Literal, Optional, Set

import psutil
from aiohttp import web
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from . import __version__, event_bus
from .aggregator import AggregationService, RefreshScheduler, records_to_dicts
from .cache import HEALTH_KEY, CacheService
from .config import Settings, get_settings, refresh_settings
from .http import close_session, configure
from .logging_utils import setup_logging
from .models import FilterRequest, UpdateEvent
from .providers import build_providers

logger = logging.getLogger(__name__)

SERVICE_KEY = web.AppKey("service", AggregationService)
CACHE_KEY = web.AppKey("cache", CacheService)
SETTINGS_KEY = web.AppKey("settings", Settings)
STARTED_KEY = web.AppKey("started_at", float)
SCHEDULER_KEY = web.AppKey("scheduler", RefreshScheduler)

SUBSCRIBE = "subscribe:tokens"
UNSUBSCRIBE = "unsubscribe:tokens"
INITIAL = "initial:tokens"
UPDATE = "token:update"


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _ok(data: Any, **extra: Any) -> web.Response:
    return web.json_response({"success": True, "data": data, **extra, "timestamp": _timestamp()})


def _fail(message: str, status: int, **extra: Any) -> web.Response:
    payload = {"success": False, "error": message, **extra, "timestamp": _timestamp()}
    return web.json_response(payload, status=status)


class TokenQuery(BaseModel):
    """Query-string parameters accepted by ``GET /api/tokens``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    time_period: Optional[Literal["1h", "24h", "7d"]] = Field(default=None, alias="timePeriod")
    sort_by: Literal["volume", "price_change", "market_cap", "liquidity", "transaction_count"] = Field(
        default="volume", alias="sortBy"
    )
    sort_order: Literal["asc", "desc"] = Field(default="desc", alias="sortOrder")
    limit: int = Field(default=20, ge=1, le=100)
    cursor: Optional[str] = None
    min_volume: Optional[float] = Field(default=None, ge=0, alias="minVolume")
    min_market_cap: Optional[float] = Field(default=None, ge=0, alias="minMarketCap")

    def to_filter_request(self) -> FilterRequest:
        return FilterRequest(
            time_period=self.time_period,
            sort_by=self.sort_by,
            sort_order=self.sort_order,
            limit=self.limit,
            cursor=self.cursor,
            min_volume=self.min_volume,
            min_market_cap=self.min_market_cap,
        )


class TokenHub:
    """Websocket clients subscribed to token updates."""

    def __init__(self, service: AggregationService, topic: str = event_bus.TOKENS_TOPIC) -> None:
        self.service = service
        self.topic = topic
        self.clients: Set[web.WebSocketResponse] = set()
        self.subscribers: Set[web.WebSocketResponse] = set()
        self._unsub = None

    def start(self) -> None:
        if self._unsub is None:
            self._unsub = event_bus.subscribe(self.topic, self.handle_event)

    async def stop(self) -> None:
        if self._unsub is not None:
            self._unsub()
            self._unsub = None
        for client in set(self.clients):
            with contextlib.suppress(Exception):
                await client.close(code=1001, message=b"server shutdown")
        self.clients.clear()
        self.subscribers.clear()

    def register(self, ws: web.WebSocketResponse) -> None:
        self.clients.add(ws)
        logger.info("Websocket client connected (%d total)", len(self.clients))

    def unregister(self, ws: web.WebSocketResponse) -> None:
        self.clients.discard(ws)
        self.subscribers.discard(ws)
        logger.info("Websocket client disconnected (%d total)", len(self.clients))

    async def subscribe(self, ws: web.WebSocketResponse) -> None:
        self.subscribers.add(ws)
        records = self.service.all_tokens()
        if records:
            await ws.send_json(
                {"event": INITIAL, "data": records_to_dicts(records), "timestamp": _timestamp()}
            )

    def unsubscribe(self, ws: web.WebSocketResponse) -> None:
        self.subscribers.discard(ws)

    async def handle_event(self, event: UpdateEvent) -> None:
        if not self.subscribers:
            return
        message = {"event": UPDATE, "data": event.to_dict()}
        stale = []
        for client in list(self.subscribers):
            try:
                await client.send_json(message)
            except Exception as exc:
                logger.debug("Dropping websocket client: %s", exc)
                stale.append(client)
        for client in stale:
            self.unregister(client)


HUB_KEY = web.AppKey("hub", TokenHub)


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except web.HTTPNotFound:
        return _fail("Not found", 404, path=request.path)
    except web.HTTPException:
        raise
    except Exception as exc:
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        settings = request.app[SETTINGS_KEY]
        message = "Internal server error" if settings.server.is_production else str(exc)
        return _fail(message, 500)


@web.middleware
async def access_log_middleware(request: web.Request, handler) -> web.StreamResponse:
    started = time.perf_counter()
    response = await handler(request)
    logger.info(
        "%s %s %s %.1fms",
        request.method,
        request.path,
        response.status,
        (time.perf_counter() - started) * 1000,
    )
    return response


async def root(request: web.Request) -> web.Response:
    return web.json_response(
        {
            "name": "token-aggregator",
            "version": __version__,
            "endpoints": {
                "health": "/api/health",
                "tokens": "/api/tokens",
                "token": "/api/tokens/{address}",
                "refresh": "/api/tokens/refresh",
                "websocket": "/ws",
            },
        }
    )


async def _cache_status(cache: CacheService) -> str:
    if not cache.is_enabled():
        return "disabled"
    stored = await cache.set(HEALTH_KEY, "ok", 10)
    value = await cache.get(HEALTH_KEY) if stored else None
    await cache.delete(HEALTH_KEY)
    return "connected" if value == "ok" else "error"


async def health(request: web.Request) -> web.Response:
    cache = request.app[CACHE_KEY]
    rss = psutil.Process(os.getpid()).memory_info().rss
    return web.json_response(
        {
            "status": "healthy",
            "timestamp": _timestamp(),
            "uptime": round(time.time() - request.app[STARTED_KEY], 3),
            "environment": request.app[SETTINGS_KEY].server.env,
            "cache": {"enabled": cache.is_enabled(), "status": await _cache_status(cache)},
            "memory": {"rss_mb": round(rss / (1024 * 1024), 2)},
            "tokens": len(request.app[SERVICE_KEY].snapshot),
        }
    )


async def ready(request: web.Request) -> web.Response:
    return web.json_response({"status": "ready", "timestamp": _timestamp()})


async def live(request: web.Request) -> web.Response:
    return web.json_response({"status": "alive", "timestamp": _timestamp()})


async def list_tokens(request: web.Request) -> web.Response:
    try:
        query = TokenQuery.model_validate(dict(request.query))
    except ValidationError as exc:
        details = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in exc.errors()
        ]
        return _fail("Invalid query parameters", 400, details=details)
    page = await request.app[SERVICE_KEY].filter_and_sort(query.to_filter_request())
    return _ok(page.to_dict())


async def get_token(request: web.Request) -> web.Response:
    address = request.match_info["address"]
    record = await request.app[SERVICE_KEY].find_token(address)
    if record is None:
        return _fail("Token not found", 404)
    return _ok(record.to_dict())


async def refresh_tokens(request: web.Request) -> web.Response:
    records = await request.app[SERVICE_KEY].run_cycle()
    return _ok({"count": len(records)}, message="Tokens refreshed")


async def websocket_handler(request: web.Request) -> web.StreamResponse:
    hub = request.app[HUB_KEY]
    ws = web.WebSocketResponse(heartbeat=20)
    await ws.prepare(request)
    hub.register(ws)
    try:
        async for msg in ws:
            if msg.type == web.WSMsgType.TEXT:
                try:
                    data = msg.json()
                except ValueError:
                    await ws.send_json({"event": "error", "error": "invalid JSON"})
                    continue
                action = data.get("event") if isinstance(data, dict) else None
                if action == SUBSCRIBE:
                    await hub.subscribe(ws)
                elif action == UNSUBSCRIBE:
                    hub.unsubscribe(ws)
                else:
                    await ws.send_json({"event": "error", "error": f"unknown event {action!r}"})
            elif msg.type == web.WSMsgType.ERROR:
                logger.warning("Websocket error: %s", ws.exception())
                break
    finally:
        hub.unregister(ws)
    return ws


def create_app(
    service: AggregationService,
    cache: CacheService,
    settings: Settings | None = None,
) -> web.Application:
    """Build the application; no cycle runs until a request needs one."""

    settings = settings or get_settings()
    app = web.Application(middlewares=[access_log_middleware, error_middleware])
    hub = TokenHub(service)
    app[SERVICE_KEY] = service
    app[CACHE_KEY] = cache
    app[HUB_KEY] = hub
    app[SETTINGS_KEY] = settings
    app[STARTED_KEY] = time.time()

    app.router.add_get("/", root)
    app.router.add_get("/api/health", health)
    app.router.add_get("/api/health/ready", ready)
    app.router.add_get("/api/health/live", live)
    app.router.add_get("/api/tokens", list_tokens)
    app.router.add_post("/api/tokens/refresh", refresh_tokens)
    app.router.add_get("/api/tokens/{address}", get_token)
    app.router.add_get("/ws", websocket_handler)

    async def _on_startup(_: web.Application) -> None:
        hub.start()

    async def _on_cleanup(_: web.Application) -> None:
        await hub.stop()

    app.on_startup.append(_on_startup)
    app.on_cleanup.append(_on_cleanup)
    return app


async def _run_app(settings: Settings) -> None:
    configure(timeout=settings.api.timeout_ms / 1000)
    cache = CacheService(settings)
    service = AggregationService(build_providers(settings), cache=cache, settings=settings)
    app = create_app(service, cache, settings)
    scheduler = RefreshScheduler(service, settings.refresh_interval)
    app[SCHEDULER_KEY] = scheduler

    runner = web.AppRunner(app, access_log=None)
    await runner.setup()
    site = web.TCPSite(runner, host=settings.server.host, port=settings.server.port)
    await site.start()
    logger.info(
        "Token aggregator listening on %s:%s (%s)",
        settings.server.host,
        settings.server.port,
        settings.server.env,
    )

    stop_event = asyncio.Event()

    def _handle_signal(*_: object) -> None:
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, _handle_signal)

    try:
        records = await service.run_cycle()
        logger.info("Initial aggregation produced %d token(s)", len(records))
        scheduler.start()
        await stop_event.wait()
    finally:
        logger.info("Shutting down token aggregator")
        await scheduler.stop()
        await runner.cleanup()
        await close_session()
        await cache.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the token aggregation service")
    parser.add_argument("--host", help="Bind address (overrides HOST)")
    parser.add_argument("--port", type=int, help="Listen port (overrides PORT)")
    parser.add_argument("--log-level", help="Logging level (overrides LOG_LEVEL)")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.host:
        os.environ["HOST"] = args.host
    if args.port is not None:
        os.environ["PORT"] = str(args.port)
    if args.log_level:
        os.environ["LOG_LEVEL"] = args.log_level
    settings = refresh_settings()
    setup_logging(level=settings.logging.level, json_logs=settings.logging.json_logs)
    try:
        asyncio.run(_run_app(settings))
    except KeyboardInterrupt:
        return 130
    return 0


__all__ = ["TokenQuery", "TokenHub", "create_app", "build_parser", "main"]
