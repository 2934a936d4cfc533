"""
ShardFlip application entry point.
FastAPI service around the betting ledger with WebSocket event streaming.
"""

import time
from collections import deque
from contextlib import asynccontextmanager
import asyncio
from typing import Optional

import orjson as json
import uvicorn
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from shardflip.config import AppConfig, settings as default_settings
from shardflip.core.events import EventBus
from shardflip.core.exceptions import LedgerError
from shardflip.core.ledger import BettingLedger
from shardflip.core.logger import get_logger, init_logging
from shardflip.core.mirror import StatsMirror
from shardflip.core.rng import build_coin_source
from shardflip.core.scheduler import MirrorSyncScheduler
from shardflip.core.store import LedgerStore
from shardflip.core.wallets import WalletBook
from shardflip.core.websocket import ConnectionManager
from shardflip.routers import admin, api, mirror

logger = get_logger("main")
ws_logger = get_logger("websocket")

# WebSocket rate limiting
WS_MAX_MESSAGES = 10  # Max messages per connection
WS_RATE_LIMIT_SECONDS = 2  # In this time window

STATUS_BY_CATEGORY = {
    "validation": 400,
    "authorization": 403,
    "not_found": 404,
    "liquidity": 409,
    "conflict": 409,
    "transfer": 502,
    "availability": 503,
}


# ==================== Security Headers Middleware ====================


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Cache-Control"] = "no-store"

        return response


# ==================== Service Wiring ====================


def build_services(
    config: AppConfig,
    ledger: Optional[BettingLedger] = None,
    wallets: Optional[WalletBook] = None,
) -> dict:
    """
    Construct the ledger and its collaborators from configuration.

    A prebuilt ledger should send its payouts to the wallet book passed with it.
    """
    if wallets is None:
        wallets = WalletBook(starting_balance=config.wallets.starting_balance)

    if ledger is None:
        store = LedgerStore(config.paths.get_db_path()) if config.ledger.persist else None
        ledger = BettingLedger(
            owner=config.ledger.owner,
            min_bet=config.ledger.min_bet,
            max_bet=config.ledger.max_bet,
            payout_multiplier=config.ledger.payout_multiplier,
            coin_source=build_coin_source(config.ledger.randomness),
            transfer=wallets.send,
            event_bus=EventBus(),
            store=store,
            recent_window=config.ledger.recent_window,
            initial_pool=config.ledger.initial_pool,
        )

    stats_mirror = None
    if config.mirror.enabled:
        stats_mirror = StatsMirror(
            config.paths.get_mirror_db_path(),
            cache_ttl_seconds=config.mirror.cache_ttl_seconds,
        )
        ledger.event_bus.subscribe(stats_mirror.apply)

    ws_manager = ConnectionManager()
    ledger.event_bus.subscribe(ws_manager.on_event)

    return {
        "ledger": ledger,
        "wallets": wallets,
        "mirror": stats_mirror,
        "ws_manager": ws_manager,
    }


# ==================== Application Setup ====================


def create_app(
    config: Optional[AppConfig] = None,
    ledger: Optional[BettingLedger] = None,
    wallets: Optional[WalletBook] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    config = config or default_settings

    init_logging(
        level=config.logging.level,
        log_to_file=config.logging.log_to_file,
        formatter=config.logging.formatter,
        log_file_path=config.paths.get_log_path(),
    )

    services = build_services(config, ledger, wallets)
    scheduler = None
    if services["mirror"] is not None:
        scheduler = MirrorSyncScheduler(
            services["ledger"],
            services["mirror"],
            interval_seconds=config.mirror.sync_interval_seconds,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services["ws_manager"].bind_loop(asyncio.get_running_loop())
        if scheduler is not None:
            scheduler.sync_mirror()
            scheduler.start()
        yield
        if scheduler is not None:
            scheduler.shutdown()

    app = FastAPI(
        title=config.server.name,
        docs_url="/docs" if config.server.debug else None,
        redoc_url=None,
        lifespan=lifespan,
    )

    app.state.settings = config
    app.state.scheduler = scheduler
    for name, service in services.items():
        setattr(app.state, name, service)

    api.limiter.enabled = config.rate_limit.enabled
    app.state.limiter = api.limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(LedgerError, ledger_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    app.add_middleware(SecurityHeadersMiddleware)

    # CORS middleware (for development)
    if config.server.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(api.router, prefix="/api")
    app.include_router(admin.router, prefix="/admin")
    app.include_router(mirror.router, prefix="/mirror")
    app.add_api_websocket_route("/ws", websocket_endpoint)

    logger.info(f"Application '{config.server.name}' initialized")
    logger.info(f"Ledger owner: {services['ledger'].owner}")
    return app


# ==================== Error Handlers ====================


async def ledger_error_handler(request: Request, exc: LedgerError):
    status_code = STATUS_BY_CATEGORY.get(exc.category, 400)
    logger.info(
        "Ledger rejected request",
        extra={"path": request.url.path, "code": exc.code, "status": status_code},
    )
    return JSONResponse(status_code=status_code, content=exc.to_dict())


async def global_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions gracefully."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    debug = request.app.state.settings.server.debug
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "detail": str(exc) if debug else None,
        },
    )


# ==================== WebSocket Endpoint ====================


async def websocket_endpoint(websocket: WebSocket):
    """
    Live ledger events.
    Clients receive every committed event of their subscribed topics and may send:
    ping, subscribe {topic}, unsubscribe {topic}.
    """
    ws_manager = websocket.app.state.ws_manager
    client_ip = websocket.client.host if websocket.client else None

    await ws_manager.connect(websocket)
    ws_logger.info("WebSocket connected", extra={"client_ip": client_ip})

    timestamps = deque()

    try:
        while True:
            data = await websocket.receive_text()

            # Rate limiting per connection
            current_time = time.time()
            while timestamps and timestamps[0] < current_time - WS_RATE_LIMIT_SECONDS:
                timestamps.popleft()
            if len(timestamps) >= WS_MAX_MESSAGES:
                ws_logger.warning("WebSocket rate limit exceeded", extra={"client_ip": client_ip})
                continue
            timestamps.append(current_time)

            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                continue

            msg_type = message.get("type")
            if msg_type == "ping":
                await websocket.send_bytes(json.dumps({"type": "pong"}))
            elif msg_type == "subscribe" and message.get("topic"):
                await ws_manager.subscribe(websocket, message["topic"])
            elif msg_type == "unsubscribe" and message.get("topic"):
                await ws_manager.unsubscribe(websocket, message["topic"])

    except WebSocketDisconnect as e:
        ws_manager.disconnect(websocket)
        ws_logger.info(
            "WebSocket disconnected",
            extra={"client_ip": client_ip, "ws_disconnect_code": e.code},
        )


# ==================== Main Entry Point ====================


def main():
    import argparse

    parser = argparse.ArgumentParser(description="ShardFlip ledger server")
    parser.add_argument("--host", default=default_settings.server.host)
    parser.add_argument("--port", type=int, default=default_settings.server.port)
    args = parser.parse_args()

    logger.info(f"Starting server on {args.host}:{args.port}")
    uvicorn.run(
        "shardflip.main:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        reload=default_settings.server.debug,
    )


if __name__ == "__main__":
    main()
