"""
Integration service — application entry point.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import register_middleware
from config.settings import config
from connectors.catalog import build_registry, register_webhook_handlers
from connectors.encryption import TokenCipher
from connectors.events import EventSink, LoggingEventSink
from connectors.registry import IntegrationRegistry
from connectors.routes import PendingAuthorizations
from connectors.routes import router as integrations_router
from connectors.storage import ConnectionStore, MemoryConnectionStore
from connectors.webhooks import WebhookManager
from database.connection_store import SqlConnectionStore

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "urllib3", "sqlalchemy.engine", "aiosqlite"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def build_store() -> ConnectionStore:
    cipher = TokenCipher(config.token_encryption_key)
    if config.use_memory_store:
        logger.warning("Using in-memory connection store, data is lost on restart")
        return MemoryConnectionStore(cipher=cipher)

    from database.session import async_session_factory

    return SqlConnectionStore(async_session_factory, cipher=cipher)


def create_app(
    *,
    store: Optional[ConnectionStore] = None,
    registry: Optional[IntegrationRegistry] = None,
    events: Optional[EventSink] = None,
) -> FastAPI:
    app = FastAPI(
        title="Integration Service",
        version="1.0.0",
        description="OAuth2 connectors, token lifecycle and webhooks for third-party services.",
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_middleware(app)

    events = events or LoggingEventSink()
    store = store or build_store()
    registry = registry or build_registry(events=events)
    webhooks = WebhookManager(store, events=events)
    register_webhook_handlers(webhooks)

    app.state.store = store
    app.state.registry = registry
    app.state.webhooks = webhooks
    app.state.pending = PendingAuthorizations(ttl_seconds=config.oauth_state_ttl_seconds)

    # Routes
    app.include_router(integrations_router, prefix="/api/v1/integrations")

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok", "integrations": registry.types()}

    @app.on_event("startup")
    async def on_startup():
        if isinstance(store, SqlConnectionStore):
            from database.session import init_db

            logger.info("Ensuring database tables exist…")
            await init_db()

        restored = await webhooks.restore()
        logger.info(
            "Application ready: %d integrations, %d webhooks.", len(registry.types()), restored
        )

    @app.on_event("shutdown")
    async def on_shutdown():
        logger.info("Waiting for in-flight webhook handlers…")
        await webhooks.drain()

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level="debug" if config.debug else "info",
    )
