from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request

from .db import Database
from .http_rpc import router
from .models import utc_now_iso
from .services import ChatServices, build_services
from .settings import SERVER_NAME, SERVER_VERSION, Settings

logger = logging.getLogger(__name__)


def create_app(config: Settings | None = None, store: Database | None = None) -> FastAPI:
    """Build the FastAPI application around a fresh set of services."""
    services = build_services(config, store)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        services.store.migrate()
        logger.info("%s %s ready (db=%s)", SERVER_NAME, SERVER_VERSION, services.store.db_path)
        try:
            yield
        finally:
            for conn in services.registry.snapshot():
                services.registry.remove(conn)

    app = FastAPI(title=SERVER_NAME, version=SERVER_VERSION, lifespan=lifespan)
    app.state.services = services
    app.include_router(router)

    @app.get("/health")
    async def health(request: Request) -> dict[str, Any]:
        current: ChatServices = request.app.state.services
        return {
            "status": "ok",
            "timestamp": utc_now_iso(),
            "connections": len(current.registry),
        }

    return app


app = create_app()
