"""FastAPI application factory."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import settings
from .database import init_db
from .routers import books, chunks, sync
from .services.occurrence_service import drain_background_tasks
from .services.sync_orchestrator import SyncOrchestrator

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
)

log = logging.getLogger(__name__)


def create_app(orchestrator: Optional[SyncOrchestrator] = None) -> FastAPI:
    init_db()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sync_orchestrator = orchestrator or SyncOrchestrator()
        app.state.sync_orchestrator = sync_orchestrator
        sync_orchestrator.start()
        log.info("%s started", settings.app_title)
        try:
            yield
        finally:
            await sync_orchestrator.stop()
            await drain_background_tasks()

    app = FastAPI(title=settings.app_title, version="0.1.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(books.router)
    app.include_router(chunks.router)
    app.include_router(sync.router)

    return app


app = create_app()
