"""FastAPI application exposing the workflow engine."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..archive import ArchiveSweeper
from ..config import ColonyConfig, load_config
from ..db import Database, get_database
from ..errors import ColonyError
from ..runs import RunOrchestrator
from ..scheduler import SchedulerSweeper
from .routes import agent, archives, runs, steps, stories, workflows

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"


def create_app(
    config: Optional[ColonyConfig] = None,
    db: Optional[Database] = None,
    background: bool = True,
) -> FastAPI:
    """Build the app; ``background=False`` leaves the sweep loops off."""
    config = config or load_config()
    db = db or get_database(config=config)
    orchestrator = RunOrchestrator(db)
    scheduler = SchedulerSweeper(db, config.scheduler)
    archiver = ArchiveSweeper(db, config.archive)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await db.init_db()
        if background:
            await scheduler.start()
            await archiver.start()
        logger.info("Colony API ready")
        yield
        await scheduler.stop()
        await archiver.stop()
        await db.dispose()
        logger.info("Shutting down Colony API")

    app = FastAPI(title="Colony API", version="0.1.0", lifespan=lifespan)
    app.state.config = config
    app.state.db = db
    app.state.orchestrator = orchestrator
    app.state.scheduler = scheduler
    app.state.archiver = archiver

    @app.exception_handler(ColonyError)
    async def colony_error_handler(request: Request, exc: ColonyError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code, content={"error": exc.message, **exc.details}
        )

    for module in (workflows, runs, steps, stories, agent, archives):
        app.include_router(module.router, prefix=API_PREFIX)

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "scheduler_running": scheduler.running,
            "archive_running": archiver.running,
        }

    return app
