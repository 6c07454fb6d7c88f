"""
VaultX Agent API
FastAPI application: routers, exception handlers, monitor scheduler

Run with:
    uvicorn main:app --app-dir backend
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agents.monitor_scheduler import MonitorScheduler
from api.aa_router import router as aa_router
from api.borrow_router import router as borrow_router
from api.cron_router import router as cron_router
from api.dependencies import get_container
from api.history_router import router as history_router
from api.migrate_router import router as migrate_router
from infrastructure.config import get_config
from infrastructure.errors import error_tracker, register_exception_handlers

config = get_config()

logging.basicConfig(
    level=getattr(logging, config.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("VaultX")


@asynccontextmanager
async def lifespan(app: FastAPI):
    scheduler = None
    if config.monitor.scheduler_enabled:
        container = get_container()
        scheduler = MonitorScheduler(container.monitor, config.monitor.interval_minutes)
        scheduler.start()
    logger.info(f"[VaultX] API started ({config.environment.value})")
    yield
    if scheduler is not None:
        scheduler.stop()
    logger.info("[VaultX] API stopped")


def create_app() -> FastAPI:
    app = FastAPI(title="VaultX Agent API", version="1.0.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)

    app.include_router(aa_router)
    app.include_router(borrow_router)
    app.include_router(migrate_router)
    app.include_router(cron_router)
    app.include_router(history_router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "environment": config.environment.value}

    @app.get("/api/errors/stats")
    async def error_stats():
        return error_tracker.get_stats()

    return app


app = create_app()
