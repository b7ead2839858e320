"""
Integration Sync Engine — application entry point.
"""

from __future__ import annotations

import logging
import sys

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import register_middleware
from config.settings import config
from connectors.encryption import is_encryption_enabled
from connectors.routes import router as integrations_router
from database.session import create_tables
from sync.routes import router as sync_router
from sync.service import get_services
from sync.worker import SyncWorker, stale_after
from webhooks.routes import router as webhooks_router

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "urllib3", "asyncio"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    app = FastAPI(
        title="Integration Sync Engine",
        version="1.0.0",
        description="OAuth integrations, durable sync jobs and webhook ingress.",
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

    # Routes
    app.include_router(integrations_router)
    app.include_router(sync_router)
    app.include_router(webhooks_router)

    @app.get("/health", tags=["health"])
    async def health() -> dict:
        return {"status": "ok"}

    @app.on_event("startup")
    async def on_startup():
        logger.info("Creating tables…")
        await create_tables()

        services = get_services()
        services.registry.log_configuration()
        if not is_encryption_enabled():
            logger.warning("Running without token encryption; set TOKEN_ENCRYPTION_KEY in production")

        # Fail jobs left running by a previous server instance
        reaped = await services.queue.reap_stale(stale_after())
        if reaped:
            logger.info("Cleaned up %d stale jobs from previous run", reaped)

        if config.job_worker_enabled:
            app.state.worker = SyncWorker(services)
            app.state.worker.start()

        logger.info("Application ready to accept requests.")

    @app.on_event("shutdown")
    async def on_shutdown():
        worker = getattr(app.state, "worker", None)
        if worker is not None:
            await worker.stop()

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
