"""ObraCalc HTTP API.

Run with ``uvicorn obracalc.web.app:app``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from obracalc.bootstrap import build_services
from obracalc.config import AppConfig
from obracalc.core.logging import configure_logging
from obracalc.core.queue import get_queue
from obracalc.web.routes import budget, catalog, health, ingestion

logger = logging.getLogger(__name__)


def create_app(config: AppConfig | None = None) -> FastAPI:
    """Create the FastAPI application.

    Services and the job queue are created in the lifespan so tests can
    build an app without touching the network and override dependencies.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app_config = config or AppConfig.from_env()
        configure_logging(app_config.log_level, app_config.json_logs)
        app.state.config = app_config
        app.state.services = build_services(app_config)
        try:
            app.state.queue = await get_queue()
        except Exception as e:
            logger.warning(f"Job queue unavailable, ingestion uploads disabled: {e}")
            app.state.queue = None
        try:
            yield
        finally:
            if app.state.queue is not None:
                await app.state.queue.aclose()
            await app.state.services.close()

    app = FastAPI(
        title="ObraCalc",
        description="Construction price book ingestion and hybrid pricing",
        lifespan=lifespan,
    )
    app.include_router(health.router)
    app.include_router(ingestion.router)
    app.include_router(catalog.router)
    app.include_router(budget.router)
    return app


app = create_app()
