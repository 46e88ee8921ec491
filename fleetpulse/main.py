"""
FleetPulse broker application.

Run with:
    uvicorn fleetpulse.main:app --reload
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from fleetpulse.api import alerts, attendance, realtime, vehicles
from fleetpulse.config import config
from fleetpulse.db import is_database_available
from fleetpulse.dependencies import FleetServices, build_services, get_services

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(services: Optional[FleetServices] = None) -> FastAPI:
    """Build the FastAPI app; tests pass their own services container."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        relay = app.state.services.relay
        if relay is not None and not await relay.start():
            logger.warning("Cross-worker relay unavailable, events stay on this worker")
        logger.info(f"FleetPulse broker started ({app.state.services.persistence} persistence)")
        yield
        if relay is not None:
            await relay.stop()
        logger.info("FleetPulse broker stopped")

    app = FastAPI(title="FleetPulse", lifespan=lifespan)
    app.state.services = services or build_services()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(realtime.router)
    app.include_router(vehicles.router)
    app.include_router(attendance.router)
    app.include_router(alerts.router)

    @app.get("/")
    def read_root():
        return {"message": "Welcome to FleetPulse API"}

    @app.get("/health")
    def health(services: FleetServices = Depends(get_services)):
        return {
            "status": "ok",
            "persistence": services.persistence,
            "database": services.persistence == "database" and is_database_available(),
            "relay": bool(services.relay and services.relay.running),
            **services.manager.get_stats(),
            **services.state.stats(),
        }

    @app.get("/config")
    def show_config():
        return config.get_config_dict()

    return app


app = create_app()
