"""
BoxScore Gateway - FastAPI application

Only the health surface lives here; route handlers elsewhere reach the
upstream through app.state.services.orchestrator.
"""
import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request

from app.services import GatewayServices, build_services
from config.settings import settings

load_dotenv()

logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger("gateway")

# Version tracking
APP_VERSION = "v0.1.0"
APP_NAME = "BoxScore Gateway"


@asynccontextmanager
async def lifespan(app: FastAPI):
    services: GatewayServices = getattr(app.state, "services", None) or build_services(settings)
    app.state.services = services
    await services.start()
    logger.info(f"{APP_NAME} {APP_VERSION} started")
    try:
        yield
    finally:
        await services.stop()
        logger.info(f"{APP_NAME} stopped")


app = FastAPI(
    title=APP_NAME,
    description="Rate-limited, cached gateway in front of the sports-data provider",
    version=APP_VERSION,
    lifespan=lifespan,
)


@app.get("/health")
def health_check(request: Request):
    """Health check endpoint with quota, coalescer and storage status."""
    services: GatewayServices = request.app.state.services
    quota = services.governor.get_status()
    return {
        "status": "degraded" if quota["backoff"]["active"] else "ok",
        "version": APP_VERSION,
        "quota": quota,
        "coalescer": {"pending": services.coalescer.get_pending_count()},
        "storage": services.store.get_stats(),
    }


@app.get("/version")
def version_info():
    """Version information endpoint."""
    return {
        "name": APP_NAME,
        "version": APP_VERSION,
        "full": f"{APP_NAME} {APP_VERSION}",
    }
