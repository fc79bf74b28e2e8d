"""Aegis mobile backend application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from aegis.api.routes import (
    admin,
    auth,
    devices,
    payment,
    quarantine,
    scan,
    subscription,
    telemetry,
    url,
)
from aegis.config import settings
from aegis.core.errors import install_exception_handlers
from aegis.db import dispose_db, init_db
from aegis.services.cache import close_cache, get_cache
from aegis.services.push import close_push_sender

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting %s v%s", settings.APP_NAME, settings.APP_VERSION)
    await init_db()
    get_cache()
    yield
    await close_push_sender()
    await close_cache()
    await dispose_db()
    logger.info("Shutdown complete")


# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    description="Device, scan, subscription and anti-theft API for the Aegis mobile app",
    version=settings.APP_VERSION,
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

install_exception_handlers(app)

# Include routes
app.include_router(auth.router)
app.include_router(devices.router)
app.include_router(scan.router)
app.include_router(quarantine.router)
app.include_router(payment.router)
app.include_router(subscription.router)
app.include_router(admin.router)
app.include_router(url.router)
app.include_router(telemetry.router)


def _health() -> dict:
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running",
    }


@app.get("/", tags=["health"])
async def root():
    """API health check."""
    return _health()


@app.get("/api/health", tags=["health"])
async def health():
    return _health()
