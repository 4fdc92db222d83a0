"""Main FastAPI application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from landing_translator import __version__
from landing_translator.config import settings
from landing_translator.models.database.base import init_db
from landing_translator.core.services import HttpTranslationServices
from landing_translator.core.orchestration import (
    BatchCoordinator,
    RowRegistry,
    SqlItemStore,
    plain_translate_runner,
)
from landing_translator.api.v1.routes import translation, publish

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup: Initialize database
    await init_db()

    # Startup: Wire the orchestrator
    services = HttpTranslationServices.from_settings()
    store = SqlItemStore()
    coordinator = BatchCoordinator(
        plain_runner=plain_translate_runner(services, store),
        stall_timeout=settings.stall_timeout_seconds,
        retention=settings.batch_retention_seconds,
    )
    app.state.services = services
    app.state.store = store
    app.state.coordinator = coordinator
    app.state.rows = RowRegistry(services, store, coordinator)
    logger.info(f"Orchestrator ready: services={settings.services_base_url}")

    yield

    # Shutdown: cancel open rows and release the HTTP client
    app.state.rows.dispose_all()
    await services.aclose()


app = FastAPI(
    title=settings.app_name,
    description="Landing page translation orchestrator",
    version=__version__,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(translation.router, prefix="/api/v1", tags=["translation"])
app.include_router(publish.router, prefix="/api/v1", tags=["publish"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": "Landing Translator API", "version": __version__}


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}
