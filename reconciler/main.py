"""Rental Billing Reconciler — FastAPI application entry point."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from reconciler.api.v1.admin import router as admin_router
from reconciler.api.v1.billing import router as billing_router
from reconciler.api.v1.cron import router as cron_router
from reconciler.api.v1.webhooks import router as webhooks_router
from reconciler.billing.container import build_container
from reconciler.config import settings
from reconciler.database import async_session_factory, engine

# Configure root logger so all reconciler.* loggers output to stderr (captured by Docker).
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the billing components once; dispose engine connections on shutdown."""
    if getattr(app.state, "billing", None) is None:
        app.state.billing = build_container(settings, async_session_factory)
    yield
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Keeps owner subscriptions reconciled with Stripe and applies admin overrides.",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(webhooks_router)
app.include_router(billing_router)
app.include_router(admin_router)
app.include_router(cron_router)


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy", "service": settings.app_name}


@app.get("/", tags=["root"])
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
    }
