"""
FastAPI API Server.

Twilio webhooks for inbound routing and call lifecycle tracking, plus the
authenticated management API for numbers, forwarding rules, call logs
and billing.

Start with:
    uvicorn callflow.api_server:app --reload --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from dotenv import load_dotenv
load_dotenv(".env.local")

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from callflow.api.billing import router as billing_router
from callflow.api.calls import router as calls_router
from callflow.api.forwarding import router as forwarding_router
from callflow.api.middleware import RequestIdMiddleware
from callflow.api.numbers import router as numbers_router
from callflow.api.webhooks import router as webhooks_router
from callflow.config import get_settings
from callflow.logging_config import setup_logging, get_logger

setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle hooks."""
    settings = get_settings()
    logger.info(
        "api_server_starting",
        environment=settings.environment.value,
        server_url=settings.server_url,
    )
    yield
    logger.info("api_server_stopping")


app = FastAPI(
    title="Callflow API",
    description="Multi-tenant call routing, forwarding and usage billing on Twilio",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(RequestIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(webhooks_router)
app.include_router(numbers_router)
app.include_router(forwarding_router)
app.include_router(calls_router)
app.include_router(billing_router)


@app.get("/health", tags=["System"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok", "service": "callflow"}


@app.get("/", tags=["System"])
async def root() -> dict[str, str]:
    """API root."""
    return {
        "service": "Callflow",
        "version": "0.1.0",
        "docs": "/docs",
    }
