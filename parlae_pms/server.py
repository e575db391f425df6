"""FastAPI server for the Parlae PMS integration service.

Run with:
    uvicorn parlae_pms.server:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from parlae_pms.api.routes import router
from parlae_pms.config import (
    CORS_ORIGINS,
    SERVER_HOST,
    SERVER_PORT,
    SIKKA_APP_ID,
    SIKKA_APP_KEY,
    SIKKA_BASE_URL,
)
from parlae_pms.services.metrics import metrics
from parlae_pms.services.sikka_service import get_pms_service
from parlae_pms.services.store import InMemoryCredentialStore, InMemoryWritebackStore
from parlae_pms.services.token_refresh import TokenRefreshJob
from parlae_pms.services.writebacks import WritebackSweeper

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Build the PMS service, writeback sweeper and token job once and store them in app state."""
    logger.info("Initialising Sikka PMS service…")
    service = get_pms_service()
    writeback_store = service.writeback_store or InMemoryWritebackStore()
    credential_store = service.credential_store or InMemoryCredentialStore()

    application.state.pms_service = service
    application.state.sweeper = WritebackSweeper(service.client, writeback_store)
    application.state.token_refresh_job = TokenRefreshJob(
        credential_store,
        app_id=SIKKA_APP_ID,
        app_key=SIKKA_APP_KEY,
        base_url=SIKKA_BASE_URL,
    )
    logger.info("PMS service ready (integration %s).", service.integration_id)
    yield
    service.close()
    metrics.flush()


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Parlae PMS Integration",
    description=(
        "Practice-management integration for the Parlae voice assistant: "
        "appointments, patients, billing and providers via Sikka."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request-ID middleware ────────────────────────────────────────────
@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Attach a unique request ID to every request for log correlation."""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info("[%s] %s %s", request_id, request.method, request.url.path)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Parlae PMS Integration",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
    }


if __name__ == "__main__":
    logger.info("Starting Parlae PMS API server on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(
        "parlae_pms.server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=True,
    )
