"""FastAPI route definitions for the Parlae PMS API."""

from __future__ import annotations

import asyncio
import logging
import secrets

from fastapi import APIRouter, Header, HTTPException, Query, Request

from parlae_pms import config
from parlae_pms.api.schemas import (
    HealthResponse,
    TokenRefreshResponse,
    ToolCallRequest,
    ToolCallResponse,
    WritebackStatsResponse,
    WritebackSweepResponse,
)
from parlae_pms.models import PmsApiResponse
from parlae_pms.tools.pms import TOOLS_BY_NAME

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_state(request: Request, name: str):
    """Retrieve a component built during the FastAPI lifespan (see ``server.py``)."""
    component = getattr(request.app.state, name, None)
    if component is None:
        raise HTTPException(
            status_code=503,
            detail="The PMS service is still starting up. Please try again in a moment.",
        )
    return component


def _check_cron_secret(provided: str | None) -> None:
    expected = config.CRON_SECRET
    if not expected:
        return
    if not provided or not secrets.compare_digest(provided, expected):
        raise HTTPException(status_code=401, detail="Invalid cron secret.")


def _internal_error(request: Request, what: str) -> HTTPException:
    # Full traceback stays server-side
    request_id = getattr(request.state, "request_id", "?")
    logger.exception("[%s] Error %s", request_id, what)
    return HTTPException(status_code=500, detail="An internal error occurred. Please try again.")


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


@router.get("/pms/connection", response_model=PmsApiResponse)
async def test_connection(request: Request):
    """Check that the configured practice is reachable with the current credentials."""
    service = _get_state(request, "pms_service")
    try:
        return await asyncio.to_thread(service.test_connection)
    except Exception as e:
        raise _internal_error(request, "testing PMS connection") from e


@router.get("/pms/features", response_model=PmsApiResponse)
async def get_features(request: Request):
    service = _get_state(request, "pms_service")
    return service.get_features()


@router.get("/pms/writebacks/stats", response_model=WritebackStatsResponse)
async def writeback_stats(request: Request):
    """Outcome counts for this integration's writebacks plus rate-limit usage."""
    service = _get_state(request, "pms_service")
    sweeper = _get_state(request, "sweeper")
    try:
        return await asyncio.to_thread(sweeper.stats, service.integration_id)
    except Exception as e:
        raise _internal_error(request, "computing writeback stats") from e


@router.post("/tools/{tool_name}", response_model=ToolCallResponse)
async def call_tool(tool_name: str, body: ToolCallRequest, request: Request):
    """Run one voice-assistant tool and return the text to read back.

    Tools call the Sikka API synchronously (writebacks poll for up to ~20 s),
    so the call is offloaded to a worker thread.
    """
    pms_tool = TOOLS_BY_NAME.get(tool_name)
    if pms_tool is None:
        raise HTTPException(status_code=404, detail=f"Unknown tool: {tool_name}")

    try:
        result = await asyncio.to_thread(pms_tool.invoke, body.arguments)
    except Exception as e:
        raise _internal_error(request, f"running tool {tool_name}") from e
    return ToolCallResponse(tool=tool_name, result=str(result))


@router.post("/cron/refresh-tokens", response_model=TokenRefreshResponse)
async def cron_refresh_tokens(
    request: Request,
    force: bool = Query(False, description="Also retry integrations in ERROR state"),
    x_cron_secret: str | None = Header(default=None),
):
    _check_cron_secret(x_cron_secret)
    job = _get_state(request, "token_refresh_job")
    try:
        results = await asyncio.to_thread(job.refresh_all, force)
    except Exception as e:
        raise _internal_error(request, "refreshing tokens") from e
    return TokenRefreshResponse(**results)


@router.post("/cron/poll-writebacks", response_model=WritebackSweepResponse)
async def cron_poll_writebacks(
    request: Request,
    x_cron_secret: str | None = Header(default=None),
):
    _check_cron_secret(x_cron_secret)
    sweeper = _get_state(request, "sweeper")
    try:
        marked_failed = await asyncio.to_thread(sweeper.mark_stuck_as_failed)
        summary = await asyncio.to_thread(sweeper.poll_pending)
    except Exception as e:
        raise _internal_error(request, "polling writebacks") from e
    return WritebackSweepResponse(**summary, marked_failed=marked_failed)
