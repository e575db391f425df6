"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "parlae-pms"


class ToolCallRequest(BaseModel):
    """Voice-assistant tool invocation."""

    arguments: dict[str, Any] = Field(
        default_factory=dict,
        description="Keyword arguments for the tool, as produced by the assistant",
    )


class ToolCallResponse(BaseModel):
    tool: str
    result: str = Field(..., description="Text for the assistant to relay to the caller")


class TokenRefreshResponse(BaseModel):
    success: int
    failed: int


class WritebackSweepResponse(BaseModel):
    checked: int
    updated: int
    skipped: int
    rate_limited: int
    marked_failed: int = Field(0, description="Writebacks failed for being stuck in pending")


class RateLimitUsage(BaseModel):
    requests_used: int
    requests_remaining: int
    window_start: datetime | None = None


class WritebackStatsResponse(BaseModel):
    total: int
    pending: int
    completed: int
    failed: int
    success_rate: float
    avg_duration_seconds: float
    rate_limit: RateLimitUsage
