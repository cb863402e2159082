"""Pydantic request/response schemas for the NSFWDetect API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class CheckImageResponse(BaseModel):
    """Response for the image check endpoint."""

    confidence: float = Field(ge=0.0, le=1.0, description="Explicit content confidence (0.0 safe - 1.0 explicit)")
    label: str = Field(description="Label the confidence was reported for")
    execution_mode: str = Field(description="'accelerated' or 'portable_only' (reduced accuracy)")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    model: str
    execution_mode: str
    reduced_accuracy: bool
    concurrent_requests: int
    queue_depth: int


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
