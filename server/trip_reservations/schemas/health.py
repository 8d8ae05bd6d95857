"""Schemas for the RPC health ping."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"


class HealthResponse(BaseModel):
    """Liveness plus the dependencies a checkout cannot run without."""

    status: HealthStatus = Field(..., description="healthy when every dependency answered")
    timestamp: datetime = Field(..., description="Server time (ISO 8601, UTC)")
    version: str = Field(..., description="Service version")
    database: bool = Field(..., description="Whether the reservation database answered a trivial query")
    gateway_mode: str = Field(..., description="Payment gateway environment checkouts are sent to")
