"""Availability Pydantic schemas."""

from pydantic import BaseModel, Field


class GetAvailabilityRequest(BaseModel):
    """Request schema for reading an occurrence's counters."""

    occurrence_id: str = Field(..., description="Occurrence to inspect")


class Availability(BaseModel):
    """Availability response schema."""

    occurrence_id: str
    capacity: int = Field(..., ge=0)
    confirmed: int = Field(..., ge=0)
    held: int = Field(..., ge=0)
    remaining: int = Field(..., ge=0)
