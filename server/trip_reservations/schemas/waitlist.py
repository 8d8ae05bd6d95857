"""Waitlist Pydantic schemas."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class JoinWaitlistRequest(BaseModel):
    """Request schema for joining a waitlist."""

    occurrence_id: str
    quantity: int = Field(1, ge=1, le=10)


class LeaveWaitlistRequest(BaseModel):
    """Request schema for leaving a waitlist."""

    occurrence_id: str


class ListWaitlistRequest(BaseModel):
    """Request schema for listing an occurrence's queue."""

    occurrence_id: str


class WaitlistEntry(BaseModel):
    """Waitlist entry response schema."""

    id: str
    occurrence_id: str
    buyer_id: str
    quantity: int
    status: str
    position: Optional[int] = Field(None, description="1-based place among waiting entries")
    requested_at: datetime
    offer_expires_at: Optional[datetime] = None


class WaitlistQueue(BaseModel):
    """Waitlist listing response schema."""

    occurrence_id: str
    entries: List[WaitlistEntry]
