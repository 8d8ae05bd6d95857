"""Booking Pydantic schemas."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class GetBookingRequest(BaseModel):
    """Request schema for getting a booking."""

    booking_id: str = Field(..., description="Booking to retrieve")


class CancelBookingRequest(BaseModel):
    """Request schema for cancelling a booking."""

    booking_id: str = Field(..., description="Booking to cancel")
    reason: Optional[str] = Field(None, max_length=500)


class Booking(BaseModel):
    """Booking response schema."""

    id: str
    code: Optional[str]
    occurrence_id: str
    checkout_session_id: str
    quantity: int
    amount: int
    currency: str
    status: str
    confirmed_at: Optional[datetime]
    created_at: datetime
