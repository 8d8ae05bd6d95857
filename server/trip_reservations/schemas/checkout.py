"""Checkout Pydantic schemas."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from .booking import Booking
from .common import Money


class LineItemRequest(BaseModel):
    """Seats of one occurrence to buy."""

    occurrence_id: str
    quantity: int = Field(..., ge=1, le=10)


class StartCheckoutRequest(BaseModel):
    """Request schema for a buy-now checkout."""

    line_items: List[LineItemRequest] = Field(..., min_length=1, max_length=20)


class SessionIdRequest(BaseModel):
    """Request schema addressing one checkout session."""

    session_id: str


class ApprovalReturnRequest(BaseModel):
    """Request schema for the buyer's return from the gateway approval page."""

    session_id: str
    gateway_order_id: Optional[str] = Field(None, description="The gateway's order token, if passed back")


class LineItem(BaseModel):
    """Line item response schema."""

    occurrence_id: str
    quantity: int
    unit_price: Money


class CheckoutSession(BaseModel):
    """Checkout session response schema."""

    id: str
    status: str
    source: str
    total: Money
    approve_url: Optional[str]
    gateway_order_id: Optional[str]
    deadline_at: datetime
    failure_reason: Optional[str] = None
    line_items: List[LineItem]
    bookings: List[Booking]
