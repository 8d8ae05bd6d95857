"""Cart Pydantic schemas."""

from datetime import datetime
from typing import List

from pydantic import BaseModel, Field


class AddCartItemRequest(BaseModel):
    """Request schema for adding seats to the cart."""

    occurrence_id: str
    quantity: int = Field(1, ge=1, le=10)


class RemoveCartItemRequest(BaseModel):
    """Request schema for removing an occurrence from the cart."""

    occurrence_id: str


class CartItem(BaseModel):
    """Cart item response schema."""

    occurrence_id: str
    quantity: int
    added_at: datetime


class Cart(BaseModel):
    """Cart response schema."""

    items: List[CartItem]
