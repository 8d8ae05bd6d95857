"""Trip series and occurrence Pydantic schemas."""

from datetime import date, datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field, model_validator

from .common import Money


class DateRange(BaseModel):
    """Start and end day of one occurrence."""

    starts_on: date = Field(..., description="First day of the trip")
    ends_on: date = Field(..., description="Last day of the trip")


class TripTemplate(BaseModel):
    """Shared fields and initial capacity for new occurrences."""

    name: str = Field(..., min_length=1, max_length=200)
    description: str = Field("", max_length=10000)
    destination: str = Field(..., min_length=1, max_length=200)
    country: str = Field("", max_length=100)
    image_urls: List[str] = Field(default_factory=list)
    price: Money
    cancellation_days_limit: int = Field(7, ge=0, le=365, description="Days before start after which refunds close")
    is_visible: bool = True
    capacity: int = Field(..., ge=0, le=10000, description="Seats per occurrence")


class CreateSeriesRequest(BaseModel):
    """Request schema for creating a series."""

    template: TripTemplate
    dates: List[DateRange] = Field(default_factory=list, description="One entry per occurrence")


class CreateOccurrenceRequest(BaseModel):
    """Request schema for creating a standalone occurrence."""

    template: TripTemplate
    dates: DateRange


class ExtendSeriesRequest(BaseModel):
    """Request schema for adding occurrences to a series."""

    series_id: str
    dates: List[DateRange] = Field(default_factory=list)
    capacity: Optional[int] = Field(None, ge=0, le=10000)


class BulkEditRequest(BaseModel):
    """Request schema for editing shared fields across a series.

    ``changes`` is kept as a free-form mapping so that per-occurrence fields can be
    reported back with a precise error instead of being dropped silently.
    """

    series_id: str
    changes: dict[str, Any] = Field(..., description="Field name to new value")

    @model_validator(mode="after")
    def flatten_price(self) -> "BulkEditRequest":
        price = self.changes.pop("price", None)
        if price is not None:
            money = Money.model_validate(price)
            self.changes["price_amount"] = money.amount
            self.changes["price_currency"] = money.currency
        return self


class EditOccurrenceRequest(BaseModel):
    """Request schema for editing one occurrence."""

    occurrence_id: str
    capacity: Optional[int] = Field(None, ge=0, le=10000)
    dates: Optional[DateRange] = None


class OccurrenceIdRequest(BaseModel):
    """Request schema for operations addressing one occurrence."""

    occurrence_id: str


class SeriesIdRequest(BaseModel):
    """Request schema for operations addressing one series."""

    series_id: str


class Occurrence(BaseModel):
    """Occurrence response schema."""

    id: str
    series_id: Optional[str]
    name: str
    description: str
    destination: str
    country: str
    image_urls: List[str]
    price: Money
    cancellation_days_limit: int
    is_visible: bool
    starts_on: date
    ends_on: date
    capacity: int
    status: str
    updated_at: datetime


class Series(BaseModel):
    """Series response schema."""

    series_id: str
    occurrences: List[Occurrence]
