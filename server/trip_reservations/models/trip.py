"""Trip occurrence model definition."""

from datetime import date, datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from ..core.clock import utcnow
from ..core.database import Base


class OccurrenceStatus(str, Enum):
    """Occurrence status enumeration."""
    ACTIVE = "ACTIVE"
    RETIRED = "RETIRED"


# Fields every member of a series carries identically and that bulk edits may change
SHARED_FIELDS = frozenset({
    "name",
    "description",
    "destination",
    "country",
    "image_urls",
    "price_amount",
    "price_currency",
    "cancellation_days_limit",
    "is_visible",
})

# Fields that belong to one dated instance only
PER_OCCURRENCE_FIELDS = frozenset({"starts_on", "ends_on", "capacity", "status"})


class TripOccurrence(Base):
    """One dated, independently bookable instance of a trip."""

    __tablename__ = "trip_occurrences"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Null for standalone trips
    series_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True, index=True)

    # Shared fields
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    destination: Mapped[str] = mapped_column(String(200), nullable=False)
    country: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    image_urls: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    price_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    price_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    cancellation_days_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=7)
    is_visible: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Per-occurrence fields
    starts_on: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    ends_on: Mapped[date] = mapped_column(Date, nullable=False)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[OccurrenceStatus] = mapped_column(
        String(20),
        nullable=False,
        default=OccurrenceStatus.ACTIVE,
        index=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("capacity >= 0", name="ck_occurrence_capacity_non_negative"),
        CheckConstraint("price_amount >= 0", name="ck_occurrence_price_non_negative"),
        CheckConstraint("ends_on > starts_on", name="ck_occurrence_dates_ordered"),
        CheckConstraint("cancellation_days_limit >= 0", name="ck_occurrence_cancellation_days"),
        CheckConstraint("length(name) > 0", name="ck_occurrence_name_not_empty"),
        UniqueConstraint("series_id", "starts_on", name="uq_occurrence_series_start"),
    )

    @property
    def is_bookable_status(self) -> bool:
        return self.status == OccurrenceStatus.ACTIVE and self.is_visible

    def __repr__(self) -> str:
        return (
            f"<TripOccurrence(id={self.id}, series_id={self.series_id}, name='{self.name}', "
            f"starts_on={self.starts_on}, capacity={self.capacity}, status={self.status})>"
        )
