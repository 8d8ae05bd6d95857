"""Booking model definition."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ..core.clock import utcnow
from ..core.database import Base


class BookingStatus(str, Enum):
    """Booking status enumeration."""
    PENDING = "PENDING"
    AWAITING_CAPTURE = "AWAITING_CAPTURE"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    FAILED = "FAILED"


class Booking(Base):
    """A buyer's reservation of seats on one occurrence."""

    __tablename__ = "bookings"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Assigned at confirmation
    code: Mapped[Optional[str]] = mapped_column(String(16), nullable=True, unique=True, index=True)

    occurrence_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("trip_occurrences.id"),
        nullable=False,
        index=True
    )
    checkout_session_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("checkout_sessions.id"),
        nullable=False,
        index=True
    )
    hold_id: Mapped[Optional[UUID]] = mapped_column(Uuid, ForeignKey("ledger_holds.id"), nullable=True)

    buyer_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    status: Mapped[BookingStatus] = mapped_column(
        String(20),
        nullable=False,
        default=BookingStatus.PENDING,
        index=True
    )
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_booking_quantity_positive"),
        CheckConstraint("amount >= 0", name="ck_booking_amount_non_negative"),
        CheckConstraint("length(buyer_id) > 0", name="ck_booking_buyer_not_empty"),
        UniqueConstraint("occurrence_id", "checkout_session_id", name="uq_booking_occurrence_session"),
    )

    def __repr__(self) -> str:
        return (
            f"<Booking(id={self.id}, code='{self.code}', occurrence_id={self.occurrence_id}, "
            f"quantity={self.quantity}, status={self.status})>"
        )
