"""Availability ledger model definitions."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ..core.clock import utcnow
from ..core.database import Base


class HoldStatus(str, Enum):
    """Ledger hold status enumeration."""
    ACTIVE = "ACTIVE"
    RELEASED = "RELEASED"
    EXPIRED = "EXPIRED"
    CONFIRMED = "CONFIRMED"


class AvailabilityRecord(Base):
    """Seat counters of one occurrence."""

    __tablename__ = "availability_records"

    occurrence_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("trip_occurrences.id", ondelete="CASCADE"),
        primary_key=True
    )

    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    confirmed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    held_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("capacity >= 0", name="ck_availability_capacity_non_negative"),
        CheckConstraint("confirmed_count >= 0", name="ck_availability_confirmed_non_negative"),
        CheckConstraint("held_count >= 0", name="ck_availability_held_non_negative"),
        CheckConstraint(
            "confirmed_count + held_count <= capacity",
            name="ck_availability_within_capacity"
        ),
    )

    @property
    def remaining(self) -> int:
        return self.capacity - self.confirmed_count - self.held_count

    def __repr__(self) -> str:
        return (
            f"<AvailabilityRecord(occurrence_id={self.occurrence_id}, capacity={self.capacity}, "
            f"confirmed={self.confirmed_count}, held={self.held_count})>"
        )


class LedgerHold(Base):
    """Time-limited claim on seats of one occurrence."""

    __tablename__ = "ledger_holds"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    occurrence_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("trip_occurrences.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    buyer_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    status: Mapped[HoldStatus] = mapped_column(
        String(20),
        nullable=False,
        default=HoldStatus.ACTIVE,
        index=True
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_hold_quantity_positive"),
    )

    def __repr__(self) -> str:
        return (
            f"<LedgerHold(id={self.id}, occurrence_id={self.occurrence_id}, "
            f"quantity={self.quantity}, status={self.status}, expires_at={self.expires_at})>"
        )


class CapacityAdjustment(Base):
    """Audit trail of capacity changes made to an occurrence."""

    __tablename__ = "capacity_adjustments"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    occurrence_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("trip_occurrences.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    previous_capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    new_capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    actor: Mapped[str] = mapped_column(String(128), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False, default="")

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("new_capacity >= 0", name="ck_adjustment_capacity_non_negative"),
    )

    @property
    def delta(self) -> int:
        return self.new_capacity - self.previous_capacity

    def __repr__(self) -> str:
        return (
            f"<CapacityAdjustment(occurrence_id={self.occurrence_id}, "
            f"{self.previous_capacity}->{self.new_capacity}, actor='{self.actor}')>"
        )
