"""Waitlist entry model definition."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ..core.clock import utcnow
from ..core.database import Base


class WaitlistStatus(str, Enum):
    """Waitlist entry status enumeration."""
    WAITING = "WAITING"
    OFFERED = "OFFERED"
    BOOKED = "BOOKED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


ACTIVE_WAITLIST_STATUSES = frozenset({WaitlistStatus.WAITING, WaitlistStatus.OFFERED})


class WaitlistEntry(Base):
    """A buyer queued for seats on a full occurrence."""

    __tablename__ = "waitlist_entries"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    occurrence_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("trip_occurrences.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    buyer_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[WaitlistStatus] = mapped_column(
        String(20),
        nullable=False,
        default=WaitlistStatus.WAITING,
        index=True
    )

    # Queue order; reassigned when a buyer re-joins after leaving
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    requested_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    # Offer bookkeeping
    hold_id: Mapped[Optional[UUID]] = mapped_column(Uuid, ForeignKey("ledger_holds.id"), nullable=True)
    offered_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    offer_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # Checkout session that adopted the offer hold; one checkout per offer
    checkout_session_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True, index=True)

    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_waitlist_quantity_positive"),
        CheckConstraint("length(buyer_id) > 0", name="ck_waitlist_buyer_not_empty"),
        UniqueConstraint("occurrence_id", "buyer_id", name="uq_waitlist_occurrence_buyer"),
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_WAITLIST_STATUSES

    def __repr__(self) -> str:
        return (
            f"<WaitlistEntry(id={self.id}, occurrence_id={self.occurrence_id}, buyer_id='{self.buyer_id}', "
            f"quantity={self.quantity}, status={self.status}, sequence={self.sequence})>"
        )
