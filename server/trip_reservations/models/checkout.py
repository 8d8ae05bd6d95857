"""Checkout session model definitions."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ..core.clock import utcnow
from ..core.database import Base


class CheckoutStatus(str, Enum):
    """Checkout session status enumeration."""
    BUILDING = "BUILDING"
    PENDING_GATEWAY_APPROVAL = "PENDING_GATEWAY_APPROVAL"
    CAPTURING = "CAPTURING"
    SETTLED = "SETTLED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


TERMINAL_CHECKOUT_STATUSES = frozenset({
    CheckoutStatus.SETTLED,
    CheckoutStatus.FAILED,
    CheckoutStatus.EXPIRED,
    CheckoutStatus.CANCELLED,
})


class CheckoutSource(str, Enum):
    """Where the line items of a checkout came from."""
    BUY_NOW = "BUY_NOW"
    CART = "CART"


class CheckoutSession(Base):
    """One buyer's attempt to pay for a set of line items."""

    __tablename__ = "checkout_sessions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    buyer_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    source: Mapped[CheckoutSource] = mapped_column(String(20), nullable=False, default=CheckoutSource.BUY_NOW)
    status: Mapped[CheckoutStatus] = mapped_column(
        String(32),
        nullable=False,
        default=CheckoutStatus.BUILDING,
        index=True
    )

    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False)

    # Gateway references
    gateway_order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    approve_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    capture_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    deadline_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    settled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("total_amount >= 0", name="ck_checkout_total_non_negative"),
        CheckConstraint("length(buyer_id) > 0", name="ck_checkout_buyer_not_empty"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_CHECKOUT_STATUSES

    def __repr__(self) -> str:
        return (
            f"<CheckoutSession(id={self.id}, buyer_id='{self.buyer_id}', status={self.status}, "
            f"total={self.total_amount} {self.currency}, deadline_at={self.deadline_at})>"
        )


class CheckoutLineItem(Base):
    """Seats of one occurrence requested within a checkout session."""

    __tablename__ = "checkout_line_items"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    session_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("checkout_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)

    occurrence_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("trip_occurrences.id"),
        nullable=False,
        index=True
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_amount: Mapped[int] = mapped_column(Integer, nullable=False)

    # Current ledger hold backing this line; replaced if the hold is re-taken
    hold_id: Mapped[Optional[UUID]] = mapped_column(Uuid, ForeignKey("ledger_holds.id"), nullable=True)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_line_item_quantity_positive"),
        CheckConstraint("unit_amount >= 0", name="ck_line_item_amount_non_negative"),
    )

    @property
    def amount(self) -> int:
        return self.unit_amount * self.quantity

    def __repr__(self) -> str:
        return (
            f"<CheckoutLineItem(session_id={self.session_id}, occurrence_id={self.occurrence_id}, "
            f"quantity={self.quantity}, hold_id={self.hold_id})>"
        )
