"""Cart item model definition."""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ..core.clock import utcnow
from ..core.database import Base


class CartItem(Base):
    """Seats a buyer intends to purchase later."""

    __tablename__ = "cart_items"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    buyer_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    occurrence_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("trip_occurrences.id", ondelete="CASCADE"),
        nullable=False
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    added_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_cart_quantity_positive"),
        UniqueConstraint("buyer_id", "occurrence_id", name="uq_cart_buyer_occurrence"),
    )

    def __repr__(self) -> str:
        return f"<CartItem(buyer_id='{self.buyer_id}', occurrence_id={self.occurrence_id}, quantity={self.quantity})>"
