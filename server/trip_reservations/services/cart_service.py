"""Cart service: seats a buyer collects before checking out."""

import logging
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.exceptions import NotFoundError, ValidationError
from ..models.cart import CartItem
from ..models.trip import TripOccurrence

logger = logging.getLogger(__name__)

MAX_SEATS_PER_ITEM = 10


class CartService:
    """Service for cart operations."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def add_item(self, buyer_id: str, occurrence_id: UUID, quantity: int) -> CartItem:
        """Add seats to the cart, merging with an existing line for the same occurrence."""
        if quantity <= 0:
            raise ValidationError(detail="Quantity must be positive")
        if await self.db.get(TripOccurrence, occurrence_id) is None:
            raise NotFoundError(resource_type="occurrence", resource_id=str(occurrence_id))

        stmt = select(CartItem).where(CartItem.buyer_id == buyer_id, CartItem.occurrence_id == occurrence_id)
        item = (await self.db.execute(stmt)).scalar_one_or_none()
        current = item.quantity if item is not None else 0
        if current + quantity > MAX_SEATS_PER_ITEM:
            raise ValidationError(detail=f"At most {MAX_SEATS_PER_ITEM} seats per trip can be added to the cart")
        if item is None:
            item = CartItem(buyer_id=buyer_id, occurrence_id=occurrence_id, quantity=quantity)
            self.db.add(item)
        else:
            item.quantity += quantity
        await self.db.commit()

        logger.info(
            "Cart item added",
            extra={"buyer_id": buyer_id, "occurrence_id": str(occurrence_id), "quantity": item.quantity}
        )
        return item

    async def remove_item(self, buyer_id: str, occurrence_id: UUID) -> None:
        result = await self.db.execute(
            delete(CartItem).where(CartItem.buyer_id == buyer_id, CartItem.occurrence_id == occurrence_id)
        )
        await self.db.commit()
        if result.rowcount == 0:
            raise NotFoundError(resource_type="cart_item", resource_id=str(occurrence_id))

    async def list_items(self, buyer_id: str) -> list[CartItem]:
        stmt = select(CartItem).where(CartItem.buyer_id == buyer_id).order_by(CartItem.added_at, CartItem.id)
        return list((await self.db.execute(stmt)).scalars())

    async def clear(self, buyer_id: str) -> int:
        """Empty the cart. Changes are left for the caller to commit."""
        result = await self.db.execute(delete(CartItem).where(CartItem.buyer_id == buyer_id))
        return result.rowcount
