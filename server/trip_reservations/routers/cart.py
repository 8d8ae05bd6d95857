"""Cart router."""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.dependencies import BuyerId, DatabaseSession
from ..schemas.cart import AddCartItemRequest, Cart, CartItem, RemoveCartItemRequest
from ..services.cart_service import CartService
from .common import json_response, parse_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/cart", tags=["cart"])


async def _cart_response(service: CartService, buyer_id: str) -> JSONResponse:
    items = await service.list_items(buyer_id)
    return json_response(Cart(items=[
        CartItem(occurrence_id=str(item.occurrence_id), quantity=item.quantity, added_at=item.added_at)
        for item in items
    ]))


@router.post("/add", response_model=Cart)
async def add_cart_item(
    request: AddCartItemRequest,
    db: AsyncSession = DatabaseSession,
    buyer_id: str = BuyerId,
) -> JSONResponse:
    """Add seats to the cart. Seats are only held once checkout starts."""
    service = CartService(db)
    await service.add_item(buyer_id, parse_id(request.occurrence_id, "occurrence_id"), request.quantity)
    return await _cart_response(service, buyer_id)


@router.post("/remove", response_model=Cart)
async def remove_cart_item(
    request: RemoveCartItemRequest,
    db: AsyncSession = DatabaseSession,
    buyer_id: str = BuyerId,
) -> JSONResponse:
    service = CartService(db)
    await service.remove_item(buyer_id, parse_id(request.occurrence_id, "occurrence_id"))
    return await _cart_response(service, buyer_id)


@router.post("/list", response_model=Cart)
async def list_cart(
    db: AsyncSession = DatabaseSession,
    buyer_id: str = BuyerId,
) -> JSONResponse:
    return await _cart_response(CartService(db), buyer_id)
