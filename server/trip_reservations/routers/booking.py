"""Booking router for reading and cancelling bookings."""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.dependencies import BuyerId, DatabaseSession, Gateway
from ..integrations.payment_gateway import PaymentGateway
from ..models.booking import Booking as BookingModel
from ..schemas.booking import Booking, CancelBookingRequest, GetBookingRequest
from ..services.booking_state_machine import BookingStateMachine
from ..services.checkout_orchestrator import CheckoutOrchestrator
from .common import enum_value, json_response, parse_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/booking", tags=["booking"])


def _convert_booking_to_schema(booking_model: BookingModel) -> Booking:
    """Convert booking model to schema."""
    return Booking(
        id=str(booking_model.id),
        code=booking_model.code,
        occurrence_id=str(booking_model.occurrence_id),
        checkout_session_id=str(booking_model.checkout_session_id),
        quantity=booking_model.quantity,
        amount=booking_model.amount,
        currency=booking_model.currency,
        status=enum_value(booking_model.status),
        confirmed_at=booking_model.confirmed_at,
        created_at=booking_model.created_at,
    )


@router.post("/get", response_model=Booking)
async def get_booking(
    request: GetBookingRequest,
    db: AsyncSession = DatabaseSession,
    buyer_id: str = BuyerId,
) -> JSONResponse:
    """
    Get booking details.

    This is a read operation and does not require idempotency.
    """
    booking = await BookingStateMachine(db).get_booking_or_raise(
        parse_id(request.booking_id, "booking_id"), buyer_id=buyer_id
    )
    return json_response(_convert_booking_to_schema(booking))


@router.post("/cancel", response_model=Booking)
async def cancel_booking(
    request: CancelBookingRequest,
    db: AsyncSession = DatabaseSession,
    buyer_id: str = BuyerId,
    gateway: PaymentGateway = Gateway,
) -> JSONResponse:
    """
    Cancel a booking.

    Confirmed bookings are refunded while the trip's cancellation window is
    open. Cancelling twice returns the booking unchanged.
    """
    booking_id = parse_id(request.booking_id, "booking_id")
    booking = await CheckoutOrchestrator(db, gateway).cancel_booking(booking_id, buyer_id=buyer_id, reason=request.reason)

    logger.info(
        "Booking cancelled via API",
        extra={"booking_id": str(booking_id), "buyer_id": buyer_id, "status": enum_value(booking.status)}
    )
    return json_response(_convert_booking_to_schema(booking))
