"""Checkout router: starting, approving, cancelling and reading checkout sessions."""

import logging
from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.dependencies import BuyerId, DatabaseSession, Gateway, Notifier
from ..integrations.payment_gateway import PaymentGateway
from ..models.checkout import CheckoutSession as CheckoutSessionModel
from ..schemas.checkout import (
    ApprovalReturnRequest,
    CheckoutSession,
    LineItem,
    SessionIdRequest,
    StartCheckoutRequest,
)
from ..schemas.common import Money
from ..services.checkout_orchestrator import CheckoutLine, CheckoutOrchestrator
from ..services.notification_service import ConfirmationNotifier
from .booking import _convert_booking_to_schema
from .common import IDEMPOTENCY_KEY_DEPENDENCY, enum_value, handle_idempotent_operation, json_response, parse_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/checkout", tags=["checkout"])


async def _convert_session_to_schema(
    orchestrator: CheckoutOrchestrator,
    session: CheckoutSessionModel,
) -> CheckoutSession:
    """Convert a checkout session with its line items and bookings to schema."""
    line_items = await orchestrator.get_line_items(session.id)
    bookings = await orchestrator.bookings.list_for_session(session.id)
    return CheckoutSession(
        id=str(session.id),
        status=enum_value(session.status),
        source=enum_value(session.source),
        total=Money(amount=session.total_amount, currency=session.currency),
        approve_url=session.approve_url,
        gateway_order_id=session.gateway_order_id,
        deadline_at=session.deadline_at,
        failure_reason=session.failure_reason,
        line_items=[
            LineItem(
                occurrence_id=str(item.occurrence_id),
                quantity=item.quantity,
                unit_price=Money(amount=item.unit_amount, currency=session.currency),
            )
            for item in line_items
        ],
        bookings=[_convert_booking_to_schema(booking) for booking in bookings],
    )


async def _session_payload(orchestrator: CheckoutOrchestrator, session: CheckoutSessionModel) -> dict[str, Any]:
    return (await _convert_session_to_schema(orchestrator, session)).model_dump(mode="json")


@router.post("/start", response_model=CheckoutSession)
async def start_checkout(
    request: StartCheckoutRequest,
    db: AsyncSession = DatabaseSession,
    buyer_id: str = BuyerId,
    gateway: PaymentGateway = Gateway,
    notifier: ConfirmationNotifier = Notifier,
    idempotency_key: str = IDEMPOTENCY_KEY_DEPENDENCY,
) -> JSONResponse:
    """
    Hold seats for every line item and open a gateway order.

    The response carries the approve URL the buyer must visit. Either every line
    is held or none is. This operation is idempotent based on the Idempotency-Key header.
    """
    orchestrator = CheckoutOrchestrator(db, gateway, notifier=notifier)
    lines = [
        CheckoutLine(parse_id(item.occurrence_id, "occurrence_id"), item.quantity)
        for item in request.line_items
    ]

    async def operation():
        session = await orchestrator.start_checkout(buyer_id, lines)
        logger.info(
            "Checkout started via API",
            extra={"session_id": str(session.id), "buyer_id": buyer_id, "idempotency_key": idempotency_key}
        )
        return await _session_payload(orchestrator, session)

    return await handle_idempotent_operation(
        method="checkout/start",
        idempotency_key=idempotency_key,
        buyer_id=buyer_id,
        request_body=request.model_dump(),
        operation_func=operation,
        db=db
    )


@router.post("/start-cart", response_model=CheckoutSession)
async def start_cart_checkout(
    db: AsyncSession = DatabaseSession,
    buyer_id: str = BuyerId,
    gateway: PaymentGateway = Gateway,
    notifier: ConfirmationNotifier = Notifier,
    idempotency_key: str = IDEMPOTENCY_KEY_DEPENDENCY,
) -> JSONResponse:
    """Check out the buyer's cart. The cart is emptied once payment settles."""
    orchestrator = CheckoutOrchestrator(db, gateway, notifier=notifier)

    async def operation():
        session = await orchestrator.start_cart_checkout(buyer_id)
        return await _session_payload(orchestrator, session)

    return await handle_idempotent_operation(
        method="checkout/start-cart",
        idempotency_key=idempotency_key,
        buyer_id=buyer_id,
        request_body={},
        operation_func=operation,
        db=db
    )


@router.post("/return", response_model=CheckoutSession)
async def approval_return(
    request: ApprovalReturnRequest,
    db: AsyncSession = DatabaseSession,
    buyer_id: str = BuyerId,
    gateway: PaymentGateway = Gateway,
    notifier: ConfirmationNotifier = Notifier,
    idempotency_key: str = IDEMPOTENCY_KEY_DEPENDENCY,
) -> JSONResponse:
    """
    Capture payment after the buyer approved the order and confirm the bookings.

    A session past its deadline is expired without charging the buyer.
    """
    orchestrator = CheckoutOrchestrator(db, gateway, notifier=notifier)
    session_id = parse_id(request.session_id, "session_id")

    async def operation():
        session = await orchestrator.handle_approval_return(
            session_id, buyer_id=buyer_id, gateway_order_id=request.gateway_order_id
        )
        return await _session_payload(orchestrator, session)

    return await handle_idempotent_operation(
        method="checkout/return",
        idempotency_key=idempotency_key,
        buyer_id=buyer_id,
        request_body=request.model_dump(),
        operation_func=operation,
        db=db
    )


@router.post("/cancel", response_model=CheckoutSession)
async def cancel_checkout(
    request: SessionIdRequest,
    db: AsyncSession = DatabaseSession,
    buyer_id: str = BuyerId,
    gateway: PaymentGateway = Gateway,
) -> JSONResponse:
    """
    Abandon a checkout and release its holds.

    Cancelling an already settled checkout refunds its bookings.
    """
    orchestrator = CheckoutOrchestrator(db, gateway)
    session = await orchestrator.cancel_checkout(parse_id(request.session_id, "session_id"), buyer_id=buyer_id)
    return json_response(await _convert_session_to_schema(orchestrator, session))


@router.post("/get", response_model=CheckoutSession)
async def get_checkout(
    request: SessionIdRequest,
    db: AsyncSession = DatabaseSession,
    buyer_id: str = BuyerId,
    gateway: PaymentGateway = Gateway,
) -> JSONResponse:
    orchestrator = CheckoutOrchestrator(db, gateway)
    session = await orchestrator.get_session_or_raise(parse_id(request.session_id, "session_id"), buyer_id)
    return json_response(await _convert_session_to_schema(orchestrator, session))
