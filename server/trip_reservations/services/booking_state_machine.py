"""Booking lifecycle: allowed transitions and the refund workflow."""

import logging
import secrets
import string
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import Clock, utcnow
from ..core.exceptions import CancellationWindowClosedError, InvalidStateTransitionError, NotFoundError
from ..core.locks import KeyedLock
from ..core.observability import metrics_collector
from ..models.booking import Booking, BookingStatus
from ..models.trip import TripOccurrence
from .availability_ledger import AvailabilityLedger

logger = logging.getLogger(__name__)

TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({
        BookingStatus.AWAITING_CAPTURE,
        BookingStatus.CANCELLED,
        BookingStatus.FAILED,
    }),
    BookingStatus.AWAITING_CAPTURE: frozenset({
        BookingStatus.CONFIRMED,
        BookingStatus.CANCELLED,
        BookingStatus.FAILED,
    }),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.REFUNDED}),
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.REFUNDED: frozenset(),
    BookingStatus.FAILED: frozenset(),
}


def generate_booking_code(length: int = 8) -> str:
    """Generate a random booking confirmation code."""
    alphabet = string.ascii_uppercase + string.digits
    return ''.join(secrets.choice(alphabet) for _ in range(length))


class BookingStateMachine:
    """
    Sole writer of booking status.

    Status changes are staged on the session; the checkout orchestrator commits them
    together with the matching session and ledger changes. Re-applying the current
    status is a no-op so retried workflows stay idempotent.
    """

    def __init__(
        self,
        db: AsyncSession,
        clock: Clock = utcnow,
        locks: Optional[KeyedLock] = None,
        code_generator: Callable[[], str] = generate_booking_code,
    ):
        self.db = db
        self.clock = clock
        self.code_generator = code_generator
        self.ledger = AvailabilityLedger(db, clock=clock, locks=locks)

    def can_transition(self, current: BookingStatus, target: BookingStatus) -> bool:
        return current == target or target in TRANSITIONS[BookingStatus(current)]

    def _transition(self, booking: Booking, target: BookingStatus, reason: Optional[str] = None) -> bool:
        current = BookingStatus(booking.status)
        if current == target:
            return False
        if target not in TRANSITIONS[current]:
            logger.error(
                "Rejected booking transition",
                extra={
                    "booking_id": str(booking.id),
                    "from_status": current.value,
                    "to_status": target.value,
                }
            )
            raise InvalidStateTransitionError(str(booking.id), current.value, target.value)

        booking.status = target
        if reason:
            booking.cancellation_reason = reason
        logger.info(
            "Booking transitioned",
            extra={
                "booking_id": str(booking.id),
                "from_status": current.value,
                "to_status": target.value,
                "reason": reason,
            }
        )
        return True

    async def create_pending(
        self,
        checkout_session_id: UUID,
        occurrence_id: UUID,
        buyer_id: str,
        quantity: int,
        amount: int,
        currency: str,
        hold_id: Optional[UUID] = None,
    ) -> Booking:
        """Stage a new booking in PENDING."""
        booking = Booking(
            checkout_session_id=checkout_session_id,
            occurrence_id=occurrence_id,
            buyer_id=buyer_id,
            quantity=quantity,
            amount=amount,
            currency=currency,
            hold_id=hold_id,
            status=BookingStatus.PENDING,
        )
        self.db.add(booking)
        await self.db.flush()
        return booking

    async def mark_awaiting_capture(self, booking: Booking) -> bool:
        return self._transition(booking, BookingStatus.AWAITING_CAPTURE)

    async def confirm(self, booking: Booking, hold_id: Optional[UUID] = None) -> bool:
        """Move a booking to CONFIRMED and assign its confirmation code."""
        changed = self._transition(booking, BookingStatus.CONFIRMED)
        if changed:
            if hold_id is not None:
                booking.hold_id = hold_id
            booking.confirmed_at = self.clock()
            booking.code = await self._unique_code()
            metrics_collector.record_booking_confirmed()
        return changed

    async def cancel(self, booking: Booking, reason: Optional[str] = None) -> bool:
        return self._transition(booking, BookingStatus.CANCELLED, reason)

    async def fail(self, booking: Booking, reason: Optional[str] = None) -> bool:
        return self._transition(booking, BookingStatus.FAILED, reason)

    async def _unique_code(self) -> str:
        code = self.code_generator()
        while (await self.db.execute(select(Booking.id).where(Booking.code == code))).first() is not None:
            code = self.code_generator()
        return code

    async def refund(
        self,
        booking_id: UUID,
        buyer_id: Optional[str] = None,
        reason: Optional[str] = None,
        enforce_window: bool = True,
    ) -> Booking:
        """
        Cancel a confirmed booking and give its seats back to the ledger.

        The status change and the ledger release commit together. Refunding a
        refunded booking returns it unchanged.

        Raises:
            CancellationWindowClosedError: If the trip starts within its cancellation limit
            InvalidStateTransitionError: If the booking is not confirmed
        """
        booking = await self.get_booking_or_raise(booking_id, buyer_id=buyer_id)
        if booking.status == BookingStatus.REFUNDED:
            return booking
        if booking.status != BookingStatus.CONFIRMED:
            self._transition(booking, BookingStatus.REFUNDED)

        occurrence = await self.db.get(TripOccurrence, booking.occurrence_id)
        if enforce_window and occurrence is not None:
            days_left = (occurrence.starts_on - self.clock().date()).days
            if days_left < occurrence.cancellation_days_limit:
                logger.warning(
                    "Refund rejected - cancellation window closed",
                    extra={
                        "booking_id": str(booking_id),
                        "days_left": days_left,
                        "cancellation_days_limit": occurrence.cancellation_days_limit,
                    }
                )
                raise CancellationWindowClosedError(str(booking_id), occurrence.cancellation_days_limit)

        occurrence_id, quantity = booking.occurrence_id, booking.quantity
        # Only one concurrent refund may win the CONFIRMED -> REFUNDED edge
        result = await self.db.execute(
            update(Booking)
            .where(Booking.id == booking_id, Booking.status == BookingStatus.CONFIRMED)
            .values(status=BookingStatus.REFUNDED, cancellation_reason=reason, updated_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await self.db.rollback()
            booking = await self.get_booking_or_raise(booking_id, refresh=True)
            if booking.status == BookingStatus.REFUNDED:
                return booking
            raise InvalidStateTransitionError(str(booking_id), BookingStatus(booking.status).value, BookingStatus.REFUNDED.value)

        await self.ledger.release_confirmed(occurrence_id, quantity)
        metrics_collector.record_booking_refunded()
        logger.info(
            "Booking refunded",
            extra={"booking_id": str(booking_id), "occurrence_id": str(occurrence_id), "quantity": quantity}
        )
        return await self.get_booking_or_raise(booking_id, refresh=True)

    async def get_booking_or_raise(
        self,
        booking_id: UUID,
        buyer_id: Optional[str] = None,
        refresh: bool = False,
    ) -> Booking:
        """
        Get booking by ID, optionally scoped to its buyer.

        Raises:
            NotFoundError: If the booking does not exist or belongs to another buyer
        """
        stmt = select(Booking).where(Booking.id == booking_id)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        booking = (await self.db.execute(stmt)).scalar_one_or_none()
        if booking is None or (buyer_id is not None and booking.buyer_id != buyer_id):
            logger.warning("Booking not found", extra={"booking_id": str(booking_id)})
            raise NotFoundError(resource_type="booking", resource_id=str(booking_id))
        return booking

    async def list_for_session(self, checkout_session_id: UUID) -> list[Booking]:
        stmt = (
            select(Booking)
            .where(Booking.checkout_session_id == checkout_session_id)
            .order_by(Booking.created_at, Booking.id)
            .execution_options(populate_existing=True)
        )
        return list((await self.db.execute(stmt)).scalars())
