"""Checkout orchestration: holds, gateway order, capture and settlement."""

import logging
from datetime import timedelta
from typing import NamedTuple, Optional
from urllib.parse import urlencode
from uuid import UUID, uuid4

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import Clock, utcnow
from ..core.config import settings
from ..core.exceptions import (
    BookingLimitExceededError,
    CapacityExceededError,
    ConflictError,
    GatewayCaptureFailedError,
    HoldExpiredError,
    InsufficientAvailabilityError,
    NotFoundError,
    OccurrenceNotBookableError,
    ProblemDetailsException,
    SessionExpiredError,
    ValidationError,
)
from ..core.locks import KeyedLock
from ..core.observability import metrics_collector
from ..integrations.payment_gateway import CaptureResult, PaymentGateway
from ..models.booking import Booking, BookingStatus
from ..models.checkout import CheckoutLineItem, CheckoutSession, CheckoutSource, CheckoutStatus
from ..models.trip import OccurrenceStatus, TripOccurrence
from .availability_ledger import AvailabilityLedger
from .booking_state_machine import BookingStateMachine
from .cart_service import CartService
from .notification_service import ConfirmationNotifier
from .waitlist_promoter import WaitlistPromoter

logger = logging.getLogger(__name__)

OPEN_STATUSES = (CheckoutStatus.BUILDING, CheckoutStatus.PENDING_GATEWAY_APPROVAL)

CAPTURED_WITHOUT_CAPACITY = "captured_without_capacity"


class CheckoutLine(NamedTuple):
    """Seats of one occurrence requested by the buyer."""

    occurrence_id: UUID
    quantity: int


class _PricedLine(NamedTuple):
    occurrence_id: UUID
    quantity: int
    unit_amount: int


def _with_session(url: str, session_id: UUID) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{urlencode({'session_id': str(session_id)})}"


def _describe(exc: Exception) -> str:
    if isinstance(exc, ProblemDetailsException):
        return exc.problem_details.get("detail") or exc.title
    return str(exc) or type(exc).__name__


class CheckoutOrchestrator:
    """
    Drives a checkout session from hold acquisition to settlement.

    Session lifecycle::

        BUILDING -> PENDING_GATEWAY_APPROVAL -> CAPTURING -> SETTLED
                 \\-> FAILED | EXPIRED | CANCELLED

    No ledger lock is held during gateway calls. The move into CAPTURING is a
    compare-and-set on the session row, so a capture is dispatched at most once
    per session and expiry can never race it.
    """

    def __init__(
        self,
        db: AsyncSession,
        gateway: Optional[PaymentGateway] = None,
        clock: Clock = utcnow,
        locks: Optional[KeyedLock] = None,
        notifier: Optional[ConfirmationNotifier] = None,
        hold_ttl: Optional[timedelta] = None,
        session_timeout: Optional[timedelta] = None,
        capture_hold_ttl: Optional[timedelta] = None,
        max_upcoming_bookings: Optional[int] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.clock = clock
        self.notifier = notifier or ConfirmationNotifier()
        self.hold_ttl = (
            timedelta(seconds=settings.hold_ttl_seconds) if hold_ttl is None else hold_ttl
        )
        self.session_timeout = (
            timedelta(seconds=settings.checkout_session_timeout_seconds)
            if session_timeout is None else session_timeout
        )
        self.capture_hold_ttl = (
            timedelta(seconds=settings.capture_hold_ttl_seconds)
            if capture_hold_ttl is None else capture_hold_ttl
        )
        self.max_upcoming_bookings = (
            settings.max_upcoming_bookings_per_buyer
            if max_upcoming_bookings is None else max_upcoming_bookings
        )

        self.ledger = AvailabilityLedger(db, clock=clock, locks=locks)
        self.bookings = BookingStateMachine(db, clock=clock, locks=locks)
        self.waitlist = WaitlistPromoter(db, clock=clock, locks=locks)
        self.cart = CartService(db)

    # Lookups

    async def get_session_or_raise(
        self,
        session_id: UUID,
        buyer_id: Optional[str] = None,
    ) -> CheckoutSession:
        """
        Get a checkout session, optionally scoped to its buyer.

        Raises:
            NotFoundError: If the session does not exist or belongs to another buyer
        """
        stmt = (
            select(CheckoutSession)
            .where(CheckoutSession.id == session_id)
            .execution_options(populate_existing=True)
        )
        session = (await self.db.execute(stmt)).scalar_one_or_none()
        if session is None or (buyer_id is not None and session.buyer_id != buyer_id):
            logger.warning("Checkout session not found", extra={"session_id": str(session_id)})
            raise NotFoundError(resource_type="checkout_session", resource_id=str(session_id))
        return session

    async def get_line_items(self, session_id: UUID) -> list[CheckoutLineItem]:
        stmt = (
            select(CheckoutLineItem)
            .where(CheckoutLineItem.session_id == session_id)
            .order_by(CheckoutLineItem.position)
            .execution_options(populate_existing=True)
        )
        return list((await self.db.execute(stmt)).scalars())

    # Start

    def _merge_lines(self, lines: list[CheckoutLine]) -> list[CheckoutLine]:
        merged: dict[UUID, int] = {}
        for line in lines:
            if line.quantity <= 0:
                raise ValidationError(detail="Line item quantity must be positive")
            merged[line.occurrence_id] = merged.get(line.occurrence_id, 0) + line.quantity
        return [CheckoutLine(occurrence_id, quantity) for occurrence_id, quantity in merged.items()]

    async def _price_lines(self, lines: list[CheckoutLine]) -> tuple[list[_PricedLine], str]:
        """Check every occurrence is on sale and return unit prices and the common currency."""
        today = self.clock().date()
        priced = []
        currencies = set()
        for line in lines:
            occurrence = await self.db.get(TripOccurrence, line.occurrence_id)
            if occurrence is None:
                raise NotFoundError(resource_type="occurrence", resource_id=str(line.occurrence_id))
            if occurrence.status != OccurrenceStatus.ACTIVE:
                raise OccurrenceNotBookableError(str(line.occurrence_id), "retired")
            if not occurrence.is_visible:
                raise OccurrenceNotBookableError(str(line.occurrence_id), "not on sale")
            if occurrence.starts_on <= today:
                raise OccurrenceNotBookableError(str(line.occurrence_id), "already started")
            currencies.add(occurrence.price_currency)
            priced.append(_PricedLine(line.occurrence_id, line.quantity, occurrence.price_amount))

        if len(currencies) > 1:
            raise ValidationError(
                detail="All trips in one checkout must be priced in the same currency",
                errors={"currencies": sorted(currencies)},
            )
        return priced, currencies.pop()

    async def _check_booking_limit(self, buyer_id: str, new_bookings: int) -> None:
        stmt = (
            select(func.count(Booking.id))
            .join(TripOccurrence, TripOccurrence.id == Booking.occurrence_id)
            .where(
                Booking.buyer_id == buyer_id,
                Booking.status == BookingStatus.CONFIRMED,
                TripOccurrence.starts_on > self.clock().date(),
            )
        )
        upcoming = (await self.db.execute(stmt)).scalar_one()
        if upcoming + new_bookings > self.max_upcoming_bookings:
            logger.warning(
                "Checkout rejected - upcoming booking limit",
                extra={"buyer_id": buyer_id, "upcoming": upcoming, "requested": new_bookings}
            )
            raise BookingLimitExceededError(buyer_id, self.max_upcoming_bookings)

    async def _acquire_holds(self, buyer_id: str, lines: list[_PricedLine], session_id: UUID) -> list[UUID]:
        """Hold every line or none. Adopted waitlist offers are kept, unclaimed, on failure."""
        hold_ids: list[UUID] = []
        taken: list[UUID] = []
        for line in lines:
            offered = await self.waitlist.claim_offer(line.occurrence_id, buyer_id, line.quantity, session_id)
            if offered is not None:
                hold_ids.append(offered)
                continue
            try:
                hold = await self.ledger.hold(line.occurrence_id, line.quantity, ttl=self.hold_ttl, buyer_id=buyer_id)
            except CapacityExceededError as exc:
                remaining = exc.problem_details["conflicting_resource"]["remaining"]
                await self._release_holds(taken)
                await self.waitlist.release_claims(session_id)
                raise InsufficientAvailabilityError(str(line.occurrence_id), line.quantity, remaining) from exc
            except Exception:
                await self._release_holds(taken)
                await self.waitlist.release_claims(session_id)
                raise
            hold_ids.append(hold.id)
            taken.append(hold.id)
        return hold_ids

    async def _release_holds(self, hold_ids: list[UUID]) -> None:
        for hold_id in hold_ids:
            if hold_id is not None:
                await self.ledger.release(hold_id)

    async def start_checkout(
        self,
        buyer_id: str,
        lines: list[CheckoutLine],
        source: CheckoutSource = CheckoutSource.BUY_NOW,
    ) -> CheckoutSession:
        """
        Hold seats for every line, open a gateway order and return the session.

        Raises:
            InsufficientAvailabilityError: If any line cannot be held; no holds remain
            OccurrenceNotBookableError: If an occurrence is retired, hidden or started
            BookingLimitExceededError: If the buyer would exceed the upcoming booking limit
            GatewayOrderCreationFailedError: If the gateway refuses the order; the session is FAILED
        """
        if not lines:
            raise ValidationError(detail="A checkout needs at least one line item")
        merged = self._merge_lines(lines)
        priced, currency = await self._price_lines(merged)
        await self._check_booking_limit(buyer_id, len(priced))

        session_id = uuid4()
        hold_ids = await self._acquire_holds(buyer_id, priced, session_id)

        total = sum(line.unit_amount * line.quantity for line in priced)
        try:
            now = self.clock()
            self.db.add(CheckoutSession(
                id=session_id,
                buyer_id=buyer_id,
                source=source,
                status=CheckoutStatus.BUILDING,
                currency=currency,
                total_amount=total,
                deadline_at=now + self.session_timeout,
            ))
            await self.db.flush()
            for position, (line, hold_id) in enumerate(zip(priced, hold_ids)):
                self.db.add(CheckoutLineItem(
                    session_id=session_id,
                    position=position,
                    occurrence_id=line.occurrence_id,
                    quantity=line.quantity,
                    unit_amount=line.unit_amount,
                    hold_id=hold_id,
                ))
                await self.bookings.create_pending(
                    checkout_session_id=session_id,
                    occurrence_id=line.occurrence_id,
                    buyer_id=buyer_id,
                    quantity=line.quantity,
                    amount=line.unit_amount * line.quantity,
                    currency=currency,
                    hold_id=hold_id,
                )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            await self._release_holds(hold_ids)
            await self.waitlist.release_claims(session_id)
            raise

        metrics_collector.record_checkout("started")
        logger.info(
            "Checkout session created",
            extra={
                "session_id": str(session_id),
                "buyer_id": buyer_id,
                "line_count": len(priced),
                "total_amount": total,
                "currency": currency,
            }
        )

        try:
            order = await self.gateway.create_order(
                total,
                currency,
                _with_session(settings.checkout_return_url, session_id),
                _with_session(settings.checkout_cancel_url, session_id),
                reference_id=str(session_id),
            )
        except Exception as exc:
            reason = _describe(exc)
            logger.error(
                "Gateway order creation failed",
                extra={"session_id": str(session_id), "error": reason},
                exc_info=not isinstance(exc, ProblemDetailsException)
            )
            await self._terminate(
                session_id,
                CheckoutStatus.FAILED,
                BookingStatus.FAILED,
                reason=f"order creation failed: {reason}",
                from_statuses=(CheckoutStatus.BUILDING,),
            )
            raise

        result = await self.db.execute(
            update(CheckoutSession)
            .where(CheckoutSession.id == session_id, CheckoutSession.status == CheckoutStatus.BUILDING)
            .values(
                status=CheckoutStatus.PENDING_GATEWAY_APPROVAL,
                gateway_order_id=order.order_id,
                approve_url=order.approve_url,
                updated_at=self.clock(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            for booking in await self.bookings.list_for_session(session_id):
                await self.bookings.mark_awaiting_capture(booking)
        else:
            logger.warning(
                "Session left BUILDING while the gateway order was created; order abandoned",
                extra={"session_id": str(session_id), "gateway_order_id": order.order_id}
            )
        await self.db.commit()

        logger.info(
            "Checkout awaiting buyer approval",
            extra={"session_id": str(session_id), "gateway_order_id": order.order_id}
        )
        return await self.get_session_or_raise(session_id)

    async def start_cart_checkout(self, buyer_id: str) -> CheckoutSession:
        """Check out everything in the buyer's cart; the cart is cleared on settlement."""
        items = await self.cart.list_items(buyer_id)
        if not items:
            raise ValidationError(detail="The cart is empty")
        lines = [CheckoutLine(item.occurrence_id, item.quantity) for item in items]
        return await self.start_checkout(buyer_id, lines, source=CheckoutSource.CART)

    # Approval and capture

    async def handle_approval_return(
        self,
        session_id: UUID,
        buyer_id: Optional[str] = None,
        gateway_order_id: Optional[str] = None,
    ) -> CheckoutSession:
        """
        Capture the approved order and settle the session.

        A settled session is returned unchanged, so a repeated return is harmless.

        Raises:
            SessionExpiredError: If the deadline passed or the holds lapsed; no capture is made
            GatewayCaptureFailedError: If the capture did not complete; holds are released
            ConflictError: If the session is not awaiting approval
        """
        session = await self.get_session_or_raise(session_id, buyer_id)
        status = CheckoutStatus(session.status)
        if status == CheckoutStatus.SETTLED:
            return session
        if status == CheckoutStatus.EXPIRED:
            raise SessionExpiredError(str(session_id))
        if status != CheckoutStatus.PENDING_GATEWAY_APPROVAL:
            raise ConflictError(
                detail=f"Checkout session {session_id} is {status.value} and cannot be captured",
                conflicting_resource={"session_id": str(session_id), "status": status.value},
            )
        if gateway_order_id is not None and gateway_order_id != session.gateway_order_id:
            raise ValidationError(detail="Gateway order does not belong to this checkout session")

        if self.clock() >= session.deadline_at:
            await self._expire_session(session_id)
            raise SessionExpiredError(str(session_id))

        order_id = session.gateway_order_id
        hold_ids = [item.hold_id for item in await self.get_line_items(session_id)]
        try:
            for hold_id in hold_ids:
                await self.ledger.refresh(hold_id, self.capture_hold_ttl)
        except HoldExpiredError:
            logger.warning("Holds lapsed before capture", extra={"session_id": str(session_id)})
            await self._expire_session(session_id, require_deadline=False)
            raise SessionExpiredError(str(session_id))

        result = await self.db.execute(
            update(CheckoutSession)
            .where(
                CheckoutSession.id == session_id,
                CheckoutSession.status == CheckoutStatus.PENDING_GATEWAY_APPROVAL,
            )
            .values(status=CheckoutStatus.CAPTURING, updated_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount != 1:
            session = await self.get_session_or_raise(session_id)
            if session.status == CheckoutStatus.SETTLED:
                return session
            if session.status == CheckoutStatus.EXPIRED:
                raise SessionExpiredError(str(session_id))
            raise ConflictError(
                detail=f"Checkout session {session_id} is {CheckoutStatus(session.status).value} and cannot be captured",
                conflicting_resource={"session_id": str(session_id), "status": CheckoutStatus(session.status).value},
            )

        logger.info("Capturing payment", extra={"session_id": str(session_id), "gateway_order_id": order_id})
        try:
            capture = await self.gateway.capture_order(order_id)
        except Exception as exc:
            reason = _describe(exc)
            logger.error(
                "Gateway capture failed",
                extra={"session_id": str(session_id), "gateway_order_id": order_id, "error": reason},
                exc_info=not isinstance(exc, ProblemDetailsException)
            )
            await self._terminate(
                session_id,
                CheckoutStatus.FAILED,
                BookingStatus.FAILED,
                reason=f"capture failed: {reason}",
                from_statuses=(CheckoutStatus.CAPTURING,),
            )
            if isinstance(exc, ProblemDetailsException):
                raise
            raise GatewayCaptureFailedError(f"Capture of order {order_id} failed") from exc

        if not capture.completed:
            logger.error(
                "Gateway capture not completed",
                extra={"session_id": str(session_id), "gateway_order_id": order_id, "capture_status": capture.status}
            )
            await self._terminate(
                session_id,
                CheckoutStatus.FAILED,
                BookingStatus.FAILED,
                reason=f"capture status {capture.status}",
                from_statuses=(CheckoutStatus.CAPTURING,),
            )
            raise GatewayCaptureFailedError(f"Capture of order {order_id} ended with status {capture.status}")

        return await self._settle(session_id, capture)

    async def _hold_confirmed_elsewhere(self, session_id: UUID, hold_id: UUID) -> bool:
        """Whether a booking of another checkout already owns the seats of ``hold_id``."""
        stmt = select(Booking.id).where(
            Booking.hold_id == hold_id,
            Booking.checkout_session_id != session_id,
            Booking.status.in_((BookingStatus.CONFIRMED, BookingStatus.REFUNDED)),
        )
        return (await self.db.execute(stmt)).first() is not None

    async def _confirm_line(self, session_id: UUID, item_id: UUID) -> Optional[UUID]:
        """
        Confirm the hold of one captured line, re-holding once if it lapsed.

        Returns the confirmed hold id, or None when the seats are gone.
        """
        item = await self.db.get(CheckoutLineItem, item_id, populate_existing=True)
        occurrence_id, quantity, hold_id = item.occurrence_id, item.quantity, item.hold_id
        if await self._hold_confirmed_elsewhere(session_id, hold_id):
            logger.error(
                "Hold already confirmed by another checkout, re-holding",
                extra={"session_id": str(session_id), "hold_id": str(hold_id)}
            )
        else:
            try:
                await self.ledger.confirm(hold_id)
                return hold_id
            except HoldExpiredError:
                logger.warning(
                    "Hold lapsed after capture, re-holding",
                    extra={"session_id": str(session_id), "hold_id": str(hold_id)}
                )

        session = await self.db.get(CheckoutSession, session_id)
        try:
            hold = await self.ledger.hold(occurrence_id, quantity, ttl=self.capture_hold_ttl, buyer_id=session.buyer_id)
            new_hold_id = hold.id
            await self.ledger.confirm(new_hold_id)
        except (CapacityExceededError, HoldExpiredError):
            logger.critical(
                "Payment captured but seats are no longer available; manual refund required",
                extra={"session_id": str(session_id), "occurrence_id": str(occurrence_id), "quantity": quantity}
            )
            return None

        item = await self.db.get(CheckoutLineItem, item_id, populate_existing=True)
        item.hold_id = new_hold_id
        await self.db.commit()
        return new_hold_id

    async def _settle(self, session_id: UUID, capture: CaptureResult) -> CheckoutSession:
        session = await self.get_session_or_raise(session_id)
        session.capture_id = capture.capture_id
        await self.db.commit()

        item_ids = [(item.id, item.occurrence_id) for item in await self.get_line_items(session_id)]
        confirmed_holds: list[UUID] = []
        unfulfilled = 0
        for item_id, occurrence_id in item_ids:
            hold_id = await self._confirm_line(session_id, item_id)
            booking = (await self.db.execute(
                select(Booking)
                .where(Booking.checkout_session_id == session_id, Booking.occurrence_id == occurrence_id)
                .execution_options(populate_existing=True)
            )).scalar_one()
            if hold_id is None:
                await self.bookings.fail(booking, reason=CAPTURED_WITHOUT_CAPACITY)
                unfulfilled += 1
            else:
                await self.bookings.confirm(booking, hold_id=hold_id)
                confirmed_holds.append(hold_id)
            await self.db.commit()

        session = await self.get_session_or_raise(session_id)
        session.status = CheckoutStatus.SETTLED if confirmed_holds else CheckoutStatus.FAILED
        session.settled_at = self.clock()
        if unfulfilled:
            session.failure_reason = CAPTURED_WITHOUT_CAPACITY
        if session.source == CheckoutSource.CART and confirmed_holds:
            await self.cart.clear(session.buyer_id)
        await self.db.commit()
        await self.waitlist.mark_booked(confirmed_holds)

        metrics_collector.record_checkout("settled" if confirmed_holds else "failed")
        logger.info(
            "Checkout settled",
            extra={
                "session_id": str(session_id),
                "capture_id": capture.capture_id,
                "confirmed_lines": len(confirmed_holds),
                "unfulfilled_lines": unfulfilled,
            }
        )

        await self._send_confirmations(session_id)
        return await self.get_session_or_raise(session_id)

    async def _send_confirmations(self, session_id: UUID) -> None:
        for booking in await self.bookings.list_for_session(session_id):
            if booking.status != BookingStatus.CONFIRMED:
                continue
            occurrence = await self.db.get(TripOccurrence, booking.occurrence_id)
            await self.notifier.notify_confirmed(booking, occurrence)

    # Termination

    async def _terminate(
        self,
        session_id: UUID,
        session_status: CheckoutStatus,
        booking_status: BookingStatus,
        reason: str,
        from_statuses: tuple[CheckoutStatus, ...],
        require_deadline: bool = False,
    ) -> bool:
        """
        Move a session from one of ``from_statuses`` to a terminal status and release its holds.

        Returns False when another caller already moved the session.
        """
        conditions = [CheckoutSession.id == session_id, CheckoutSession.status.in_(from_statuses)]
        if require_deadline:
            conditions.append(CheckoutSession.deadline_at <= self.clock())
        result = await self.db.execute(
            update(CheckoutSession)
            .where(*conditions)
            .values(status=session_status, failure_reason=reason, updated_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            return False

        for booking in await self.bookings.list_for_session(session_id):
            if booking_status == BookingStatus.FAILED:
                await self.bookings.fail(booking, reason=reason)
            else:
                await self.bookings.cancel(booking, reason=reason)
        await self.db.commit()

        hold_ids = [item.hold_id for item in await self.get_line_items(session_id)]
        await self._release_holds(hold_ids)
        await self.waitlist.release_claims(session_id)

        metrics_collector.record_checkout(session_status.value.lower())
        logger.info(
            "Checkout session terminated",
            extra={"session_id": str(session_id), "status": session_status.value, "reason": reason}
        )
        return True

    async def _expire_session(self, session_id: UUID, require_deadline: bool = True) -> bool:
        return await self._terminate(
            session_id,
            CheckoutStatus.EXPIRED,
            BookingStatus.CANCELLED,
            reason="session expired",
            from_statuses=OPEN_STATUSES,
            require_deadline=require_deadline,
        )

    async def expire_stale_sessions(self, batch_size: int = 100) -> int:
        """
        Expire open sessions past their deadline and release their holds.

        Returns:
            Number of sessions expired
        """
        stmt = (
            select(CheckoutSession.id)
            .where(CheckoutSession.status.in_(OPEN_STATUSES), CheckoutSession.deadline_at <= self.clock())
            .order_by(CheckoutSession.deadline_at)
            .limit(batch_size)
        )
        session_ids = list((await self.db.execute(stmt)).scalars())

        expired = 0
        for session_id in session_ids:
            if await self._expire_session(session_id):
                expired += 1
        if expired:
            logger.info("Stale checkout sessions expired", extra={"expired_count": expired})
        return expired

    async def cancel_checkout(
        self,
        session_id: UUID,
        buyer_id: Optional[str] = None,
        reason: str = "cancelled by buyer",
    ) -> CheckoutSession:
        """
        Cancel a checkout.

        Before capture the holds are released and the session is CANCELLED. After
        settlement each confirmed booking goes through the refund workflow.

        Raises:
            ConflictError: If a capture is in progress
        """
        session = await self.get_session_or_raise(session_id, buyer_id)
        status = CheckoutStatus(session.status)

        if status in OPEN_STATUSES:
            cancelled = await self._terminate(
                session_id,
                CheckoutStatus.CANCELLED,
                BookingStatus.CANCELLED,
                reason=reason,
                from_statuses=OPEN_STATUSES,
            )
            if not cancelled:
                return await self.cancel_checkout(session_id, buyer_id, reason)
        elif status == CheckoutStatus.CAPTURING:
            raise ConflictError(
                detail=f"Payment for checkout session {session_id} is being captured and cannot be cancelled",
                conflicting_resource={"session_id": str(session_id), "status": status.value},
            )
        elif status == CheckoutStatus.SETTLED:
            booking_ids = [
                booking.id
                for booking in await self.bookings.list_for_session(session_id)
                if booking.status == BookingStatus.CONFIRMED
            ]
            for booking_id in booking_ids:
                await self.bookings.refund(booking_id, buyer_id=buyer_id, reason=reason)

        return await self.get_session_or_raise(session_id)

    async def cancel_booking(
        self,
        booking_id: UUID,
        buyer_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Booking:
        """
        Cancel one booking.

        A confirmed booking is refunded. A booking whose payment has not been
        captured yet cancels its whole checkout, since the gateway order covers
        every line.
        """
        booking = await self.bookings.get_booking_or_raise(booking_id, buyer_id=buyer_id)
        if booking.status in (BookingStatus.PENDING, BookingStatus.AWAITING_CAPTURE):
            await self.cancel_checkout(booking.checkout_session_id, buyer_id, reason or "cancelled by buyer")
            return await self.bookings.get_booking_or_raise(booking_id, refresh=True)
        if booking.status in (BookingStatus.CANCELLED, BookingStatus.FAILED):
            return booking
        return await self.bookings.refund(booking_id, buyer_id=buyer_id, reason=reason or "cancelled by buyer")
