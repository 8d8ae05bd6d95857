"""Unit tests for the checkout workflow from holds to settlement."""

from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy import select, update

from trip_reservations.core.exceptions import (
    BookingLimitExceededError,
    ConflictError,
    GatewayCaptureFailedError,
    GatewayOrderCreationFailedError,
    InsufficientAvailabilityError,
    NotFoundError,
    OccurrenceNotBookableError,
    SessionExpiredError,
    ValidationError,
)
from trip_reservations.models.availability import HoldStatus
from trip_reservations.models.booking import BookingStatus
from trip_reservations.models.checkout import CheckoutLineItem, CheckoutSession, CheckoutSource, CheckoutStatus
from trip_reservations.models.waitlist import WaitlistStatus
from trip_reservations.services.availability_ledger import AvailabilityLedger
from trip_reservations.services.checkout_orchestrator import (
    CAPTURED_WITHOUT_CAPACITY,
    CheckoutLine,
    CheckoutOrchestrator,
)

from helpers import FakeGateway, make_template, trip_dates

BUYER = "ann@example.com"


@pytest.fixture
def orchestrator(test_session, gateway, clock, locks, notifier):
    return CheckoutOrchestrator(test_session, gateway=gateway, clock=clock, locks=locks, notifier=notifier)


@pytest_asyncio.fixture
async def second_occurrence(series_manager):
    return await series_manager.create_occurrence(make_template(capacity=2, amount=30000), trip_dates(45))


async def _remaining(orchestrator, occurrence_id):
    return (await orchestrator.ledger.get_availability(occurrence_id)).remaining


async def _statuses(orchestrator, session_id):
    return [booking.status for booking in await orchestrator.bookings.list_for_session(session_id)]


@pytest.mark.asyncio
async def test_start_checkout_holds_seats_and_opens_order(orchestrator, gateway, occurrence, second_occurrence):
    """Starting a checkout holds every line and asks the gateway for one order."""
    first_id, second_id = occurrence.id, second_occurrence.id

    session = await orchestrator.start_checkout(BUYER, [CheckoutLine(first_id, 2), CheckoutLine(second_id, 1)])

    assert session.status == CheckoutStatus.PENDING_GATEWAY_APPROVAL
    assert session.total_amount == 2 * 50000 + 30000
    assert session.gateway_order_id == "ORDER-1"
    assert session.approve_url == "https://gateway.test/approve/ORDER-1"
    assert session.deadline_at == orchestrator.clock() + orchestrator.session_timeout

    (order,) = gateway.created
    assert (order["amount_minor"], order["currency"]) == (130000, "USD")
    assert order["return_url"].endswith(f"session_id={session.id}")
    assert order["reference_id"] == str(session.id)

    assert await _remaining(orchestrator, first_id) == 8
    assert await _remaining(orchestrator, second_id) == 1
    assert await _statuses(orchestrator, session.id) == [BookingStatus.AWAITING_CAPTURE] * 2


@pytest.mark.asyncio
async def test_duplicate_lines_are_merged(orchestrator, occurrence):
    session = await orchestrator.start_checkout(BUYER, [CheckoutLine(occurrence.id, 1), CheckoutLine(occurrence.id, 2)])

    (item,) = await orchestrator.get_line_items(session.id)
    assert item.quantity == 3
    assert session.total_amount == 150000


@pytest.mark.asyncio
@pytest.mark.parametrize("quantities", [[], [0]])
async def test_start_checkout_validates_lines(orchestrator, occurrence, quantities):
    lines = [CheckoutLine(occurrence.id, quantity) for quantity in quantities]
    with pytest.raises(ValidationError):
        await orchestrator.start_checkout(BUYER, lines)


@pytest.mark.asyncio
async def test_all_or_nothing_holds(orchestrator, gateway, test_session, occurrence, second_occurrence):
    """A line that does not fit releases the holds already taken for earlier lines."""
    first_id, second_id = occurrence.id, second_occurrence.id

    with pytest.raises(InsufficientAvailabilityError) as exc_info:
        await orchestrator.start_checkout(BUYER, [CheckoutLine(first_id, 3), CheckoutLine(second_id, 5)])

    assert exc_info.value.problem_details["retryable"] is True
    assert await _remaining(orchestrator, first_id) == 10
    assert await _remaining(orchestrator, second_id) == 2
    assert (await test_session.execute(select(CheckoutSession))).first() is None
    assert gateway.created == []


@pytest.mark.asyncio
async def test_mixed_currencies_are_rejected(orchestrator, series_manager, occurrence):
    euro = await series_manager.create_occurrence(make_template(currency="EUR"), trip_dates(50))

    with pytest.raises(ValidationError):
        await orchestrator.start_checkout(BUYER, [CheckoutLine(occurrence.id, 1), CheckoutLine(euro.id, 1)])


@pytest.mark.asyncio
async def test_retired_occurrence_is_not_bookable(orchestrator, series_manager, occurrence):
    occurrence_id = occurrence.id
    await series_manager.retire_occurrence(occurrence_id)

    with pytest.raises(OccurrenceNotBookableError) as exc_info:
        await orchestrator.start_checkout(BUYER, [CheckoutLine(occurrence_id, 1)])
    assert exc_info.value.problem_details["conflicting_resource"]["reason"] == "retired"


@pytest.mark.asyncio
async def test_started_occurrence_is_not_bookable(orchestrator, occurrence, clock):
    occurrence_id = occurrence.id
    clock.advance(days=31)

    with pytest.raises(OccurrenceNotBookableError):
        await orchestrator.start_checkout(BUYER, [CheckoutLine(occurrence_id, 1)])


@pytest.mark.asyncio
async def test_unknown_occurrence(orchestrator):
    with pytest.raises(NotFoundError):
        await orchestrator.start_checkout(BUYER, [CheckoutLine(uuid4(), 1)])


@pytest.mark.asyncio
async def test_order_creation_failure_fails_session_and_frees_seats(orchestrator, gateway, test_session, occurrence):
    occurrence_id = occurrence.id
    gateway.create_error = GatewayOrderCreationFailedError("Gateway declined the order", upstream_status=422)

    with pytest.raises(GatewayOrderCreationFailedError):
        await orchestrator.start_checkout(BUYER, [CheckoutLine(occurrence_id, 4)])

    session = (await test_session.execute(
        select(CheckoutSession).execution_options(populate_existing=True)
    )).scalar_one()
    assert session.status == CheckoutStatus.FAILED
    assert "Gateway declined the order" in session.failure_reason
    assert await _statuses(orchestrator, session.id) == [BookingStatus.FAILED]
    assert await _remaining(orchestrator, occurrence_id) == 10


@pytest.mark.asyncio
async def test_approval_return_settles_and_notifies(orchestrator, gateway, sender, occurrence):
    occurrence_id = occurrence.id
    started = await orchestrator.start_checkout(BUYER, [CheckoutLine(occurrence_id, 2)])

    settled = await orchestrator.handle_approval_return(started.id, buyer_id=BUYER, gateway_order_id="ORDER-1")

    assert settled.status == CheckoutStatus.SETTLED
    assert settled.capture_id == "CAPTURE-ORDER-1"
    assert settled.settled_at is not None
    assert gateway.captured == ["ORDER-1"]

    (booking,) = await orchestrator.bookings.list_for_session(started.id)
    assert booking.status == BookingStatus.CONFIRMED
    assert booking.code

    record = await orchestrator.ledger.get_availability(occurrence_id)
    assert (record.confirmed_count, record.held_count, record.remaining) == (2, 0, 8)

    (message,) = sender.messages
    assert message["recipient"] == BUYER
    assert booking.code in message["subject"]
    assert "Seats: 2" in message["body"]


@pytest.mark.asyncio
async def test_repeated_return_does_not_capture_twice(orchestrator, gateway, occurrence):
    started = await orchestrator.start_checkout(BUYER, [CheckoutLine(occurrence.id, 1)])

    await orchestrator.handle_approval_return(started.id)
    again = await orchestrator.handle_approval_return(started.id)

    assert again.status == CheckoutStatus.SETTLED
    assert gateway.captured == ["ORDER-1"]


@pytest.mark.asyncio
async def test_return_checks_gateway_order_and_buyer(orchestrator, gateway, occurrence):
    started = await orchestrator.start_checkout(BUYER, [CheckoutLine(occurrence.id, 1)])

    with pytest.raises(ValidationError):
        await orchestrator.handle_approval_return(started.id, gateway_order_id="ORDER-999")
    with pytest.raises(NotFoundError):
        await orchestrator.handle_approval_return(started.id, buyer_id="mallory@example.com")
    assert gateway.captured == []


@pytest.mark.asyncio
async def test_capture_failure_restores_seats(orchestrator, gateway, occurrence):
    occurrence_id = occurrence.id
    started = await orchestrator.start_checkout(BUYER, [CheckoutLine(occurrence_id, 3)])
    session_id = started.id
    gateway.capture_error = RuntimeError("connection reset")

    with pytest.raises(GatewayCaptureFailedError):
        await orchestrator.handle_approval_return(session_id)

    session = await orchestrator.get_session_or_raise(session_id)
    assert session.status == CheckoutStatus.FAILED
    assert "connection reset" in session.failure_reason
    assert await _statuses(orchestrator, session_id) == [BookingStatus.FAILED]
    assert await _remaining(orchestrator, occurrence_id) == 10


@pytest.mark.asyncio
async def test_incomplete_capture_fails_session(orchestrator, gateway, occurrence):
    occurrence_id = occurrence.id
    started = await orchestrator.start_checkout(BUYER, [CheckoutLine(occurrence_id, 1)])
    session_id = started.id
    gateway.capture_status = "PENDING"

    with pytest.raises(GatewayCaptureFailedError):
        await orchestrator.handle_approval_return(session_id)

    session = await orchestrator.get_session_or_raise(session_id)
    assert session.status == CheckoutStatus.FAILED
    assert await _remaining(orchestrator, occurrence_id) == 10

    with pytest.raises(ConflictError):
        await orchestrator.handle_approval_return(session_id)


@pytest.mark.asyncio
async def test_return_after_deadline_expires_without_capture(orchestrator, gateway, occurrence, clock):
    """A buyer approving after the session deadline is never charged."""
    occurrence_id = occurrence.id
    started = await orchestrator.start_checkout(BUYER, [CheckoutLine(occurrence_id, 2)])
    session_id = started.id

    clock.advance(minutes=16)
    with pytest.raises(SessionExpiredError):
        await orchestrator.handle_approval_return(session_id)

    assert gateway.captured == []
    session = await orchestrator.get_session_or_raise(session_id)
    assert session.status == CheckoutStatus.EXPIRED
    assert await _statuses(orchestrator, session_id) == [BookingStatus.CANCELLED]
    assert await _remaining(orchestrator, occurrence_id) == 10

    with pytest.raises(SessionExpiredError):
        await orchestrator.handle_approval_return(session_id)


@pytest.mark.asyncio
async def test_expire_stale_sessions(orchestrator, occurrence, clock):
    occurrence_id = occurrence.id
    await orchestrator.start_checkout(BUYER, [CheckoutLine(occurrence_id, 2)])
    clock.advance(minutes=10)
    fresh = await orchestrator.start_checkout("bob@example.com", [CheckoutLine(occurrence_id, 3)])
    fresh_id = fresh.id

    clock.advance(minutes=6)
    assert await orchestrator.expire_stale_sessions() == 1
    assert await _remaining(orchestrator, occurrence_id) == 7
    assert (await orchestrator.get_session_or_raise(fresh_id)).status == CheckoutStatus.PENDING_GATEWAY_APPROVAL

    clock.advance(minutes=10)
    assert await orchestrator.expire_stale_sessions() == 1
    assert await orchestrator.expire_stale_sessions() == 0
    assert await _remaining(orchestrator, occurrence_id) == 10


class _SlowCaptureGateway(FakeGateway):
    """Gateway whose capture outlasts the refreshed holds."""

    def __init__(self, clock, during_capture=None):
        super().__init__()
        self.clock = clock
        self.during_capture = during_capture

    async def capture_order(self, order_id):
        self.clock.advance(minutes=25)
        if self.during_capture is not None:
            await self.during_capture()
        return await super().capture_order(order_id)


@pytest.mark.asyncio
async def test_lapsed_hold_is_retaken_after_capture(test_session, clock, locks, notifier, occurrence):
    occurrence_id = occurrence.id
    orchestrator = CheckoutOrchestrator(
        test_session, gateway=_SlowCaptureGateway(clock), clock=clock, locks=locks, notifier=notifier
    )
    started = await orchestrator.start_checkout(BUYER, [CheckoutLine(occurrence_id, 2)])
    (item,) = await orchestrator.get_line_items(started.id)
    original_hold = item.hold_id

    settled = await orchestrator.handle_approval_return(started.id)

    assert settled.status == CheckoutStatus.SETTLED
    (item,) = await orchestrator.get_line_items(started.id)
    assert item.hold_id != original_hold
    assert (await orchestrator.ledger.get_hold(item.hold_id)).status == HoldStatus.CONFIRMED
    assert (await orchestrator.ledger.get_availability(occurrence_id)).confirmed_count == 2


@pytest.mark.asyncio
async def test_captured_without_capacity_is_flagged(test_session, clock, locks, notifier, sender, occurrence):
    """Seats taken by someone else while capture ran are reported, never oversold."""
    occurrence_id = occurrence.id
    other_ledger = AvailabilityLedger(test_session, clock=clock, locks=locks)

    async def sell_out():
        await other_ledger.hold(occurrence_id, 10, buyer_id="bob@example.com")

    orchestrator = CheckoutOrchestrator(
        test_session, gateway=_SlowCaptureGateway(clock, sell_out), clock=clock, locks=locks, notifier=notifier
    )
    started = await orchestrator.start_checkout(BUYER, [CheckoutLine(occurrence_id, 2)])

    session = await orchestrator.handle_approval_return(started.id)

    assert session.status == CheckoutStatus.FAILED
    assert session.failure_reason == CAPTURED_WITHOUT_CAPACITY
    assert session.capture_id == "CAPTURE-ORDER-1"
    (booking,) = await orchestrator.bookings.list_for_session(started.id)
    assert (booking.status, booking.cancellation_reason) == (BookingStatus.FAILED, CAPTURED_WITHOUT_CAPACITY)
    record = await orchestrator.ledger.get_availability(occurrence_id)
    assert (record.confirmed_count, record.held_count) == (0, 10)
    assert sender.messages == []


@pytest.mark.asyncio
async def test_upcoming_booking_limit(test_session, gateway, clock, locks, notifier, occurrence, second_occurrence):
    first_id, second_id = occurrence.id, second_occurrence.id
    orchestrator = CheckoutOrchestrator(
        test_session, gateway=gateway, clock=clock, locks=locks, notifier=notifier, max_upcoming_bookings=1
    )
    started = await orchestrator.start_checkout(BUYER, [CheckoutLine(first_id, 1)])
    await orchestrator.handle_approval_return(started.id)

    with pytest.raises(BookingLimitExceededError):
        await orchestrator.start_checkout(BUYER, [CheckoutLine(second_id, 1)])

    other = await orchestrator.start_checkout("bob@example.com", [CheckoutLine(second_id, 1)])
    assert other.status == CheckoutStatus.PENDING_GATEWAY_APPROVAL


@pytest.mark.asyncio
async def test_cart_checkout_clears_cart_on_settlement(orchestrator, occurrence, second_occurrence):
    first_id, second_id = occurrence.id, second_occurrence.id
    await orchestrator.cart.add_item(BUYER, first_id, 2)
    await orchestrator.cart.add_item(BUYER, second_id, 1)

    started = await orchestrator.start_cart_checkout(BUYER)
    assert started.source == CheckoutSource.CART
    assert started.total_amount == 130000
    assert len(await orchestrator.cart.list_items(BUYER)) == 2

    await orchestrator.handle_approval_return(started.id)

    assert await orchestrator.cart.list_items(BUYER) == []
    assert await _statuses(orchestrator, started.id) == [BookingStatus.CONFIRMED] * 2


@pytest.mark.asyncio
async def test_empty_cart_cannot_check_out(orchestrator):
    with pytest.raises(ValidationError):
        await orchestrator.start_cart_checkout(BUYER)


@pytest.mark.asyncio
async def test_cancel_open_checkout_releases_holds(orchestrator, occurrence):
    occurrence_id = occurrence.id
    started = await orchestrator.start_checkout(BUYER, [CheckoutLine(occurrence_id, 4)])

    cancelled = await orchestrator.cancel_checkout(started.id, buyer_id=BUYER)

    assert cancelled.status == CheckoutStatus.CANCELLED
    assert await _statuses(orchestrator, started.id) == [BookingStatus.CANCELLED]
    assert await _remaining(orchestrator, occurrence_id) == 10

    with pytest.raises(ConflictError):
        await orchestrator.handle_approval_return(started.id)


@pytest.mark.asyncio
async def test_cancel_settled_checkout_refunds(orchestrator, occurrence):
    occurrence_id = occurrence.id
    started = await orchestrator.start_checkout(BUYER, [CheckoutLine(occurrence_id, 3)])
    await orchestrator.handle_approval_return(started.id)

    session = await orchestrator.cancel_checkout(started.id, buyer_id=BUYER)

    assert session.status == CheckoutStatus.SETTLED
    assert await _statuses(orchestrator, started.id) == [BookingStatus.REFUNDED]
    assert await _remaining(orchestrator, occurrence_id) == 10


@pytest.mark.asyncio
async def test_cancel_during_capture_conflicts(orchestrator, test_session, occurrence):
    started = await orchestrator.start_checkout(BUYER, [CheckoutLine(occurrence.id, 1)])
    session_id = started.id
    await test_session.execute(
        update(CheckoutSession).where(CheckoutSession.id == session_id).values(status=CheckoutStatus.CAPTURING)
    )
    await test_session.commit()

    with pytest.raises(ConflictError):
        await orchestrator.cancel_checkout(session_id)


@pytest.mark.asyncio
async def test_cancel_uncaptured_booking_cancels_checkout(orchestrator, occurrence, second_occurrence):
    started = await orchestrator.start_checkout(
        BUYER, [CheckoutLine(occurrence.id, 1), CheckoutLine(second_occurrence.id, 1)]
    )
    first_booking = (await orchestrator.bookings.list_for_session(started.id))[0]

    cancelled = await orchestrator.cancel_booking(first_booking.id, buyer_id=BUYER)

    assert cancelled.status == BookingStatus.CANCELLED
    assert (await orchestrator.get_session_or_raise(started.id)).status == CheckoutStatus.CANCELLED
    assert await _statuses(orchestrator, started.id) == [BookingStatus.CANCELLED] * 2


@pytest.mark.asyncio
async def test_waitlist_offer_is_adopted_by_checkout(orchestrator, occurrence):
    """A buyer holding a waitlist offer checks out on the offered seats."""
    occurrence_id = occurrence.id
    sold = await orchestrator.ledger.hold(occurrence_id, 10, buyer_id="bob@example.com")
    await orchestrator.ledger.confirm(sold.id)
    await orchestrator.waitlist.join(occurrence_id, BUYER, 2)
    await orchestrator.ledger.release_confirmed(occurrence_id, 2)
    offer_hold = (await orchestrator.waitlist._get_entry(occurrence_id, BUYER)).hold_id

    started = await orchestrator.start_checkout(BUYER, [CheckoutLine(occurrence_id, 2)])
    (item,) = await orchestrator.get_line_items(started.id)
    assert item.hold_id == offer_hold

    await orchestrator.handle_approval_return(started.id)

    entry = await orchestrator.waitlist._get_entry(occurrence_id, BUYER)
    assert entry.status == WaitlistStatus.BOOKED
    record = await orchestrator.ledger.get_availability(occurrence_id)
    assert (record.confirmed_count, record.remaining) == (10, 0)


async def _offer_to_buyer(orchestrator, occurrence_id):
    sold = await orchestrator.ledger.hold(occurrence_id, 10, buyer_id="bob@example.com")
    await orchestrator.ledger.confirm(sold.id)
    await orchestrator.waitlist.join(occurrence_id, BUYER, 2)
    await orchestrator.ledger.release_confirmed(occurrence_id, 2)
    return (await orchestrator.waitlist._get_entry(occurrence_id, BUYER)).hold_id


@pytest.mark.asyncio
async def test_waitlist_offer_backs_only_one_checkout(orchestrator, gateway, occurrence):
    """A second checkout for the same offer cannot reuse the offered seats."""
    occurrence_id = occurrence.id
    offer_hold = await _offer_to_buyer(orchestrator, occurrence_id)
    started = await orchestrator.start_checkout(BUYER, [CheckoutLine(occurrence_id, 2)])
    started_id = started.id

    with pytest.raises(InsufficientAvailabilityError):
        await orchestrator.start_checkout(BUYER, [CheckoutLine(occurrence_id, 2)])

    settled = await orchestrator.handle_approval_return(started_id)

    assert settled.status == CheckoutStatus.SETTLED
    (item,) = await orchestrator.get_line_items(started_id)
    assert item.hold_id == offer_hold
    assert len(gateway.created) == 1
    record = await orchestrator.ledger.get_availability(occurrence_id)
    assert (record.confirmed_count, record.held_count, record.remaining) == (10, 0, 0)


@pytest.mark.asyncio
async def test_hold_confirmed_by_another_checkout_is_not_counted(orchestrator, test_session, occurrence):
    """Settling on a hold another checkout already confirmed re-holds instead of overselling."""
    occurrence_id = occurrence.id
    sold = await orchestrator.ledger.hold(occurrence_id, 6, buyer_id="bob@example.com")
    await orchestrator.ledger.confirm(sold.id)
    await orchestrator.waitlist.join(occurrence_id, BUYER, 2)
    adopted = await orchestrator.start_checkout(BUYER, [CheckoutLine(occurrence_id, 2)])
    adopted_id = adopted.id
    (adopted_item,) = await orchestrator.get_line_items(adopted_id)
    offer_hold = adopted_item.hold_id

    other = await orchestrator.start_checkout("carl@example.com", [CheckoutLine(occurrence_id, 2)])
    other_id = other.id
    await test_session.execute(
        update(CheckoutLineItem).where(CheckoutLineItem.session_id == other_id).values(hold_id=offer_hold)
    )
    await test_session.commit()

    assert (await orchestrator.handle_approval_return(adopted_id)).status == CheckoutStatus.SETTLED
    session = await orchestrator.handle_approval_return(other_id)

    assert session.status == CheckoutStatus.FAILED
    assert session.failure_reason == CAPTURED_WITHOUT_CAPACITY
    assert await _statuses(orchestrator, other_id) == [BookingStatus.FAILED]
    record = await orchestrator.ledger.get_availability(occurrence_id)
    assert record.confirmed_count == 8


@pytest.mark.asyncio
async def test_zero_booking_limit_is_enforced(test_session, gateway, clock, locks, notifier, occurrence):
    orchestrator = CheckoutOrchestrator(
        test_session, gateway=gateway, clock=clock, locks=locks, notifier=notifier, max_upcoming_bookings=0
    )

    with pytest.raises(BookingLimitExceededError):
        await orchestrator.start_checkout(BUYER, [CheckoutLine(occurrence.id, 1)])
    assert gateway.created == []
