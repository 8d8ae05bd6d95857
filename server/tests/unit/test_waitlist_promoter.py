"""Unit tests for waitlist queueing and promotion."""

from datetime import timedelta
from uuid import uuid4

import pytest
import pytest_asyncio

from trip_reservations.core.exceptions import NotFoundError
from trip_reservations.models.availability import HoldStatus
from trip_reservations.models.waitlist import WaitlistStatus
from trip_reservations.services.availability_ledger import AvailabilityLedger
from trip_reservations.services.waitlist_promoter import WaitlistPromoter, offer_window


@pytest.fixture
def ledger(test_session, clock, locks):
    return AvailabilityLedger(test_session, clock=clock, locks=locks)


@pytest.fixture
def promoter(test_session, clock, locks):
    return WaitlistPromoter(test_session, clock=clock, locks=locks)


@pytest_asyncio.fixture
async def sold_out(ledger, occurrence):
    """The occurrence with all ten seats confirmed."""
    hold = await ledger.hold(occurrence.id, 10)
    await ledger.confirm(hold.id)
    return occurrence.id


async def _statuses(promoter, occurrence_id, buyers):
    result = []
    for buyer in buyers:
        entry = await promoter._get_entry(occurrence_id, buyer)
        result.append(entry.status)
    return result


@pytest.mark.parametrize(
    "days,queue,expected_hours",
    [
        (30, 1, 48),
        (1, 1, 12),
        (1, 11, 2),
        (0, 3, 2),
    ],
)
def test_offer_window_is_clamped(days, queue, expected_hours):
    assert offer_window(days, queue, min_hours=2, max_hours=48) == timedelta(hours=expected_hours)


@pytest.mark.asyncio
async def test_join_sold_out_occurrence_waits(promoter, sold_out):
    entry = await promoter.join(sold_out, "ann@example.com", 2)

    assert entry.status == WaitlistStatus.WAITING
    assert entry.sequence == 1
    assert entry.hold_id is None


@pytest.mark.asyncio
async def test_join_twice_keeps_place(promoter, sold_out):
    first = await promoter.join(sold_out, "ann@example.com", 2)
    await promoter.join(sold_out, "bob@example.com", 1)
    again = await promoter.join(sold_out, "ann@example.com", 4)

    assert again.id == first.id
    assert (again.sequence, again.quantity) == (1, 2)


@pytest.mark.asyncio
async def test_join_unknown_occurrence(promoter):
    from uuid import uuid4

    with pytest.raises(NotFoundError):
        await promoter.join(uuid4(), "ann@example.com", 1)


@pytest.mark.asyncio
async def test_join_with_free_seats_is_offered_immediately(promoter, occurrence, ledger):
    occurrence_id = occurrence.id

    entry = await promoter.join(occurrence_id, "ann@example.com", 3)

    assert entry.status == WaitlistStatus.OFFERED
    hold = await ledger.get_hold(entry.hold_id)
    assert (hold.status, hold.quantity, hold.buyer_id) == (HoldStatus.ACTIVE, 3, "ann@example.com")
    assert (await ledger.get_availability(occurrence_id)).remaining == 7


@pytest.mark.asyncio
async def test_freed_seats_go_to_first_entry_that_fits(promoter, ledger, sold_out):
    """Entries too large for the freed seats keep their place in the queue."""
    buyers = ["ann@example.com", "bob@example.com", "cat@example.com"]
    for buyer, quantity in zip(buyers, [3, 5, 1]):
        await promoter.join(sold_out, buyer, quantity)

    await ledger.release_confirmed(sold_out, 2)
    assert await _statuses(promoter, sold_out, buyers) == [
        WaitlistStatus.WAITING, WaitlistStatus.WAITING, WaitlistStatus.OFFERED
    ]

    await ledger.release_confirmed(sold_out, 3)
    assert await _statuses(promoter, sold_out, buyers) == [
        WaitlistStatus.OFFERED, WaitlistStatus.WAITING, WaitlistStatus.OFFERED
    ]
    assert (await ledger.get_availability(sold_out)).remaining == 1


@pytest.mark.asyncio
async def test_lapsed_offer_cascades_to_next_entry(promoter, ledger, sold_out, clock):
    await promoter.join(sold_out, "ann@example.com", 2)
    await promoter.join(sold_out, "bob@example.com", 2)
    await ledger.release_confirmed(sold_out, 2)
    assert await _statuses(promoter, sold_out, ["ann@example.com", "bob@example.com"]) == [
        WaitlistStatus.OFFERED, WaitlistStatus.WAITING
    ]

    clock.advance(hours=49)
    offered = await promoter.promote(sold_out)

    assert [entry.buyer_id for entry in offered] == ["bob@example.com"]
    assert await _statuses(promoter, sold_out, ["ann@example.com", "bob@example.com"]) == [
        WaitlistStatus.EXPIRED, WaitlistStatus.OFFERED
    ]
    record = await ledger.get_availability(sold_out)
    assert (record.held_count, record.remaining) == (2, 0)


@pytest.mark.asyncio
async def test_leaving_with_an_offer_frees_it_for_the_next(promoter, ledger, sold_out):
    await promoter.join(sold_out, "ann@example.com", 1)
    await promoter.join(sold_out, "bob@example.com", 1)
    await ledger.release_confirmed(sold_out, 1)

    left = await promoter.leave(sold_out, "ann@example.com")

    assert left.status == WaitlistStatus.CANCELLED
    assert await _statuses(promoter, sold_out, ["bob@example.com"]) == [WaitlistStatus.OFFERED]
    assert (await ledger.get_availability(sold_out)).held_count == 1


@pytest.mark.asyncio
async def test_leave_unknown_entry(promoter, sold_out):
    with pytest.raises(NotFoundError):
        await promoter.leave(sold_out, "nobody@example.com")


@pytest.mark.asyncio
async def test_rejoin_goes_to_back_of_queue(promoter, sold_out):
    await promoter.join(sold_out, "ann@example.com", 1)
    await promoter.join(sold_out, "bob@example.com", 1)
    await promoter.leave(sold_out, "ann@example.com")

    rejoined = await promoter.join(sold_out, "ann@example.com", 1)

    assert rejoined.status == WaitlistStatus.WAITING
    queue = await promoter.list_queue(sold_out)
    assert [entry.buyer_id for entry in queue] == ["bob@example.com", "ann@example.com"]


@pytest.mark.asyncio
async def test_claim_offer_requires_matching_quantity(promoter, ledger, sold_out, clock):
    await promoter.join(sold_out, "ann@example.com", 2)
    await ledger.release_confirmed(sold_out, 2)
    entry = await promoter._get_entry(sold_out, "ann@example.com")
    session_id = uuid4()

    assert await promoter.claim_offer(sold_out, "ann@example.com", 1, session_id) is None
    assert await promoter.claim_offer(sold_out, "bob@example.com", 2, session_id) is None
    assert await promoter.claim_offer(sold_out, "ann@example.com", 2, session_id) == entry.hold_id

    clock.advance(hours=49)
    assert await promoter.claim_offer(sold_out, "ann@example.com", 2, session_id) is None


@pytest.mark.asyncio
async def test_offer_is_claimed_by_one_checkout_at_a_time(promoter, ledger, sold_out):
    await promoter.join(sold_out, "ann@example.com", 2)
    await ledger.release_confirmed(sold_out, 2)
    hold_id = (await promoter._get_entry(sold_out, "ann@example.com")).hold_id
    first, second = uuid4(), uuid4()

    assert await promoter.claim_offer(sold_out, "ann@example.com", 2, first) == hold_id
    assert await promoter.claim_offer(sold_out, "ann@example.com", 2, first) == hold_id
    assert await promoter.claim_offer(sold_out, "ann@example.com", 2, second) is None

    assert await promoter.release_claims(first) == 1
    assert await promoter.claim_offer(sold_out, "ann@example.com", 2, second) == hold_id


@pytest.mark.asyncio
async def test_zero_offer_hours_are_kept(test_session, clock, locks):
    promoter = WaitlistPromoter(test_session, clock=clock, locks=locks, min_offer_hours=0, max_offer_hours=0)

    assert (promoter.min_offer_hours, promoter.max_offer_hours) == (0, 0)


@pytest.mark.asyncio
async def test_confirmed_offer_is_marked_booked(promoter, ledger, sold_out):
    await promoter.join(sold_out, "ann@example.com", 2)
    await ledger.release_confirmed(sold_out, 2)
    hold_id = (await promoter._get_entry(sold_out, "ann@example.com")).hold_id

    await ledger.confirm(hold_id)
    assert await promoter.mark_booked([hold_id]) == 1

    assert await _statuses(promoter, sold_out, ["ann@example.com"]) == [WaitlistStatus.BOOKED]
    assert await promoter.occurrences_with_queue() == []


@pytest.mark.asyncio
async def test_retired_occurrence_is_not_promoted(promoter, ledger, sold_out, series_manager):
    await promoter.join(sold_out, "ann@example.com", 1)
    await series_manager.retire_occurrence(sold_out)

    await ledger.release_confirmed(sold_out, 1)

    assert await _statuses(promoter, sold_out, ["ann@example.com"]) == [WaitlistStatus.WAITING]
    assert await promoter.occurrences_with_queue() == [sold_out]
