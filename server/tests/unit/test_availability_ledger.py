"""Unit tests for the availability ledger."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from trip_reservations.core.exceptions import (
    CapacityBelowConfirmedError,
    CapacityExceededError,
    HoldExpiredError,
    LedgerInvariantError,
    NotFoundError,
    ValidationError,
)
from trip_reservations.models.availability import CapacityAdjustment, HoldStatus
from trip_reservations.models.trip import TripOccurrence
from trip_reservations.services.availability_ledger import AvailabilityLedger


@pytest.fixture
def ledger(test_session, clock, locks):
    return AvailabilityLedger(test_session, clock=clock, locks=locks)


async def _counters(ledger, occurrence_id):
    record = await ledger.get_availability(occurrence_id)
    return record.capacity, record.confirmed_count, record.held_count, record.remaining


@pytest.mark.asyncio
async def test_new_occurrence_starts_empty(ledger, occurrence):
    assert await _counters(ledger, occurrence.id) == (10, 0, 0, 10)


@pytest.mark.asyncio
async def test_hold_then_confirm(ledger, occurrence):
    """Held seats move to confirmed without changing remaining."""
    occurrence_id = occurrence.id

    hold = await ledger.hold(occurrence_id, 3, ttl=timedelta(minutes=20), buyer_id="ann@example.com")
    assert hold.status == HoldStatus.ACTIVE
    assert await _counters(ledger, occurrence_id) == (10, 0, 3, 7)

    confirmed = await ledger.confirm(hold.id)
    assert confirmed.status == HoldStatus.CONFIRMED
    assert await _counters(ledger, occurrence_id) == (10, 3, 0, 7)


@pytest.mark.asyncio
async def test_confirm_is_idempotent(ledger, occurrence):
    occurrence_id = occurrence.id
    hold = await ledger.hold(occurrence_id, 2)

    await ledger.confirm(hold.id)
    await ledger.confirm(hold.id)

    assert await _counters(ledger, occurrence_id) == (10, 2, 0, 8)


@pytest.mark.asyncio
async def test_hold_exceeding_remaining_is_rejected(ledger, occurrence):
    occurrence_id = occurrence.id
    await ledger.hold(occurrence_id, 8)

    with pytest.raises(CapacityExceededError) as exc_info:
        await ledger.hold(occurrence_id, 3)

    assert exc_info.value.problem_details["conflicting_resource"]["remaining"] == 2
    assert exc_info.value.code == "CAPACITY_EXCEEDED"
    assert await _counters(ledger, occurrence_id) == (10, 0, 8, 2)


@pytest.mark.asyncio
async def test_hold_rejects_non_positive_quantity(ledger, occurrence):
    with pytest.raises(ValidationError):
        await ledger.hold(occurrence.id, 0)


@pytest.mark.asyncio
async def test_hold_on_unknown_occurrence(ledger):
    from uuid import uuid4

    with pytest.raises(NotFoundError):
        await ledger.hold(uuid4(), 1)


@pytest.mark.asyncio
async def test_lapsed_holds_are_reclaimed_by_next_hold(ledger, occurrence, clock):
    """An abandoned hold never blocks a new buyer once its TTL passed."""
    occurrence_id = occurrence.id
    first = await ledger.hold(occurrence_id, 10, ttl=timedelta(minutes=20))
    first_id = first.id

    clock.advance(minutes=21)
    second = await ledger.hold(occurrence_id, 10, ttl=timedelta(minutes=20))

    assert second.status == HoldStatus.ACTIVE
    assert (await ledger.get_hold(first_id)).status == HoldStatus.EXPIRED
    assert await _counters(ledger, occurrence_id) == (10, 0, 10, 0)


@pytest.mark.asyncio
async def test_confirm_after_expiry_raises_and_returns_seats(ledger, occurrence, clock):
    occurrence_id = occurrence.id
    hold = await ledger.hold(occurrence_id, 4, ttl=timedelta(minutes=5))
    hold_id = hold.id

    clock.advance(minutes=6)
    with pytest.raises(HoldExpiredError):
        await ledger.confirm(hold_id)

    assert (await ledger.get_hold(hold_id)).status == HoldStatus.EXPIRED
    assert await _counters(ledger, occurrence_id) == (10, 0, 0, 10)


@pytest.mark.asyncio
async def test_confirm_released_hold_raises(ledger, occurrence):
    hold = await ledger.hold(occurrence.id, 1)
    hold_id = hold.id
    await ledger.release(hold_id)

    with pytest.raises(HoldExpiredError):
        await ledger.confirm(hold_id)


@pytest.mark.asyncio
async def test_release_returns_seats_and_is_idempotent(ledger, occurrence):
    occurrence_id = occurrence.id
    hold = await ledger.hold(occurrence_id, 5)

    released = await ledger.release(hold.id)
    assert released.status == HoldStatus.RELEASED
    await ledger.release(hold.id)

    assert await _counters(ledger, occurrence_id) == (10, 0, 0, 10)


@pytest.mark.asyncio
async def test_release_of_confirmed_hold_is_an_invariant_violation(ledger, occurrence):
    occurrence_id = occurrence.id
    hold = await ledger.hold(occurrence_id, 2)
    hold_id = hold.id
    await ledger.confirm(hold_id)

    with pytest.raises(LedgerInvariantError):
        await ledger.release(hold_id)

    assert await _counters(ledger, occurrence_id) == (10, 2, 0, 8)


@pytest.mark.asyncio
async def test_refresh_extends_active_hold(ledger, occurrence, clock):
    hold = await ledger.hold(occurrence.id, 1, ttl=timedelta(minutes=5))
    hold_id = hold.id

    clock.advance(minutes=4)
    refreshed = await ledger.refresh(hold_id, timedelta(minutes=5))
    assert refreshed.expires_at == clock() + timedelta(minutes=5)

    clock.advance(minutes=4)
    await ledger.confirm(hold_id)
    assert (await ledger.get_hold(hold_id)).status == HoldStatus.CONFIRMED


@pytest.mark.asyncio
async def test_refresh_of_lapsed_hold_raises(ledger, occurrence, clock):
    hold = await ledger.hold(occurrence.id, 1, ttl=timedelta(minutes=5))
    hold_id = hold.id

    clock.advance(minutes=10)
    with pytest.raises(HoldExpiredError):
        await ledger.refresh(hold_id, timedelta(minutes=5))
    assert (await ledger.get_hold(hold_id)).status == HoldStatus.EXPIRED


@pytest.mark.asyncio
async def test_release_confirmed_seats(ledger, occurrence):
    occurrence_id = occurrence.id
    hold = await ledger.hold(occurrence_id, 3)
    await ledger.confirm(hold.id)

    await ledger.release_confirmed(occurrence_id, 2)
    assert await _counters(ledger, occurrence_id) == (10, 1, 0, 9)

    with pytest.raises(LedgerInvariantError):
        await ledger.release_confirmed(occurrence_id, 5)
    assert await _counters(ledger, occurrence_id) == (10, 1, 0, 9)


@pytest.mark.asyncio
async def test_capacity_cannot_drop_below_confirmed(ledger, occurrence):
    occurrence_id = occurrence.id
    hold = await ledger.hold(occurrence_id, 6)
    await ledger.confirm(hold.id)

    with pytest.raises(CapacityBelowConfirmedError):
        await ledger.set_capacity(occurrence_id, 5, actor="ops")

    assert await _counters(ledger, occurrence_id) == (10, 6, 0, 4)


@pytest.mark.asyncio
async def test_capacity_cannot_drop_below_in_flight_holds(ledger, occurrence):
    occurrence_id = occurrence.id
    hold = await ledger.hold(occurrence_id, 6)
    await ledger.confirm(hold.id)
    await ledger.hold(occurrence_id, 2)

    with pytest.raises(CapacityExceededError):
        await ledger.set_capacity(occurrence_id, 7, actor="ops")

    record = await ledger.set_capacity(occurrence_id, 8, actor="ops")
    assert record.remaining == 0


@pytest.mark.asyncio
async def test_capacity_change_is_audited_and_mirrored(ledger, occurrence, test_session):
    occurrence_id = occurrence.id

    await ledger.set_capacity(occurrence_id, 14, actor="ops@example.com", reason="bigger bus")

    adjustments = list((await test_session.execute(
        select(CapacityAdjustment).where(CapacityAdjustment.occurrence_id == occurrence_id)
    )).scalars())
    assert [(a.previous_capacity, a.new_capacity, a.actor) for a in adjustments] == [(10, 14, "ops@example.com")]

    refreshed = await test_session.get(TripOccurrence, occurrence_id, populate_existing=True)
    assert refreshed.capacity == 14
    assert await _counters(ledger, occurrence_id) == (14, 0, 0, 14)


@pytest.mark.asyncio
async def test_expire_holds_sweep(ledger, occurrence, series_manager, clock):
    from helpers import make_template, trip_dates

    other = await series_manager.create_occurrence(make_template(capacity=4), trip_dates(40))
    first_id, other_id = occurrence.id, other.id
    await ledger.hold(first_id, 2, ttl=timedelta(minutes=5))
    await ledger.hold(other_id, 4, ttl=timedelta(minutes=5))
    await ledger.hold(first_id, 1, ttl=timedelta(hours=1))

    clock.advance(minutes=10)
    assert await ledger.expire_holds() == 2

    assert await _counters(ledger, first_id) == (10, 0, 1, 9)
    assert await _counters(ledger, other_id) == (4, 0, 0, 4)
    assert await ledger.expire_holds() == 0
