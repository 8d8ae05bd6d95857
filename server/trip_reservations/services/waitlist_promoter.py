"""Waitlist queue and promotion of freed seats to waiting buyers."""

import logging
from datetime import timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import Clock, utcnow
from ..core.config import settings
from ..core.exceptions import CapacityExceededError, NotFoundError
from ..core.locks import KeyedLock, occurrence_locks
from ..core.observability import metrics_collector
from ..models.availability import HoldStatus, LedgerHold
from ..models.trip import OccurrenceStatus, TripOccurrence
from ..models.waitlist import WaitlistEntry, WaitlistStatus
from .availability_ledger import AvailabilityLedger

logger = logging.getLogger(__name__)


def _waitlist_key(occurrence_id: UUID) -> tuple[str, UUID]:
    return ("waitlist", occurrence_id)


def offer_window(days_until_start: int, queue_length: int, min_hours: int, max_hours: int) -> timedelta:
    """
    How long a promoted buyer keeps the offered seats.

    The time left before departure is shared between the buyers still queued,
    clamped to ``[min_hours, max_hours]``.
    """
    hours = (max(days_until_start, 0) * 24) // (queue_length + 1)
    return timedelta(hours=min(max(hours, min_hours), max_hours))


class WaitlistPromoter:
    """
    FIFO waitlist per occurrence.

    Promotion places a ledger hold for the earliest waiting entry that fits the
    remaining seats and turns it into an offer. Entries that do not fit keep their
    place. An offer whose hold lapses or is released unused expires, and the seats
    cascade to the next entry.
    """

    def __init__(
        self,
        db: AsyncSession,
        clock: Clock = utcnow,
        locks: Optional[KeyedLock] = None,
        min_offer_hours: Optional[int] = None,
        max_offer_hours: Optional[int] = None,
    ):
        self.db = db
        self.clock = clock
        self.locks = locks or occurrence_locks
        self.min_offer_hours = (
            settings.waitlist_offer_min_hours if min_offer_hours is None else min_offer_hours
        )
        self.max_offer_hours = (
            settings.waitlist_offer_max_hours if max_offer_hours is None else max_offer_hours
        )
        # Offer holds must not re-enter promotion when released
        self.ledger = AvailabilityLedger(db, clock=clock, locks=self.locks, promote_waitlist=False)

    async def _get_entry(self, occurrence_id: UUID, buyer_id: str) -> Optional[WaitlistEntry]:
        stmt = (
            select(WaitlistEntry)
            .where(WaitlistEntry.occurrence_id == occurrence_id, WaitlistEntry.buyer_id == buyer_id)
            .execution_options(populate_existing=True)
        )
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def _next_sequence(self, occurrence_id: UUID) -> int:
        stmt = select(func.max(WaitlistEntry.sequence)).where(WaitlistEntry.occurrence_id == occurrence_id)
        current = (await self.db.execute(stmt)).scalar()
        return (current or 0) + 1

    async def join(self, occurrence_id: UUID, buyer_id: str, quantity: int) -> WaitlistEntry:
        """
        Queue a buyer for an occurrence.

        Joining while already queued returns the existing entry. A buyer whose
        earlier entry ended re-joins at the back of the queue.
        """
        occurrence = await self.db.get(TripOccurrence, occurrence_id)
        if occurrence is None:
            raise NotFoundError(resource_type="occurrence", resource_id=str(occurrence_id))

        async with self.locks.acquire(_waitlist_key(occurrence_id)):
            try:
                entry = await self._get_entry(occurrence_id, buyer_id)
                if entry is not None and entry.is_active:
                    logger.info(
                        "Buyer already on waitlist",
                        extra={"occurrence_id": str(occurrence_id), "buyer_id": buyer_id, "status": entry.status}
                    )
                    return entry

                sequence = await self._next_sequence(occurrence_id)
                if entry is None:
                    entry = WaitlistEntry(occurrence_id=occurrence_id, buyer_id=buyer_id)
                    self.db.add(entry)
                entry.quantity = quantity
                entry.status = WaitlistStatus.WAITING
                entry.sequence = sequence
                entry.requested_at = self.clock()
                entry.hold_id = None
                entry.offered_at = None
                entry.offer_expires_at = None
                entry.checkout_session_id = None
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

        entry_id = entry.id
        logger.info(
            "Buyer joined waitlist",
            extra={
                "occurrence_id": str(occurrence_id),
                "buyer_id": buyer_id,
                "quantity": quantity,
                "sequence": sequence,
            }
        )
        await self.promote(occurrence_id)
        return await self.db.get(WaitlistEntry, entry_id, populate_existing=True)

    async def leave(self, occurrence_id: UUID, buyer_id: str) -> WaitlistEntry:
        """Remove a buyer from the queue, giving back any offered seats."""
        freed = False
        async with self.locks.acquire(_waitlist_key(occurrence_id)):
            try:
                entry = await self._get_entry(occurrence_id, buyer_id)
                if entry is None:
                    raise NotFoundError(resource_type="waitlist_entry", resource_id=f"{occurrence_id}:{buyer_id}")
                if not entry.is_active:
                    return entry

                hold_id = entry.hold_id
                if entry.status == WaitlistStatus.OFFERED and hold_id is not None:
                    hold = await self.db.get(LedgerHold, hold_id, populate_existing=True)
                    if hold is not None and hold.status == HoldStatus.CONFIRMED:
                        entry.status = WaitlistStatus.BOOKED
                        await self.db.commit()
                        return entry
                    entry.status = WaitlistStatus.CANCELLED
                    await self.ledger.release(hold_id)
                    freed = True
                else:
                    entry.status = WaitlistStatus.CANCELLED
                    await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

        entry_id = entry.id
        logger.info(
            "Buyer left waitlist",
            extra={"occurrence_id": str(occurrence_id), "buyer_id": buyer_id, "freed_offer": freed}
        )
        if freed:
            await self.promote(occurrence_id)
        return await self.db.get(WaitlistEntry, entry_id, populate_existing=True)

    async def _reconcile_offers(self, occurrence_id: UUID) -> int:
        """Close offers whose hold was used, released or has lapsed. Returns offers expired."""
        stmt = (
            select(WaitlistEntry.id, WaitlistEntry.hold_id)
            .where(WaitlistEntry.occurrence_id == occurrence_id, WaitlistEntry.status == WaitlistStatus.OFFERED)
        )
        offers = list((await self.db.execute(stmt)).all())
        now = self.clock()
        expired = 0
        for entry_id, hold_id in offers:
            hold = await self.db.get(LedgerHold, hold_id, populate_existing=True) if hold_id else None
            entry = await self.db.get(WaitlistEntry, entry_id, populate_existing=True)
            if hold is not None and hold.status == HoldStatus.CONFIRMED:
                entry.status = WaitlistStatus.BOOKED
                await self.db.commit()
                continue
            if hold is not None and hold.status == HoldStatus.ACTIVE and hold.expires_at > now:
                continue
            entry.status = WaitlistStatus.EXPIRED
            if hold is not None and hold.status == HoldStatus.ACTIVE:
                await self.ledger.release(hold_id)
            else:
                await self.db.commit()
            expired += 1
            logger.info(
                "Waitlist offer expired",
                extra={"occurrence_id": str(occurrence_id), "waitlist_entry_id": str(entry_id)}
            )
        return expired

    async def promote(self, occurrence_id: UUID) -> list[WaitlistEntry]:
        """
        Offer freed seats to waiting buyers in queue order.

        Returns:
            Entries that received an offer in this pass
        """
        offered: list[UUID] = []
        async with self.locks.acquire(_waitlist_key(occurrence_id)):
            try:
                await self._reconcile_offers(occurrence_id)

                occurrence = await self.db.get(TripOccurrence, occurrence_id, populate_existing=True)
                if occurrence is None or occurrence.status != OccurrenceStatus.ACTIVE:
                    return []
                days_until_start = (occurrence.starts_on - self.clock().date()).days
                if days_until_start <= 0:
                    return []

                stmt = (
                    select(WaitlistEntry.id, WaitlistEntry.quantity, WaitlistEntry.buyer_id)
                    .where(WaitlistEntry.occurrence_id == occurrence_id, WaitlistEntry.status == WaitlistStatus.WAITING)
                    .order_by(WaitlistEntry.sequence)
                )
                waiting = list((await self.db.execute(stmt)).all())
                if not waiting:
                    return []

                remaining = (await self.ledger.get_availability(occurrence_id)).remaining
                ttl = offer_window(days_until_start, len(waiting), self.min_offer_hours, self.max_offer_hours)

                for entry_id, quantity, buyer_id in waiting:
                    if remaining <= 0:
                        break
                    if quantity > remaining:
                        continue
                    try:
                        hold = await self.ledger.hold(occurrence_id, quantity, ttl=ttl, buyer_id=buyer_id)
                    except CapacityExceededError as exc:
                        remaining = exc.problem_details["conflicting_resource"]["remaining"]
                        continue
                    hold_id, expires_at = hold.id, hold.expires_at
                    entry = await self.db.get(WaitlistEntry, entry_id, populate_existing=True)
                    entry.status = WaitlistStatus.OFFERED
                    entry.hold_id = hold_id
                    entry.offered_at = self.clock()
                    entry.offer_expires_at = expires_at
                    entry.checkout_session_id = None
                    await self.db.commit()
                    remaining -= quantity
                    offered.append(entry_id)
                    metrics_collector.record_waitlist_offer()
                    logger.info(
                        "Waitlist entry offered seats",
                        extra={
                            "occurrence_id": str(occurrence_id),
                            "waitlist_entry_id": str(entry_id),
                            "buyer_id": buyer_id,
                            "quantity": quantity,
                            "offer_expires_at": expires_at.isoformat(),
                        }
                    )
            except Exception:
                await self.db.rollback()
                raise

        return [await self.db.get(WaitlistEntry, entry_id) for entry_id in offered]

    async def claim_offer(
        self,
        occurrence_id: UUID,
        buyer_id: str,
        quantity: int,
        session_id: UUID,
    ) -> Optional[UUID]:
        """
        Bind the buyer's live offer for exactly ``quantity`` seats to a checkout session.

        The checkout adopts the returned hold instead of taking a new one. An offer
        already claimed by another session is not handed out again until that
        session releases it.
        """
        async with self.locks.acquire(_waitlist_key(occurrence_id)):
            try:
                entry = await self._get_entry(occurrence_id, buyer_id)
                if entry is None or entry.status != WaitlistStatus.OFFERED or entry.hold_id is None:
                    return None
                if entry.quantity != quantity:
                    return None
                if entry.checkout_session_id is not None and entry.checkout_session_id != session_id:
                    logger.info(
                        "Waitlist offer already claimed by another checkout",
                        extra={
                            "occurrence_id": str(occurrence_id),
                            "buyer_id": buyer_id,
                            "claimed_by": str(entry.checkout_session_id),
                        }
                    )
                    return None
                hold = await self.db.get(LedgerHold, entry.hold_id, populate_existing=True)
                if hold is None or hold.status != HoldStatus.ACTIVE or hold.expires_at <= self.clock():
                    return None
                hold_id = hold.id
                entry.checkout_session_id = session_id
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

        logger.info(
            "Waitlist offer claimed by checkout",
            extra={
                "occurrence_id": str(occurrence_id),
                "buyer_id": buyer_id,
                "hold_id": str(hold_id),
                "session_id": str(session_id),
            }
        )
        return hold_id

    async def release_claims(self, session_id: UUID) -> int:
        """Make offers claimed by a checkout that did not go through claimable again."""
        result = await self.db.execute(
            update(WaitlistEntry)
            .where(
                WaitlistEntry.checkout_session_id == session_id,
                WaitlistEntry.status == WaitlistStatus.OFFERED,
            )
            .values(checkout_session_id=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount

    async def mark_booked(self, hold_ids: list[UUID]) -> int:
        """Close offers whose holds were confirmed by a settled checkout."""
        if not hold_ids:
            return 0
        stmt = select(WaitlistEntry).where(
            WaitlistEntry.hold_id.in_(hold_ids),
            WaitlistEntry.status == WaitlistStatus.OFFERED,
        )
        entries = list((await self.db.execute(stmt)).scalars())
        for entry in entries:
            entry.status = WaitlistStatus.BOOKED
        if entries:
            await self.db.commit()
        return len(entries)

    async def list_queue(self, occurrence_id: UUID) -> list[WaitlistEntry]:
        """Active entries of an occurrence in queue order."""
        stmt = (
            select(WaitlistEntry)
            .where(
                WaitlistEntry.occurrence_id == occurrence_id,
                or_(WaitlistEntry.status == WaitlistStatus.WAITING, WaitlistEntry.status == WaitlistStatus.OFFERED),
            )
            .order_by(WaitlistEntry.sequence)
            .execution_options(populate_existing=True)
        )
        return list((await self.db.execute(stmt)).scalars())

    async def occurrences_with_queue(self, limit: int = 100) -> list[UUID]:
        """Occurrences that have waiting entries or open offers."""
        stmt = (
            select(WaitlistEntry.occurrence_id)
            .where(or_(WaitlistEntry.status == WaitlistStatus.WAITING, WaitlistEntry.status == WaitlistStatus.OFFERED))
            .distinct()
            .limit(limit)
        )
        return list((await self.db.execute(stmt)).scalars())
