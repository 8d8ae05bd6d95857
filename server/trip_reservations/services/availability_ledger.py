"""Availability ledger: seat counters, holds and capacity changes per occurrence."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import Clock, utcnow
from ..core.config import settings
from ..core.exceptions import (
    CapacityBelowConfirmedError,
    CapacityExceededError,
    HoldExpiredError,
    LedgerInvariantError,
    NotFoundError,
    ValidationError,
)
from ..core.locks import KeyedLock, advisory_xact_lock, occurrence_locks
from ..core.observability import metrics_collector
from ..models.availability import AvailabilityRecord, CapacityAdjustment, HoldStatus, LedgerHold
from ..models.trip import TripOccurrence

logger = logging.getLogger(__name__)


class AvailabilityLedger:
    """
    Single source of truth for seats remaining on each occurrence.

    Every counter mutation for an occurrence runs under that occurrence's lock and
    commits before the lock is released, so ``confirmed + held <= capacity`` holds
    for every committed state. Pending changes the caller made on the same session
    are committed (or rolled back) together with the ledger change.
    """

    def __init__(
        self,
        db: AsyncSession,
        clock: Clock = utcnow,
        locks: Optional[KeyedLock] = None,
        promote_waitlist: bool = True,
    ):
        self.db = db
        self.clock = clock
        self.locks = locks or occurrence_locks
        self.promote_waitlist = promote_waitlist

    @asynccontextmanager
    async def _occurrence_lock(self, occurrence_id: UUID) -> AsyncIterator[None]:
        """Serialize mutations of one occurrence; roll back on any failure."""
        async with self.locks.acquire(occurrence_id):
            try:
                await advisory_xact_lock(self.db, f"occurrence:{occurrence_id}")
                yield
            except BaseException:
                await self.db.rollback()
                raise

    async def _load_record(self, occurrence_id: UUID) -> AvailabilityRecord:
        stmt = (
            select(AvailabilityRecord)
            .where(AvailabilityRecord.occurrence_id == occurrence_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        record = (await self.db.execute(stmt)).scalar_one_or_none()
        if record is None:
            raise NotFoundError(resource_type="availability", resource_id=str(occurrence_id))
        return record

    async def _load_hold(self, hold_id: UUID, refresh: bool = False) -> LedgerHold:
        stmt = select(LedgerHold).where(LedgerHold.id == hold_id)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        hold = (await self.db.execute(stmt)).scalar_one_or_none()
        if hold is None:
            logger.warning("Hold not found", extra={"hold_id": str(hold_id)})
            raise NotFoundError(resource_type="hold", resource_id=str(hold_id))
        return hold

    async def _reclaim_expired(self, record: AvailabilityRecord, now: datetime) -> int:
        """Mark lapsed active holds of the occurrence as expired and give their seats back."""
        stmt = (
            select(LedgerHold)
            .where(
                LedgerHold.occurrence_id == record.occurrence_id,
                LedgerHold.status == HoldStatus.ACTIVE,
                LedgerHold.expires_at <= now,
            )
            .execution_options(populate_existing=True)
        )
        expired = list((await self.db.execute(stmt)).scalars())
        for hold in expired:
            self._expire(record, hold, now)
        if expired:
            metrics_collector.record_holds_expired(len(expired))
            logger.info(
                "Reclaimed expired holds",
                extra={
                    "occurrence_id": str(record.occurrence_id),
                    "expired_count": len(expired),
                    "held_count": record.held_count,
                }
            )
        return len(expired)

    def _expire(self, record: AvailabilityRecord, hold: LedgerHold, now: datetime) -> None:
        self._decrement_held(record, hold)
        hold.status = HoldStatus.EXPIRED
        hold.resolved_at = now

    def _decrement_held(self, record: AvailabilityRecord, hold: LedgerHold) -> None:
        if record.held_count < hold.quantity:
            logger.critical(
                "Held count lower than an active hold",
                extra={
                    "occurrence_id": str(record.occurrence_id),
                    "hold_id": str(hold.id),
                    "held_count": record.held_count,
                    "hold_quantity": hold.quantity,
                }
            )
            raise LedgerInvariantError(
                f"Held count {record.held_count} cannot cover hold {hold.id} of {hold.quantity}",
                hold_id=str(hold.id),
            )
        record.held_count -= hold.quantity

    def _publish(self, record: AvailabilityRecord) -> None:
        metrics_collector.set_seats_remaining(str(record.occurrence_id), record.remaining)

    async def _after_capacity_freed(self, occurrence_id: UUID) -> None:
        """Offer freed seats to the waitlist once the ledger change is committed."""
        if not self.promote_waitlist:
            return
        from .waitlist_promoter import WaitlistPromoter

        try:
            await WaitlistPromoter(self.db, clock=self.clock, locks=self.locks).promote(occurrence_id)
        except Exception:
            await self.db.rollback()
            logger.error(
                "Waitlist promotion failed; the waitlist worker will retry",
                extra={"occurrence_id": str(occurrence_id)},
                exc_info=True
            )

    async def initialize(self, occurrence_id: UUID, capacity: int) -> AvailabilityRecord:
        """
        Create the counters for a new occurrence.

        The record is only flushed; the caller commits it together with the occurrence.
        """
        if capacity < 0:
            raise ValidationError(detail="Capacity must not be negative")
        record = AvailabilityRecord(
            occurrence_id=occurrence_id,
            capacity=capacity,
            confirmed_count=0,
            held_count=0,
        )
        self.db.add(record)
        await self.db.flush()
        return record

    async def get_availability(self, occurrence_id: UUID) -> AvailabilityRecord:
        """Return a fresh snapshot of the occurrence's counters."""
        stmt = (
            select(AvailabilityRecord)
            .where(AvailabilityRecord.occurrence_id == occurrence_id)
            .execution_options(populate_existing=True)
        )
        record = (await self.db.execute(stmt)).scalar_one_or_none()
        if record is None:
            raise NotFoundError(resource_type="availability", resource_id=str(occurrence_id))
        return record

    async def get_hold(self, hold_id: UUID) -> LedgerHold:
        return await self._load_hold(hold_id, refresh=True)

    async def hold(
        self,
        occurrence_id: UUID,
        quantity: int,
        ttl: Optional[timedelta] = None,
        buyer_id: Optional[str] = None,
    ) -> LedgerHold:
        """
        Reserve ``quantity`` seats until ``now + ttl``.

        Lapsed holds on the occurrence are reclaimed first, so abandoned checkouts
        never block new buyers.

        Raises:
            CapacityExceededError: If the seats do not fit
            NotFoundError: If the occurrence has no availability record
        """
        if quantity <= 0:
            raise ValidationError(detail="Hold quantity must be positive")
        if ttl is None:
            ttl = timedelta(seconds=settings.hold_ttl_seconds)

        async with self._occurrence_lock(occurrence_id):
            now = self.clock()
            record = await self._load_record(occurrence_id)
            reclaimed = await self._reclaim_expired(record, now)

            if quantity > record.remaining:
                remaining = record.remaining
                if reclaimed:
                    await self.db.commit()
                    self._publish(record)
                logger.warning(
                    "Hold rejected - insufficient capacity",
                    extra={
                        "occurrence_id": str(occurrence_id),
                        "requested": quantity,
                        "remaining": remaining,
                        "buyer_id": buyer_id,
                    }
                )
                raise CapacityExceededError(str(occurrence_id), quantity, remaining)

            hold = LedgerHold(
                occurrence_id=occurrence_id,
                quantity=quantity,
                buyer_id=buyer_id,
                status=HoldStatus.ACTIVE,
                expires_at=now + ttl,
            )
            record.held_count += quantity
            self.db.add(hold)
            await self.db.commit()

        self._publish(record)
        metrics_collector.record_hold_created()
        logger.info(
            "Hold created",
            extra={
                "hold_id": str(hold.id),
                "occurrence_id": str(occurrence_id),
                "quantity": quantity,
                "expires_at": hold.expires_at.isoformat(),
                "remaining": record.remaining,
            }
        )
        return hold

    async def release(self, hold_id: UUID) -> LedgerHold:
        """
        Give the seats of an unconfirmed hold back.

        Releasing a hold that is already released or expired is a no-op.

        Raises:
            LedgerInvariantError: If the hold was already confirmed
        """
        hold = await self._load_hold(hold_id)
        occurrence_id = hold.occurrence_id

        async with self._occurrence_lock(occurrence_id):
            hold = await self._load_hold(hold_id, refresh=True)
            if hold.status in (HoldStatus.RELEASED, HoldStatus.EXPIRED):
                logger.info(
                    "Hold already resolved, release ignored",
                    extra={"hold_id": str(hold_id), "status": hold.status}
                )
                return hold
            if hold.status == HoldStatus.CONFIRMED:
                logger.critical(
                    "Release called on a confirmed hold",
                    extra={"hold_id": str(hold_id), "occurrence_id": str(occurrence_id)}
                )
                raise LedgerInvariantError(
                    f"Hold {hold_id} is confirmed; use release_confirmed to give seats back",
                    hold_id=str(hold_id),
                )

            record = await self._load_record(occurrence_id)
            self._decrement_held(record, hold)
            hold.status = HoldStatus.RELEASED
            hold.resolved_at = self.clock()
            await self.db.commit()

        self._publish(record)
        metrics_collector.record_hold_released()
        logger.info(
            "Hold released",
            extra={
                "hold_id": str(hold_id),
                "occurrence_id": str(occurrence_id),
                "quantity": hold.quantity,
                "remaining": record.remaining,
            }
        )
        await self._after_capacity_freed(occurrence_id)
        return hold

    async def confirm(self, hold_id: UUID) -> LedgerHold:
        """
        Turn held seats into confirmed seats.

        Confirming a confirmed hold returns it unchanged.

        Raises:
            HoldExpiredError: If the hold lapsed or was released; the caller must re-hold
        """
        hold = await self._load_hold(hold_id)
        occurrence_id = hold.occurrence_id
        expired_at: Optional[datetime] = None

        async with self._occurrence_lock(occurrence_id):
            hold = await self._load_hold(hold_id, refresh=True)
            if hold.status == HoldStatus.CONFIRMED:
                return hold
            if hold.status in (HoldStatus.RELEASED, HoldStatus.EXPIRED):
                logger.warning(
                    "Confirm called on a resolved hold",
                    extra={"hold_id": str(hold_id), "status": hold.status}
                )
                raise HoldExpiredError(str(hold_id), hold.resolved_at or hold.expires_at)

            now = self.clock()
            record = await self._load_record(occurrence_id)
            if hold.expires_at <= now:
                self._expire(record, hold, now)
                await self.db.commit()
                expired_at = hold.expires_at
            else:
                self._decrement_held(record, hold)
                record.confirmed_count += hold.quantity
                hold.status = HoldStatus.CONFIRMED
                hold.resolved_at = now
                await self.db.commit()

        self._publish(record)
        if expired_at is not None:
            metrics_collector.record_holds_expired()
            logger.warning(
                "Confirm rejected - hold expired",
                extra={"hold_id": str(hold_id), "expired_at": expired_at.isoformat()}
            )
            raise HoldExpiredError(str(hold_id), expired_at)

        logger.info(
            "Hold confirmed",
            extra={
                "hold_id": str(hold_id),
                "occurrence_id": str(occurrence_id),
                "quantity": hold.quantity,
                "confirmed_count": record.confirmed_count,
            }
        )
        return hold

    async def refresh(self, hold_id: UUID, ttl: timedelta) -> LedgerHold:
        """
        Extend an active hold to at least ``now + ttl``.

        Raises:
            HoldExpiredError: If the hold already lapsed or was released
        """
        hold = await self._load_hold(hold_id)
        occurrence_id = hold.occurrence_id

        async with self._occurrence_lock(occurrence_id):
            hold = await self._load_hold(hold_id, refresh=True)
            if hold.status == HoldStatus.CONFIRMED:
                return hold
            if hold.status != HoldStatus.ACTIVE:
                raise HoldExpiredError(str(hold_id), hold.resolved_at or hold.expires_at)

            now = self.clock()
            if hold.expires_at <= now:
                record = await self._load_record(occurrence_id)
                self._expire(record, hold, now)
                await self.db.commit()
                self._publish(record)
                raise HoldExpiredError(str(hold_id), hold.expires_at)

            hold.expires_at = max(hold.expires_at, now + ttl)
            await self.db.commit()

        logger.debug(
            "Hold refreshed",
            extra={"hold_id": str(hold_id), "expires_at": hold.expires_at.isoformat()}
        )
        return hold

    async def release_confirmed(self, occurrence_id: UUID, quantity: int) -> AvailabilityRecord:
        """Give back confirmed seats after a cancellation or refund, then promote the waitlist."""
        if quantity <= 0:
            raise ValidationError(detail="Released quantity must be positive")

        async with self._occurrence_lock(occurrence_id):
            record = await self._load_record(occurrence_id)
            if record.confirmed_count < quantity:
                logger.critical(
                    "Release of more confirmed seats than exist",
                    extra={
                        "occurrence_id": str(occurrence_id),
                        "confirmed_count": record.confirmed_count,
                        "quantity": quantity,
                    }
                )
                raise LedgerInvariantError(
                    f"Cannot release {quantity} confirmed seats; only {record.confirmed_count} confirmed",
                    occurrence_id=str(occurrence_id),
                )
            record.confirmed_count -= quantity
            await self.db.commit()

        self._publish(record)
        logger.info(
            "Confirmed seats released",
            extra={
                "occurrence_id": str(occurrence_id),
                "quantity": quantity,
                "confirmed_count": record.confirmed_count,
                "remaining": record.remaining,
            }
        )
        await self._after_capacity_freed(occurrence_id)
        return record

    async def set_capacity(
        self,
        occurrence_id: UUID,
        capacity: int,
        actor: str = "system",
        reason: str = "",
    ) -> AvailabilityRecord:
        """
        Change an occurrence's capacity and record the adjustment.

        Raises:
            CapacityBelowConfirmedError: If fewer seats than already confirmed
            CapacityExceededError: If fewer seats than confirmed plus in-flight holds
        """
        if capacity < 0:
            raise ValidationError(detail="Capacity must not be negative")

        async with self._occurrence_lock(occurrence_id):
            record = await self._load_record(occurrence_id)
            await self._reclaim_expired(record, self.clock())

            if capacity < record.confirmed_count:
                logger.warning(
                    "Capacity change rejected - below confirmed",
                    extra={
                        "occurrence_id": str(occurrence_id),
                        "requested_capacity": capacity,
                        "confirmed_count": record.confirmed_count,
                    }
                )
                raise CapacityBelowConfirmedError(str(occurrence_id), capacity, record.confirmed_count)
            if capacity < record.confirmed_count + record.held_count:
                logger.warning(
                    "Capacity change rejected - holds in flight",
                    extra={
                        "occurrence_id": str(occurrence_id),
                        "requested_capacity": capacity,
                        "held_count": record.held_count,
                    }
                )
                raise CapacityExceededError(
                    str(occurrence_id),
                    requested=record.confirmed_count + record.held_count,
                    remaining=capacity,
                    detail=(
                        f"Capacity {capacity} is below the {record.confirmed_count} confirmed and "
                        f"{record.held_count} held seats of occurrence {occurrence_id}"
                    ),
                )

            previous = record.capacity
            record.capacity = capacity
            occurrence = await self.db.get(TripOccurrence, occurrence_id)
            if occurrence is not None:
                occurrence.capacity = capacity
            self.db.add(CapacityAdjustment(
                occurrence_id=occurrence_id,
                previous_capacity=previous,
                new_capacity=capacity,
                actor=actor,
                reason=reason,
            ))
            await self.db.commit()

        self._publish(record)
        logger.info(
            "Capacity changed",
            extra={
                "occurrence_id": str(occurrence_id),
                "previous_capacity": previous,
                "new_capacity": capacity,
                "actor": actor,
            }
        )
        if capacity > previous:
            await self._after_capacity_freed(occurrence_id)
        return record

    async def expire_holds(self, batch_size: int = 100) -> int:
        """
        Reclaim lapsed holds across all occurrences.

        Returns:
            Number of holds expired
        """
        now = self.clock()
        stmt = (
            select(LedgerHold.occurrence_id)
            .where(LedgerHold.status == HoldStatus.ACTIVE, LedgerHold.expires_at <= now)
            .distinct()
            .limit(batch_size)
        )
        occurrence_ids = list((await self.db.execute(stmt)).scalars())

        total = 0
        for occurrence_id in occurrence_ids:
            async with self._occurrence_lock(occurrence_id):
                record = await self._load_record(occurrence_id)
                count = await self._reclaim_expired(record, now)
                await self.db.commit()
            self._publish(record)
            total += count
            if count:
                await self._after_capacity_freed(occurrence_id)

        if total:
            logger.info("Expired holds swept", extra={"expired_count": total})
        return total
