"""Trip series service: materializing and editing groups of dated occurrences."""

import logging
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import Clock, utcnow
from ..core.exceptions import (
    ConflictError,
    EmptyDateSetError,
    NonSharedFieldInBulkEditError,
    NotFoundError,
    ValidationError,
)
from ..core.locks import KeyedLock, advisory_xact_lock, occurrence_locks
from ..models.trip import PER_OCCURRENCE_FIELDS, SHARED_FIELDS, OccurrenceStatus, TripOccurrence
from ..schemas.series import DateRange, TripTemplate
from .availability_ledger import AvailabilityLedger

logger = logging.getLogger(__name__)


def _series_key(series_id: UUID) -> tuple[str, UUID]:
    return ("series", series_id)


class TripSeriesManager:
    """Service for creating and editing trip occurrences and their series."""

    def __init__(self, db: AsyncSession, clock: Clock = utcnow, locks: Optional[KeyedLock] = None):
        self.db = db
        self.clock = clock
        self.locks = locks or occurrence_locks
        self.ledger = AvailabilityLedger(db, clock=clock, locks=self.locks)

    def _validate_date_ranges(self, date_ranges: list[DateRange], taken: set = frozenset()) -> None:
        seen = set(taken)
        for date_range in date_ranges:
            if date_range.ends_on <= date_range.starts_on:
                raise ValidationError(
                    detail=f"Trip starting {date_range.starts_on} must end after it starts",
                    errors={"starts_on": str(date_range.starts_on), "ends_on": str(date_range.ends_on)},
                )
            if date_range.starts_on in seen:
                raise ValidationError(
                    detail=f"A series cannot contain two trips starting on {date_range.starts_on}",
                    errors={"starts_on": str(date_range.starts_on)},
                )
            seen.add(date_range.starts_on)

    def _shared_values(self, template: TripTemplate) -> dict[str, Any]:
        return {
            "name": template.name,
            "description": template.description,
            "destination": template.destination,
            "country": template.country,
            "image_urls": list(template.image_urls),
            "price_amount": template.price.amount,
            "price_currency": template.price.currency,
            "cancellation_days_limit": template.cancellation_days_limit,
            "is_visible": template.is_visible,
        }

    async def _materialize(
        self,
        series_id: Optional[UUID],
        shared: dict[str, Any],
        capacity: int,
        date_ranges: list[DateRange],
    ) -> list[TripOccurrence]:
        occurrences = [
            TripOccurrence(
                id=uuid4(),
                series_id=series_id,
                starts_on=date_range.starts_on,
                ends_on=date_range.ends_on,
                capacity=capacity,
                status=OccurrenceStatus.ACTIVE,
                **shared,
            )
            for date_range in sorted(date_ranges, key=lambda r: r.starts_on)
        ]
        self.db.add_all(occurrences)
        await self.db.flush()
        for occurrence in occurrences:
            await self.ledger.initialize(occurrence.id, capacity)
        return occurrences

    async def create_series(
        self,
        template: TripTemplate,
        date_ranges: list[DateRange],
    ) -> tuple[UUID, list[TripOccurrence]]:
        """
        Create one occurrence per date range, all sharing a new series id.

        Raises:
            EmptyDateSetError: If no date ranges are given
            ValidationError: If a range is inverted or two ranges start on the same day
        """
        if not date_ranges:
            raise EmptyDateSetError()
        self._validate_date_ranges(date_ranges)

        series_id = uuid4()
        try:
            occurrences = await self._materialize(
                series_id, self._shared_values(template), template.capacity, date_ranges
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Trip series created",
            extra={
                "series_id": str(series_id),
                "occurrence_count": len(occurrences),
                "capacity": template.capacity,
            }
        )
        return series_id, occurrences

    async def create_occurrence(self, template: TripTemplate, date_range: DateRange) -> TripOccurrence:
        """Create a standalone trip that belongs to no series."""
        self._validate_date_ranges([date_range])
        try:
            occurrences = await self._materialize(
                None, self._shared_values(template), template.capacity, [date_range]
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info("Standalone occurrence created", extra={"occurrence_id": str(occurrences[0].id)})
        return occurrences[0]

    async def extend_series(
        self,
        series_id: UUID,
        date_ranges: list[DateRange],
        capacity: Optional[int] = None,
    ) -> list[TripOccurrence]:
        """
        Add dated occurrences to an existing series, copying its shared fields.

        Capacity defaults to that of the latest existing member.
        """
        if not date_ranges:
            raise EmptyDateSetError()

        async with self.locks.acquire(_series_key(series_id)):
            try:
                members = await self.get_series(series_id)
                self._validate_date_ranges(date_ranges, taken={m.starts_on for m in members})
                latest = members[-1]
                shared = {field: getattr(latest, field) for field in SHARED_FIELDS}
                occurrences = await self._materialize(
                    series_id, shared, latest.capacity if capacity is None else capacity, date_ranges
                )
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

        logger.info(
            "Trip series extended",
            extra={"series_id": str(series_id), "added": len(occurrences)}
        )
        return occurrences

    def _check_bulk_changes(self, changes: dict[str, Any]) -> None:
        if not changes:
            raise ValidationError(detail="Bulk edit needs at least one field change")
        per_occurrence = [field for field in changes if field in PER_OCCURRENCE_FIELDS]
        if per_occurrence:
            raise NonSharedFieldInBulkEditError(per_occurrence)
        unknown = [field for field in changes if field not in SHARED_FIELDS]
        if unknown:
            raise ValidationError(detail=f"Unknown fields {sorted(unknown)}", errors={"fields": sorted(unknown)})
        if "name" in changes and not changes["name"]:
            raise ValidationError(detail="Name must not be empty")
        for field in ("price_amount", "cancellation_days_limit"):
            if field in changes and (not isinstance(changes[field], int) or changes[field] < 0):
                raise ValidationError(detail=f"{field} must be a non-negative integer")

    def _apply_changes(self, occurrence: TripOccurrence, changes: dict[str, Any]) -> None:
        for field, value in changes.items():
            setattr(occurrence, field, list(value) if field == "image_urls" else value)

    async def bulk_edit(self, series_id: UUID, changes: dict[str, Any]) -> list[TripOccurrence]:
        """
        Apply shared-field changes to every occurrence of a series in one transaction.

        All member occurrences are locked for the duration of the write; any failure
        rolls the whole series back.

        Raises:
            NonSharedFieldInBulkEditError: If a date, capacity or status field is included
            NotFoundError: If the series has no occurrences
        """
        self._check_bulk_changes(changes)
        member_ids = [occurrence.id for occurrence in await self.get_series(series_id)]

        async with self.locks.acquire(_series_key(series_id), *member_ids):
            try:
                await advisory_xact_lock(self.db, f"series:{series_id}")
                members = await self.get_series(series_id, refresh=True)
                for occurrence in members:
                    self._apply_changes(occurrence, changes)
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                logger.error(
                    "Bulk edit rolled back",
                    extra={"series_id": str(series_id), "fields": sorted(changes)},
                    exc_info=True
                )
                raise

        logger.info(
            "Trip series bulk edited",
            extra={
                "series_id": str(series_id),
                "fields": sorted(changes),
                "occurrence_count": len(members),
            }
        )
        return members

    async def edit_occurrence(
        self,
        occurrence_id: UUID,
        capacity: Optional[int] = None,
        date_range: Optional[DateRange] = None,
        actor: str = "admin",
    ) -> TripOccurrence:
        """
        Change the capacity and/or dates of a single occurrence.

        Raises:
            CapacityBelowConfirmedError: If the new capacity is below confirmed seats
            CapacityExceededError: If the new capacity is below confirmed plus held seats
        """
        occurrence = await self.get_occurrence_or_raise(occurrence_id)

        try:
            if date_range is not None:
                self._validate_date_ranges([date_range])
                if occurrence.series_id is not None and date_range.starts_on != occurrence.starts_on:
                    clash = await self.db.execute(
                        select(TripOccurrence.id).where(
                            TripOccurrence.series_id == occurrence.series_id,
                            TripOccurrence.starts_on == date_range.starts_on,
                            TripOccurrence.id != occurrence_id,
                        )
                    )
                    if clash.first() is not None:
                        raise ConflictError(
                            detail=f"Series {occurrence.series_id} already has a trip on {date_range.starts_on}"
                        )
                occurrence.starts_on = date_range.starts_on
                occurrence.ends_on = date_range.ends_on

            if capacity is not None and capacity != occurrence.capacity:
                # Commits the date change together with the capacity change
                await self.ledger.set_capacity(occurrence_id, capacity, actor=actor, reason="occurrence edit")
            else:
                await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "Occurrence edited",
            extra={
                "occurrence_id": str(occurrence_id),
                "capacity": occurrence.capacity,
                "starts_on": occurrence.starts_on.isoformat(),
            }
        )
        return occurrence

    async def retire_occurrence(self, occurrence_id: UUID) -> TripOccurrence:
        """Stop selling an occurrence; it stays readable for its bookings."""
        occurrence = await self.get_occurrence_or_raise(occurrence_id)
        if occurrence.status != OccurrenceStatus.RETIRED:
            occurrence.status = OccurrenceStatus.RETIRED
            await self.db.commit()
            logger.info("Occurrence retired", extra={"occurrence_id": str(occurrence_id)})
        return occurrence

    async def get_series(self, series_id: UUID, refresh: bool = False) -> list[TripOccurrence]:
        """Return the occurrences of a series ordered by start date."""
        stmt = (
            select(TripOccurrence)
            .where(TripOccurrence.series_id == series_id)
            .order_by(TripOccurrence.starts_on)
        )
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        members = list((await self.db.execute(stmt)).scalars())
        if not members:
            logger.warning("Series not found", extra={"series_id": str(series_id)})
            raise NotFoundError(resource_type="series", resource_id=str(series_id))
        return members

    async def get_occurrence_by_id(self, occurrence_id: UUID) -> TripOccurrence | None:
        stmt = select(TripOccurrence).where(TripOccurrence.id == occurrence_id)
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def get_occurrence_or_raise(self, occurrence_id: UUID) -> TripOccurrence:
        """
        Get occurrence by ID or raise NotFoundError.

        Raises:
            NotFoundError: If occurrence not found
        """
        occurrence = await self.get_occurrence_by_id(occurrence_id)
        if occurrence is None:
            logger.warning("Occurrence not found", extra={"occurrence_id": str(occurrence_id)})
            raise NotFoundError(resource_type="occurrence", resource_id=str(occurrence_id))
        return occurrence
