"""Trip series and occurrence administration router."""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.dependencies import AdminUser, DatabaseSession
from ..models.trip import TripOccurrence
from ..schemas.common import Money
from ..schemas.series import (
    BulkEditRequest,
    CreateOccurrenceRequest,
    CreateSeriesRequest,
    EditOccurrenceRequest,
    ExtendSeriesRequest,
    Occurrence,
    OccurrenceIdRequest,
    Series,
    SeriesIdRequest,
)
from ..services.trip_series_manager import TripSeriesManager
from .common import enum_value, json_response, parse_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["series"])


def _convert_occurrence_to_schema(occurrence: TripOccurrence) -> Occurrence:
    """Convert occurrence model to schema."""
    return Occurrence(
        id=str(occurrence.id),
        series_id=str(occurrence.series_id) if occurrence.series_id else None,
        name=occurrence.name,
        description=occurrence.description,
        destination=occurrence.destination,
        country=occurrence.country,
        image_urls=list(occurrence.image_urls or []),
        price=Money(amount=occurrence.price_amount, currency=occurrence.price_currency),
        cancellation_days_limit=occurrence.cancellation_days_limit,
        is_visible=occurrence.is_visible,
        starts_on=occurrence.starts_on,
        ends_on=occurrence.ends_on,
        capacity=occurrence.capacity,
        status=enum_value(occurrence.status),
        updated_at=occurrence.updated_at,
    )


def _series_response(series_id, occurrences: list[TripOccurrence]) -> JSONResponse:
    return json_response(Series(
        series_id=str(series_id),
        occurrences=[_convert_occurrence_to_schema(o) for o in occurrences],
    ))


@router.post("/series/create", response_model=Series)
async def create_series(
    request: CreateSeriesRequest,
    db: AsyncSession = DatabaseSession,
    admin: dict = AdminUser,
) -> JSONResponse:
    """Create a series with one occurrence per date range."""
    series_id, occurrences = await TripSeriesManager(db).create_series(request.template, request.dates)
    logger.info(
        "Series created via API",
        extra={"series_id": str(series_id), "admin": admin["user_id"], "occurrence_count": len(occurrences)}
    )
    return _series_response(series_id, occurrences)


@router.post("/series/bulk-edit", response_model=Series)
async def bulk_edit_series(
    request: BulkEditRequest,
    db: AsyncSession = DatabaseSession,
    admin: dict = AdminUser,
) -> JSONResponse:
    """
    Change shared fields on every occurrence of a series.

    Either all occurrences change or none do.
    """
    series_id = parse_id(request.series_id, "series_id")
    occurrences = await TripSeriesManager(db).bulk_edit(series_id, request.changes)
    return _series_response(series_id, occurrences)


@router.post("/series/extend", response_model=Series)
async def extend_series(
    request: ExtendSeriesRequest,
    db: AsyncSession = DatabaseSession,
    admin: dict = AdminUser,
) -> JSONResponse:
    """Add dated occurrences to a series."""
    series_id = parse_id(request.series_id, "series_id")
    manager = TripSeriesManager(db)
    await manager.extend_series(series_id, request.dates, capacity=request.capacity)
    return _series_response(series_id, await manager.get_series(series_id, refresh=True))


@router.post("/series/get", response_model=Series)
async def get_series(
    request: SeriesIdRequest,
    db: AsyncSession = DatabaseSession,
    admin: dict = AdminUser,
) -> JSONResponse:
    series_id = parse_id(request.series_id, "series_id")
    return _series_response(series_id, await TripSeriesManager(db).get_series(series_id))


@router.post("/occurrence/create", response_model=Occurrence)
async def create_occurrence(
    request: CreateOccurrenceRequest,
    db: AsyncSession = DatabaseSession,
    admin: dict = AdminUser,
) -> JSONResponse:
    """Create a standalone occurrence outside any series."""
    occurrence = await TripSeriesManager(db).create_occurrence(request.template, request.dates)
    return json_response(_convert_occurrence_to_schema(occurrence))


@router.post("/occurrence/edit", response_model=Occurrence)
async def edit_occurrence(
    request: EditOccurrenceRequest,
    db: AsyncSession = DatabaseSession,
    admin: dict = AdminUser,
) -> JSONResponse:
    """
    Change one occurrence's capacity or dates.

    Capacity cannot drop below the seats already confirmed or held.
    """
    occurrence_id = parse_id(request.occurrence_id, "occurrence_id")
    manager = TripSeriesManager(db)
    await manager.edit_occurrence(
        occurrence_id,
        capacity=request.capacity,
        date_range=request.dates,
        actor=admin["user_id"],
    )
    occurrence = await manager.get_occurrence_or_raise(occurrence_id)
    await db.refresh(occurrence)
    return json_response(_convert_occurrence_to_schema(occurrence))


@router.post("/occurrence/retire", response_model=Occurrence)
async def retire_occurrence(
    request: OccurrenceIdRequest,
    db: AsyncSession = DatabaseSession,
    admin: dict = AdminUser,
) -> JSONResponse:
    occurrence_id = parse_id(request.occurrence_id, "occurrence_id")
    occurrence = await TripSeriesManager(db).retire_occurrence(occurrence_id)
    return json_response(_convert_occurrence_to_schema(occurrence))


@router.post("/occurrence/get", response_model=Occurrence)
async def get_occurrence(
    request: OccurrenceIdRequest,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    """Public view of one occurrence."""
    occurrence_id = parse_id(request.occurrence_id, "occurrence_id")
    occurrence = await TripSeriesManager(db).get_occurrence_or_raise(occurrence_id)
    return json_response(_convert_occurrence_to_schema(occurrence))
