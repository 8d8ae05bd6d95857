"""Availability router."""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.dependencies import DatabaseSession
from ..schemas.availability import Availability, GetAvailabilityRequest
from ..services.availability_ledger import AvailabilityLedger
from .common import json_response, parse_id

router = APIRouter(prefix="/v1/availability", tags=["availability"])


@router.post("/get", response_model=Availability)
async def get_availability(
    request: GetAvailabilityRequest,
    db: AsyncSession = DatabaseSession,
) -> JSONResponse:
    """
    Current seat counters of an occurrence.

    Lapsed holds still count as held until they are swept or reclaimed by the
    next hold on the occurrence.
    """
    occurrence_id = parse_id(request.occurrence_id, "occurrence_id")
    record = await AvailabilityLedger(db).get_availability(occurrence_id)
    return json_response(Availability(
        occurrence_id=str(record.occurrence_id),
        capacity=record.capacity,
        confirmed=record.confirmed_count,
        held=record.held_count,
        remaining=record.remaining,
    ))
