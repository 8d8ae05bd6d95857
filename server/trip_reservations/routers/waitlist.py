"""Waitlist router for joining, leaving and inspecting occurrence queues."""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.dependencies import AdminUser, BuyerId, DatabaseSession
from ..models.waitlist import WaitlistEntry as WaitlistEntryModel
from ..models.waitlist import WaitlistStatus
from ..schemas.waitlist import (
    JoinWaitlistRequest,
    LeaveWaitlistRequest,
    ListWaitlistRequest,
    WaitlistEntry,
    WaitlistQueue,
)
from ..services.waitlist_promoter import WaitlistPromoter
from .common import enum_value, json_response, parse_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/waitlist", tags=["waitlist"])


def _convert_waitlist_entry_to_schema(entry_model: WaitlistEntryModel, position: Optional[int] = None) -> WaitlistEntry:
    """Convert waitlist entry model to schema."""
    return WaitlistEntry(
        id=str(entry_model.id),
        occurrence_id=str(entry_model.occurrence_id),
        buyer_id=entry_model.buyer_id,
        quantity=entry_model.quantity,
        status=enum_value(entry_model.status),
        position=position,
        requested_at=entry_model.requested_at,
        offer_expires_at=entry_model.offer_expires_at,
    )


async def _positions(promoter: WaitlistPromoter, occurrence_id: UUID) -> dict[UUID, int]:
    """1-based queue position of every waiting entry."""
    waiting = [e for e in await promoter.list_queue(occurrence_id) if e.status == WaitlistStatus.WAITING]
    return {entry.id: index for index, entry in enumerate(waiting, start=1)}


@router.post("/join", response_model=WaitlistEntry)
async def join_waitlist(
    request: JoinWaitlistRequest,
    db: AsyncSession = DatabaseSession,
    buyer_id: str = BuyerId,
) -> JSONResponse:
    """
    Queue for seats on an occurrence.

    If seats are free the entry is offered right away. Joining twice returns the
    existing entry.
    """
    occurrence_id = parse_id(request.occurrence_id, "occurrence_id")
    promoter = WaitlistPromoter(db)
    entry = await promoter.join(occurrence_id, buyer_id, request.quantity)
    positions = await _positions(promoter, occurrence_id)
    return json_response(_convert_waitlist_entry_to_schema(entry, positions.get(entry.id)))


@router.post("/leave", response_model=WaitlistEntry)
async def leave_waitlist(
    request: LeaveWaitlistRequest,
    db: AsyncSession = DatabaseSession,
    buyer_id: str = BuyerId,
) -> JSONResponse:
    """Leave the queue; an open offer is given back to the next buyer."""
    entry = await WaitlistPromoter(db).leave(parse_id(request.occurrence_id, "occurrence_id"), buyer_id)
    return json_response(_convert_waitlist_entry_to_schema(entry))


@router.post("/list", response_model=WaitlistQueue)
async def list_waitlist(
    request: ListWaitlistRequest,
    db: AsyncSession = DatabaseSession,
    admin: dict = AdminUser,
) -> JSONResponse:
    occurrence_id = parse_id(request.occurrence_id, "occurrence_id")
    promoter = WaitlistPromoter(db)
    entries = await promoter.list_queue(occurrence_id)
    positions = await _positions(promoter, occurrence_id)
    return json_response(WaitlistQueue(
        occurrence_id=str(occurrence_id),
        entries=[_convert_waitlist_entry_to_schema(e, positions.get(e.id)) for e in entries],
    ))
