"""Health check router."""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .. import __version__
from ..core.clock import utcnow
from ..core.config import settings
from ..core.dependencies import get_db
from ..schemas.health import HealthResponse, HealthStatus
from .common import json_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/health", tags=["health"])


async def _database_answers(db: AsyncSession) -> bool:
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Health ping could not reach the database")
        return False
    return True


@router.post("/ping", response_model=HealthResponse)
async def health_ping(db: AsyncSession = Depends(get_db)) -> JSONResponse:
    """
    Report whether the service can take checkouts.

    Answers 200 either way; ``status`` is degraded when the database does not respond.
    """
    database = await _database_answers(db)
    response_data = HealthResponse(
        status=HealthStatus.HEALTHY if database else HealthStatus.DEGRADED,
        timestamp=utcnow(),
        version=__version__,
        database=database,
        gateway_mode=settings.gateway_mode,
    )

    logger.debug(
        "Health ping answered",
        extra={"status": response_data.status, "database": database}
    )

    return json_response(response_data)
