"""Background worker for promoting waitlists."""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from ..services.waitlist_promoter import WaitlistPromoter
from .base import BaseWorker

logger = logging.getLogger(__name__)


class WaitlistWorker(BaseWorker):
    """
    Background worker that hands freed seats to waiting buyers.

    Promotion normally runs right after seats are freed. This pass also expires
    lapsed offers and retries promotions that failed inline.
    """

    def __init__(self, interval_seconds: int = 30, batch_size: int = 100, **kwargs):
        super().__init__(name="Waitlist", interval_seconds=interval_seconds, **kwargs)
        self.batch_size = batch_size

    async def process(self, db: AsyncSession) -> int:
        promoter = WaitlistPromoter(db)
        occurrence_ids = await promoter.occurrences_with_queue(limit=self.batch_size)

        total_offered = 0
        for occurrence_id in occurrence_ids:
            try:
                offered = await promoter.promote(occurrence_id)
            except Exception as e:
                logger.error(
                    f"Error promoting waitlist for occurrence {occurrence_id}: {e!s}",
                    exc_info=True,
                    extra={"occurrence_id": str(occurrence_id), "worker": self.name}
                )
                continue
            total_offered += len(offered)

        if total_offered:
            logger.info(
                f"Offered seats to {total_offered} waitlist entries",
                extra={"offered_count": total_offered, "occurrence_count": len(occurrence_ids), "worker": self.name}
            )
        return total_offered
