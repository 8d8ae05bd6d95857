"""Background worker for expiring holds."""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from ..services.availability_ledger import AvailabilityLedger
from .base import BaseWorker

logger = logging.getLogger(__name__)


class HoldExpiryWorker(BaseWorker):
    """
    Background worker that expires holds past their TTL.

    Holds are also reclaimed lazily whenever a new hold is placed on the same
    occurrence; this sweep covers occurrences nobody is buying.
    """

    def __init__(self, interval_seconds: int = 60, batch_size: int = 100, **kwargs):
        super().__init__(name="HoldExpiry", interval_seconds=interval_seconds, **kwargs)
        self.batch_size = batch_size

    async def process(self, db: AsyncSession) -> int:
        expired_count = await AvailabilityLedger(db).expire_holds(batch_size=self.batch_size)
        if expired_count > 0:
            logger.info(
                f"Expired {expired_count} holds",
                extra={"expired_count": expired_count, "worker": self.name}
            )
        return expired_count
