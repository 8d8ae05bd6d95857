"""Background worker for expiring abandoned checkout sessions."""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from ..services.checkout_orchestrator import CheckoutOrchestrator
from ..services.idempotency_service import IdempotencyService
from .base import BaseWorker

logger = logging.getLogger(__name__)


class SessionExpiryWorker(BaseWorker):
    """
    Expires checkout sessions whose buyer never came back from the gateway.

    Their holds are released and their pending bookings cancelled. Stale
    idempotency records are purged on the same tick.
    """

    def __init__(self, interval_seconds: int = 60, batch_size: int = 100, **kwargs):
        super().__init__(name="SessionExpiry", interval_seconds=interval_seconds, **kwargs)
        self.batch_size = batch_size

    async def process(self, db: AsyncSession) -> int:
        expired = await CheckoutOrchestrator(db).expire_stale_sessions(batch_size=self.batch_size)
        if expired:
            logger.info(
                f"Expired {expired} checkout sessions",
                extra={"expired_count": expired, "worker": self.name}
            )
        await IdempotencyService(db).cleanup_expired_records()
        return expired
