"""Background worker for scheduled and stale transfer requests."""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from ..services.transfer_service import TransferService
from .base import BaseWorker

logger = logging.getLogger(__name__)


class TransferWorker(BaseWorker):
    """Execute due scheduled transfers and expire unanswered immediate ones."""

    def __init__(self, interval_seconds: float = 30, **kwargs):
        super().__init__(name="transfer", interval_seconds=interval_seconds, **kwargs)

    async def process(self, db: AsyncSession) -> dict[str, list]:
        service = TransferService(db, self.clock)
        outcome = await service.execute_due()
        outcome["stale_expired"] = await service.expire_stale()

        if any(outcome.values()):
            logger.info(
                "Processed transfer requests",
                extra={
                    "executed": len(outcome["executed"]),
                    "expired": len(outcome["expired"]),
                    "stale_expired": len(outcome["stale_expired"]),
                    "worker": self.name,
                },
            )
        return outcome
