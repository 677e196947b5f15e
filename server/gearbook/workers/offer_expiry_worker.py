"""Background worker that expires waitlist offers and passes their windows on."""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from ..services.waitlist_service import WaitlistService
from .base import BaseWorker

logger = logging.getLogger(__name__)


class OfferExpiryWorker(BaseWorker):
    """
    Expire pending offers past their hold time.

    Each expired window is offered to the next eligible entry in line. A
    failure on one window is logged and does not stop the others.
    """

    def __init__(self, interval_seconds: float = 60, **kwargs):
        super().__init__(name="offer_expiry", interval_seconds=interval_seconds, **kwargs)

    async def process(self, db: AsyncSession) -> int:
        """Returns the number of follow-up offers created."""
        service = WaitlistService(db, self.clock)
        expired_ids = await service.process_expired()
        if not expired_ids:
            return 0

        # Plain values only: a rollback below expires loaded rows
        windows = [
            (offer.id, entry.id, entry.resource_id, offer.offered_start, offer.offered_end, entry.guild_id)
            for offer, entry in await service.get_offers_with_entries(expired_ids)
        ]

        reoffered = 0
        for offer_id, entry_id, resource_id, start, end, guild_id in windows:
            try:
                next_offer = await service.create_offer_for_freed_window(
                    resource_id, start, end, guild_id, exclude_entry_id=entry_id
                )
            except Exception as e:
                await db.rollback()
                logger.error(
                    f"Error re-offering expired window: {e!s}",
                    exc_info=True,
                    extra={"offer_id": str(offer_id), "worker": self.name},
                )
                continue
            if next_offer is not None:
                reoffered += 1

        logger.info(
            f"Expired {len(expired_ids)} offers",
            extra={"expired_count": len(expired_ids), "reoffered": reoffered, "worker": self.name},
        )
        return reoffered
