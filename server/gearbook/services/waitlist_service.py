"""Waitlist service: FIFO queues per resource and time-boxed offers on freed windows."""

import logging
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import Clock, system_clock
from ..core.observability import metrics_collector
from ..models.reservation import Reservation, ReservationAction, ReservationLog, ReservationStatus
from ..models.waitlist import OfferStatus, WaitlistEntry, WaitlistOffer
from ..schemas.waitlist import JoinWaitlistResult
from .conflict_service import ConflictService
from .intervals import overlap_clause
from .resource_service import ResourceService

logger = logging.getLogger(__name__)


class WaitlistService:
    """Service for waitlist-related operations."""

    def __init__(self, db: AsyncSession, clock: Clock = system_clock):
        self.db = db
        self.clock = clock
        self.resources = ResourceService(db, clock)
        self.conflicts = ConflictService(db)

    async def join_waitlist(
        self,
        guild_id: int,
        resource_id: UUID,
        user_id: int,
        desired_start: datetime,
        desired_end: datetime,
    ) -> JoinWaitlistResult:
        """
        Queue a user for a window on a resource.

        Idempotent: an active entry of the same user on the same resource
        whose window overlaps the requested one is returned instead of a new
        entry.

        Raises:
            NotFoundError: If the resource does not belong to the guild
        """
        if desired_start >= desired_end:
            return JoinWaitlistResult.invalid_window("Start time must be before end time")

        now = self.clock.now()
        if desired_start <= now:
            return JoinWaitlistResult.invalid_window("Start time must be in the future")

        await self.resources.get_resource_with_lock(resource_id, guild_id)

        stmt = select(WaitlistEntry).where(
            WaitlistEntry.resource_id == resource_id,
            WaitlistEntry.user_id == user_id,
            WaitlistEntry.canceled_at.is_(None),
            overlap_clause(WaitlistEntry.desired_start, WaitlistEntry.desired_end, desired_start, desired_end),
        )
        existing_entry = (await self.db.execute(stmt)).scalars().first()
        if existing_entry:
            await self.db.commit()
            logger.info(
                "User already on waitlist - returning existing entry",
                extra={
                    "waitlist_entry_id": str(existing_entry.id),
                    "resource_id": str(resource_id),
                    "user_id": user_id,
                },
            )
            return JoinWaitlistResult.already_exists(existing_entry.id)

        entry = WaitlistEntry(
            guild_id=guild_id,
            resource_id=resource_id,
            user_id=user_id,
            desired_start=desired_start,
            desired_end=desired_end,
            created_at=now,
        )
        self.db.add(entry)
        await self.db.commit()

        await self._refresh_gauge(resource_id)
        logger.info(
            "User joined waitlist",
            extra={
                "waitlist_entry_id": str(entry.id),
                "resource_id": str(resource_id),
                "user_id": user_id,
                "desired_start": desired_start.isoformat(),
                "desired_end": desired_end.isoformat(),
            },
        )
        return JoinWaitlistResult.joined(entry.id)

    async def leave_waitlist(self, entry_id: UUID, user_id: int) -> bool:
        """Cancel the user's own active entry. False if missing, foreign or already inactive."""
        entry = await self.get_waitlist_entry_by_id(entry_id)
        if entry is None or entry.user_id != user_id:
            return False
        return await self._cancel_entry(entry, reason="left")

    async def admin_cancel(self, entry_id: UUID) -> bool:
        entry = await self.get_waitlist_entry_by_id(entry_id)
        if entry is None:
            return False
        return await self._cancel_entry(entry, reason="admin_cancel")

    async def _cancel_entry(self, entry: WaitlistEntry, reason: str) -> bool:
        if entry.canceled_at is not None:
            return False

        now = self.clock.now()
        entry.canceled_at = now
        result = await self.db.execute(
            update(WaitlistOffer)
            .where(
                WaitlistOffer.waitlist_entry_id == entry.id,
                WaitlistOffer.status == OfferStatus.PENDING,
            )
            .values(status=OfferStatus.EXPIRED)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        metrics_collector.record_offer(OfferStatus.EXPIRED.value, result.rowcount or 0)
        await self._refresh_gauge(entry.resource_id)
        logger.info(
            "Waitlist entry canceled",
            extra={
                "waitlist_entry_id": str(entry.id),
                "reason": reason,
                "offers_expired": result.rowcount,
            },
        )
        return True

    async def create_offer_for_freed_window(
        self,
        resource_id: UUID,
        available_start: datetime,
        available_end: datetime,
        guild_id: int,
        exclude_entry_id: Optional[UUID] = None,
    ) -> Optional[WaitlistOffer]:
        """
        Offer a freed window to the earliest-joined active entry whose desired window fits inside it.

        An entry that already holds a live pending offer overlapping the
        window is skipped, so no entry ever holds two of them. Past offers do
        not count: a user who declined an earlier window keeps their place in
        line for later ones.

        Args:
            exclude_entry_id: Entry that just gave this window up (declined
                it, let it lapse or left the queue); it is not offered the
                same window again

        Returns:
            The new pending offer, or None if nobody in the queue fits
        """
        if available_start >= available_end:
            return None

        await self.resources.lock_resource(resource_id)
        now = self.clock.now()

        holds_live_offer = (
            select(WaitlistOffer.id)
            .where(
                WaitlistOffer.waitlist_entry_id == WaitlistEntry.id,
                WaitlistOffer.status == OfferStatus.PENDING,
                WaitlistOffer.expires_at > now,
                overlap_clause(WaitlistOffer.offered_start, WaitlistOffer.offered_end, available_start, available_end),
            )
            .exists()
        )
        conditions = [
            WaitlistEntry.resource_id == resource_id,
            WaitlistEntry.guild_id == guild_id,
            WaitlistEntry.canceled_at.is_(None),
            WaitlistEntry.desired_start >= available_start,
            WaitlistEntry.desired_end <= available_end,
            ~holds_live_offer,
        ]
        if exclude_entry_id is not None:
            conditions.append(WaitlistEntry.id != exclude_entry_id)

        stmt = select(WaitlistEntry).where(*conditions).order_by(WaitlistEntry.created_at).limit(1)
        entry = (await self.db.execute(stmt)).scalar_one_or_none()

        if entry is None:
            await self.db.commit()
            logger.info(
                "No waitlist entry fits freed window",
                extra={
                    "resource_id": str(resource_id),
                    "available_start": available_start.isoformat(),
                    "available_end": available_end.isoformat(),
                },
            )
            return None

        hold_minutes = await self.resources.get_offer_hold_minutes(guild_id)
        offer = WaitlistOffer(
            waitlist_entry_id=entry.id,
            offered_start=available_start,
            offered_end=available_end,
            expires_at=now + timedelta(minutes=hold_minutes),
            status=OfferStatus.PENDING,
            created_at=now,
        )
        self.db.add(offer)
        await self.db.commit()

        metrics_collector.record_offer("created")
        logger.info(
            "Created waitlist offer",
            extra={
                "offer_id": str(offer.id),
                "waitlist_entry_id": str(entry.id),
                "user_id": entry.user_id,
                "resource_id": str(resource_id),
                "expires_at": offer.expires_at.isoformat(),
            },
        )
        return offer

    async def pass_on(self, offer: WaitlistOffer, entry: WaitlistEntry) -> Optional[WaitlistOffer]:
        """Offer the window of a declined, lapsed or withdrawn offer to the next entry in line."""
        return await self.create_offer_for_freed_window(
            entry.resource_id,
            offer.offered_start,
            offer.offered_end,
            entry.guild_id,
            exclude_entry_id=entry.id,
        )

    async def accept_offer(self, offer_id: UUID, user_id: int) -> Optional[UUID]:
        """
        Turn a live offer into a confirmed reservation of the offered window.

        Returns None, changing nothing else, when the offer is missing, not
        the user's or no longer pending. A pending offer past its deadline, or
        whose window was booked in the meantime, is marked expired.

        Returns:
            ID of the new reservation
        """
        found = await self.get_offer_with_entry(offer_id)
        if found is None:
            return None
        offer, entry = found

        if entry.user_id != user_id or offer.status != OfferStatus.PENDING:
            logger.info(
                "Offer not acceptable",
                extra={"offer_id": str(offer_id), "user_id": user_id, "status": offer.status},
            )
            await self.db.commit()
            return None

        await self.resources.lock_resource(entry.resource_id)
        now = self.clock.now()

        if now >= offer.expires_at:
            offer.status = OfferStatus.EXPIRED
            await self.db.commit()
            metrics_collector.record_offer(OfferStatus.EXPIRED.value)
            logger.info("Offer accepted after its hold expired", extra={"offer_id": str(offer_id)})
            return None

        if await self.conflicts.has_conflict(entry.resource_id, offer.offered_start, offer.offered_end):
            offer.status = OfferStatus.EXPIRED
            await self.db.commit()
            metrics_collector.record_offer(OfferStatus.EXPIRED.value)
            logger.warning(
                "Offered window was booked before acceptance",
                extra={"offer_id": str(offer_id), "resource_id": str(entry.resource_id)},
            )
            return None

        reservation = Reservation(
            resource_id=entry.resource_id,
            user_id=user_id,
            start_time=offer.offered_start,
            end_time=offer.offered_end,
            status=ReservationStatus.CONFIRMED,
            created_at=now,
            updated_at=now,
        )
        self.db.add(reservation)
        await self.db.flush()

        self.db.add(
            ReservationLog(
                resource_id=entry.resource_id,
                reservation_id=reservation.id,
                user_id=user_id,
                action=ReservationAction.RESERVE,
                new_status=ReservationStatus.CONFIRMED,
                notes=f"accepted waitlist offer {offer.id}",
                created_at=now,
            )
        )
        offer.status = OfferStatus.ACCEPTED
        offer.reserved_reservation_id = reservation.id
        entry.canceled_at = now
        await self.db.commit()

        metrics_collector.record_offer(OfferStatus.ACCEPTED.value)
        metrics_collector.record_reservation_event(ReservationAction.RESERVE.value)
        await self._refresh_gauge(entry.resource_id)
        logger.info(
            "Waitlist offer accepted",
            extra={
                "offer_id": str(offer.id),
                "reservation_id": str(reservation.id),
                "user_id": user_id,
            },
        )
        return reservation.id

    async def decline_offer(self, offer_id: UUID, user_id: int) -> bool:
        """Decline a live offer. The entry stays in the queue for other windows."""
        found = await self.get_offer_with_entry(offer_id)
        if found is None:
            return False
        offer, entry = found
        if entry.user_id != user_id or offer.status != OfferStatus.PENDING:
            return False

        if self.clock.now() >= offer.expires_at:
            offer.status = OfferStatus.EXPIRED
            await self.db.commit()
            metrics_collector.record_offer(OfferStatus.EXPIRED.value)
            return False

        offer.status = OfferStatus.DECLINED
        await self.db.commit()

        metrics_collector.record_offer(OfferStatus.DECLINED.value)
        logger.info("Waitlist offer declined", extra={"offer_id": str(offer.id), "user_id": user_id})
        return True

    async def process_expired(self) -> List[UUID]:
        """
        Mark pending offers past their deadline as expired.

        Each offer is handled in its own savepoint; a failure is logged and
        the rest of the batch continues.

        Returns:
            IDs of the offers that were expired
        """
        now = self.clock.now()
        stmt = (
            select(WaitlistOffer)
            .where(
                WaitlistOffer.status == OfferStatus.PENDING,
                WaitlistOffer.expires_at <= now,
            )
            .order_by(WaitlistOffer.expires_at)
        )
        offers = list((await self.db.execute(stmt)).scalars())

        expired_ids: List[UUID] = []
        for offer in offers:
            offer_id = offer.id
            try:
                async with self.db.begin_nested():
                    await self._expire(offer)
                expired_ids.append(offer_id)
            except Exception as e:
                logger.error(
                    "Failed to expire waitlist offer",
                    extra={"offer_id": str(offer_id), "error": str(e)},
                )
                continue

        await self.db.commit()

        metrics_collector.record_offer(OfferStatus.EXPIRED.value, len(expired_ids))
        if expired_ids:
            logger.info("Expired waitlist offers", extra={"expired_count": len(expired_ids)})
        return expired_ids

    async def _expire(self, offer: WaitlistOffer) -> None:
        offer.status = OfferStatus.EXPIRED
        await self.db.flush()

    async def get_waitlist_entry_by_id(self, entry_id: UUID) -> Optional[WaitlistEntry]:
        """Get waitlist entry by ID."""
        stmt = select(WaitlistEntry).where(WaitlistEntry.id == entry_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_offer_with_entry(self, offer_id: UUID) -> Optional[tuple[WaitlistOffer, WaitlistEntry]]:
        stmt = (
            select(WaitlistOffer, WaitlistEntry)
            .join(WaitlistEntry, WaitlistEntry.id == WaitlistOffer.waitlist_entry_id)
            .where(WaitlistOffer.id == offer_id)
        )
        row = (await self.db.execute(stmt)).first()
        return None if row is None else (row[0], row[1])

    async def get_pending_offers_for_entry(self, entry_id: UUID) -> List[tuple[WaitlistOffer, WaitlistEntry]]:
        stmt = (
            select(WaitlistOffer, WaitlistEntry)
            .join(WaitlistEntry, WaitlistEntry.id == WaitlistOffer.waitlist_entry_id)
            .where(WaitlistEntry.id == entry_id, WaitlistOffer.status == OfferStatus.PENDING)
            .order_by(WaitlistOffer.created_at)
        )
        return [(row[0], row[1]) for row in await self.db.execute(stmt)]

    async def get_offers_with_entries(self, offer_ids: List[UUID]) -> List[tuple[WaitlistOffer, WaitlistEntry]]:
        if not offer_ids:
            return []
        stmt = (
            select(WaitlistOffer, WaitlistEntry)
            .join(WaitlistEntry, WaitlistEntry.id == WaitlistOffer.waitlist_entry_id)
            .where(WaitlistOffer.id.in_(offer_ids))
            .order_by(WaitlistOffer.expires_at)
        )
        return [(row[0], row[1]) for row in await self.db.execute(stmt)]

    async def get_waitlist_for_resource(self, resource_id: UUID) -> List[WaitlistEntry]:
        """Active entries for a resource in FIFO order."""
        stmt = (
            select(WaitlistEntry)
            .where(WaitlistEntry.resource_id == resource_id, WaitlistEntry.canceled_at.is_(None))
            .order_by(WaitlistEntry.created_at)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars())

    async def get_waitlist_for_user(self, guild_id: int, user_id: int) -> List[WaitlistEntry]:
        stmt = (
            select(WaitlistEntry)
            .where(
                WaitlistEntry.guild_id == guild_id,
                WaitlistEntry.user_id == user_id,
                WaitlistEntry.canceled_at.is_(None),
            )
            .order_by(WaitlistEntry.created_at)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars())

    async def get_pending_offers(self, guild_id: int, user_id: int) -> List[WaitlistOffer]:
        """Live offers awaiting the user's answer."""
        stmt = (
            select(WaitlistOffer)
            .join(WaitlistEntry, WaitlistEntry.id == WaitlistOffer.waitlist_entry_id)
            .where(
                WaitlistEntry.guild_id == guild_id,
                WaitlistEntry.user_id == user_id,
                WaitlistOffer.status == OfferStatus.PENDING,
                WaitlistOffer.expires_at > self.clock.now(),
            )
            .order_by(WaitlistOffer.created_at)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars())

    async def count_active_entries(self, resource_id: UUID) -> int:
        stmt = select(func.count(WaitlistEntry.id)).where(
            WaitlistEntry.resource_id == resource_id,
            WaitlistEntry.canceled_at.is_(None),
        )
        result = await self.db.execute(stmt)
        return result.scalar() or 0

    async def _refresh_gauge(self, resource_id: UUID) -> None:
        count = await self.count_active_entries(resource_id)
        await self.db.commit()
        metrics_collector.set_waitlist_entries(str(resource_id), count)
