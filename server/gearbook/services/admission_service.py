"""Admission control: one admit/reject decision for a proposed reservation."""

import logging
from datetime import datetime
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy import exists, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import Clock, system_clock
from ..core.observability import metrics_collector
from ..models.waitlist import OfferStatus, WaitlistEntry, WaitlistOffer
from ..schemas.admission import (
    AdmissionOutcome,
    Admitted,
    Conflict,
    ExceededActiveCount,
    ExceededHours7d,
    ExceededHours30d,
    ExceededMaxDuration,
    ExceededOverlapCount,
    HeldByWaitlistOffer,
    TooLongLeadTime,
    TooShortLeadTime,
)
from .conflict_service import ConflictService
from .intervals import duration_hours, overlap_clause, validate_interval, whole_days, whole_minutes
from .quota_policy import HOURS_7D_WINDOW, HOURS_30D_WINDOW, EffectiveQuotaLimits
from .quota_service import QuotaService

logger = logging.getLogger(__name__)


class AdmissionService:
    """
    Runs the admission checks in a fixed order and stops at the first failure:

    1. interval conflict with confirmed reservations
    2. a live waitlist offer held by another user
    3. no quota configured for the guild: admit
    4. active count, overlap count, 7-day hours, 30-day hours
    5. class duration and lead-time limits

    The caller owns the transaction; nothing here writes.
    """

    def __init__(self, db: AsyncSession, clock: Clock = system_clock):
        self.db = db
        self.clock = clock
        self.conflicts = ConflictService(db)
        self.quotas = QuotaService(db, clock)

    async def validate(
        self,
        guild_id: int,
        user_id: int,
        role_ids: Iterable[int],
        resource_id: UUID,
        class_id: Optional[UUID],
        start: datetime,
        end: datetime,
        exclude_reservation_id: Optional[UUID] = None,
    ) -> AdmissionOutcome:
        validate_interval(start, end)
        now = self.clock.now()

        result = await self._evaluate(
            guild_id, user_id, list(role_ids), resource_id, class_id, start, end, now, exclude_reservation_id
        )

        metrics_collector.record_admission(result.code)
        log = logger.info if result.is_admitted else logger.warning
        log(
            "Admission decided",
            extra={
                "guild_id": guild_id,
                "user_id": user_id,
                "resource_id": str(resource_id),
                "start": start.isoformat(),
                "end": end.isoformat(),
                "outcome": result.code,
            },
        )
        return result

    async def _evaluate(
        self,
        guild_id: int,
        user_id: int,
        role_ids: list[int],
        resource_id: UUID,
        class_id: Optional[UUID],
        start: datetime,
        end: datetime,
        now: datetime,
        exclude_reservation_id: Optional[UUID],
    ) -> AdmissionOutcome:
        if await self.conflicts.has_conflict(resource_id, start, end, exclude_reservation_id):
            return Conflict()

        if await self.is_held_for_other_user(resource_id, user_id, start, end, now):
            return HeldByWaitlistOffer()

        if not await self.quotas.is_configured(guild_id):
            return Admitted()

        limits = await self.quotas.resolve(guild_id, role_ids, class_id)

        rejection = await self._check_usage(
            limits, guild_id, user_id, start, end, now, exclude_reservation_id
        )
        if rejection is not None:
            return rejection

        rejection = check_class_constraints(limits, start, end, now)
        if rejection is not None:
            return rejection

        return Admitted()

    async def is_held_for_other_user(
        self,
        resource_id: UUID,
        user_id: int,
        start: datetime,
        end: datetime,
        now: datetime,
    ) -> bool:
        """True if another user has a pending, unexpired offer intersecting [start, end)."""
        stmt = select(
            exists()
            .where(WaitlistOffer.waitlist_entry_id == WaitlistEntry.id)
            .where(
                WaitlistEntry.resource_id == resource_id,
                WaitlistEntry.user_id != user_id,
                WaitlistOffer.status == OfferStatus.PENDING,
                WaitlistOffer.expires_at > now,
                overlap_clause(WaitlistOffer.offered_start, WaitlistOffer.offered_end, start, end),
            )
        )
        return bool((await self.db.execute(stmt)).scalar())

    async def _check_usage(
        self,
        limits: EffectiveQuotaLimits,
        guild_id: int,
        user_id: int,
        start: datetime,
        end: datetime,
        now: datetime,
        exclude_reservation_id: Optional[UUID],
    ) -> Optional[AdmissionOutcome]:
        if limits.max_active_count.is_limited:
            current = await self.quotas.count_active(guild_id, user_id, now, exclude_reservation_id)
            if current >= limits.max_active_count.value:
                return ExceededActiveCount(current=current, limit=limits.max_active_count.value)

        if limits.max_overlap_count.is_limited:
            current = await self.quotas.count_overlapping(
                guild_id, user_id, start, end, now, exclude_reservation_id
            )
            if current >= limits.max_overlap_count.value:
                return ExceededOverlapCount(current=current, limit=limits.max_overlap_count.value)

        proposed = duration_hours(start, end)

        if limits.max_hours_7d.is_limited:
            current = await self.quotas.hours_in_window(
                guild_id, user_id, now - HOURS_7D_WINDOW, now, exclude_reservation_id
            )
            if current + proposed > limits.max_hours_7d.value:
                return ExceededHours7d(current=current, proposed=proposed, limit=limits.max_hours_7d.value)

        if limits.max_hours_30d.is_limited:
            current = await self.quotas.hours_in_window(
                guild_id, user_id, now - HOURS_30D_WINDOW, now, exclude_reservation_id
            )
            if current + proposed > limits.max_hours_30d.value:
                return ExceededHours30d(current=current, proposed=proposed, limit=limits.max_hours_30d.value)

        return None


def check_class_constraints(
    limits: EffectiveQuotaLimits,
    start: datetime,
    end: datetime,
    now: datetime,
) -> Optional[AdmissionOutcome]:
    """Duration and lead-time limits. Pure; lead times truncate toward zero."""
    if limits.max_duration_hours.is_limited:
        proposed = duration_hours(start, end)
        if proposed > limits.max_duration_hours.value:
            return ExceededMaxDuration(proposed=proposed, limit=limits.max_duration_hours.value)

    lead = start - now

    if limits.min_lead_time_minutes.is_limited:
        minutes = whole_minutes(lead)
        if minutes < limits.min_lead_time_minutes.value:
            return TooShortLeadTime(proposed=minutes, min=limits.min_lead_time_minutes.value)

    if limits.max_lead_time_days.is_limited:
        days = whole_days(lead)
        if days > limits.max_lead_time_days.value:
            return TooLongLeadTime(proposed=days, max=limits.max_lead_time_days.value)

    return None
