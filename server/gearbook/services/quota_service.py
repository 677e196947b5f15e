"""Quota policy resolution, administration and usage accounting."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import Clock, system_clock
from ..core.exceptions import NotFoundError, ValidationError
from ..models.guild import Resource
from ..models.quota import (
    CLASS_ONLY_FIELDS,
    SHARED_LIMIT_FIELDS,
    QuotaClassOverride,
    QuotaOverrideAudit,
    QuotaRoleOverride,
    QuotaSettings,
)
from ..models.reservation import Reservation, ReservationStatus
from .conflict_service import occupied_end
from .intervals import clipped_hours, overlap_clause
from .quota_policy import HOURS_7D_WINDOW, HOURS_30D_WINDOW, EffectiveQuotaLimits, merge_layers

logger = logging.getLogger(__name__)


@dataclass
class QuotaUsage:
    """What a user currently consumes, for display next to the effective limits."""

    active_count: int
    hours_7d: float
    hours_30d: float


def _check_limits(values: dict[str, Optional[int]], allowed: Iterable[str]) -> None:
    allowed = set(allowed)
    unknown = set(values) - allowed
    if unknown:
        raise ValidationError(detail="Unknown quota fields", errors={"fields": sorted(unknown)})
    negative = {name: value for name, value in values.items() if value is not None and value < 0}
    if negative:
        raise ValidationError(detail="Quota limits cannot be negative", errors=negative)


class QuotaService:
    """Service for the three policy layers and the usage they are checked against."""

    def __init__(self, db: AsyncSession, clock: Clock = system_clock):
        self.db = db
        self.clock = clock

    # Resolution

    async def is_configured(self, guild_id: int) -> bool:
        """Quota is enforced for a guild iff it has a base settings row."""
        return await self.db.get(QuotaSettings, guild_id) is not None

    async def resolve(
        self,
        guild_id: int,
        role_ids: Iterable[int],
        class_id: Optional[UUID] = None,
    ) -> EffectiveQuotaLimits:
        """
        Merge guild base, role overrides and class override into one limit set.

        Role overrides merge most-permissive-wins into the base. A class
        override merges its four shared fields the same way, then sets the
        duration and lead-time limits directly.
        """
        base_row = await self.db.get(QuotaSettings, guild_id)
        result = EffectiveQuotaLimits.from_layer(base_row) if base_row else EffectiveQuotaLimits()

        role_ids = list(role_ids)
        if role_ids:
            stmt = select(QuotaRoleOverride).where(
                QuotaRoleOverride.guild_id == guild_id,
                QuotaRoleOverride.role_id.in_(role_ids),
            )
            role_rows = (await self.db.execute(stmt)).scalars()
            result = merge_layers(result, (EffectiveQuotaLimits.from_layer(row) for row in role_rows))

        if class_id is not None:
            class_row = await self.db.get(QuotaClassOverride, (guild_id, class_id))
            if class_row is not None:
                class_layer = EffectiveQuotaLimits.from_layer(class_row, class_fields=True)
                result = result.merge_shared(class_layer).with_class_constraints(class_layer)

        logger.debug(
            "Resolved effective quota limits",
            extra={"guild_id": guild_id, "role_ids": role_ids, "class_id": str(class_id) if class_id else None},
        )
        return result

    # Administration

    async def upsert_base(self, guild_id: int, **limits: Optional[int]) -> QuotaSettings:
        """Create or replace the guild base layer. Creating it turns quota enforcement on."""
        _check_limits(limits, SHARED_LIMIT_FIELDS)
        row = await self.db.get(QuotaSettings, guild_id)
        if row is None:
            row = QuotaSettings(guild_id=guild_id)
            self.db.add(row)
        self._apply(row, limits, SHARED_LIMIT_FIELDS)
        await self.db.commit()

        logger.info("Guild quota settings saved", extra={"guild_id": guild_id, **limits})
        return row

    async def remove_base(self, guild_id: int) -> bool:
        """Delete the base layer, which turns quota enforcement off for the guild."""
        row = await self.db.get(QuotaSettings, guild_id)
        if row is None:
            return False
        await self.db.delete(row)
        await self.db.commit()
        logger.info("Guild quota settings removed", extra={"guild_id": guild_id})
        return True

    async def upsert_role_override(self, guild_id: int, role_id: int, **limits: Optional[int]) -> QuotaRoleOverride:
        _check_limits(limits, SHARED_LIMIT_FIELDS)
        row = await self.db.get(QuotaRoleOverride, (guild_id, role_id))
        if row is None:
            row = QuotaRoleOverride(guild_id=guild_id, role_id=role_id)
            self.db.add(row)
        self._apply(row, limits, SHARED_LIMIT_FIELDS)
        await self.db.commit()

        logger.info("Role quota override saved", extra={"guild_id": guild_id, "role_id": role_id, **limits})
        return row

    async def remove_role_override(self, guild_id: int, role_id: int) -> bool:
        row = await self.db.get(QuotaRoleOverride, (guild_id, role_id))
        if row is None:
            return False
        await self.db.delete(row)
        await self.db.commit()
        logger.info("Role quota override removed", extra={"guild_id": guild_id, "role_id": role_id})
        return True

    async def list_role_overrides(self, guild_id: int) -> list[QuotaRoleOverride]:
        stmt = (
            select(QuotaRoleOverride)
            .where(QuotaRoleOverride.guild_id == guild_id)
            .order_by(QuotaRoleOverride.role_id)
        )
        return list((await self.db.execute(stmt)).scalars())

    async def upsert_class_override(self, guild_id: int, class_id: UUID, **limits: Optional[int]) -> QuotaClassOverride:
        _check_limits(limits, SHARED_LIMIT_FIELDS + CLASS_ONLY_FIELDS)
        row = await self.db.get(QuotaClassOverride, (guild_id, class_id))
        if row is None:
            row = QuotaClassOverride(guild_id=guild_id, class_id=class_id)
            self.db.add(row)
        self._apply(row, limits, SHARED_LIMIT_FIELDS + CLASS_ONLY_FIELDS)
        await self.db.commit()

        logger.info(
            "Class quota override saved",
            extra={"guild_id": guild_id, "class_id": str(class_id), **limits},
        )
        return row

    async def remove_class_override(self, guild_id: int, class_id: UUID) -> bool:
        row = await self.db.get(QuotaClassOverride, (guild_id, class_id))
        if row is None:
            return False
        await self.db.delete(row)
        await self.db.commit()
        logger.info("Class quota override removed", extra={"guild_id": guild_id, "class_id": str(class_id)})
        return True

    def _apply(self, row, limits: dict[str, Optional[int]], names: tuple) -> None:
        # Replace semantics: fields left out of the request become unset
        for name in names:
            setattr(row, name, limits.get(name))
        row.updated_at = self.clock.now()

    # Override audit

    async def record_override(
        self,
        guild_id: int,
        user_id: int,
        acted_by_user_id: int,
        reservation_id: Optional[UUID] = None,
        rejection_code: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> QuotaOverrideAudit:
        """Stage an audit row. The caller commits it with the reservation."""
        audit = QuotaOverrideAudit(
            guild_id=guild_id,
            reservation_id=reservation_id,
            user_id=user_id,
            acted_by_user_id=acted_by_user_id,
            rejection_code=rejection_code,
            reason=reason,
            created_at=self.clock.now(),
        )
        self.db.add(audit)
        return audit

    async def recent_overrides(self, guild_id: int, limit: int = 50) -> list[QuotaOverrideAudit]:
        stmt = (
            select(QuotaOverrideAudit)
            .where(QuotaOverrideAudit.guild_id == guild_id)
            .order_by(QuotaOverrideAudit.created_at.desc())
            .limit(limit)
        )
        return list((await self.db.execute(stmt)).scalars())

    # Usage

    def _user_reservations(self, guild_id: int, user_id: int, exclude_reservation_id: Optional[UUID]):
        stmt = (
            select(Reservation)
            .join(Resource, Resource.id == Reservation.resource_id)
            .where(
                Resource.guild_id == guild_id,
                Reservation.user_id == user_id,
                Reservation.status == ReservationStatus.CONFIRMED,
            )
        )
        if exclude_reservation_id is not None:
            stmt = stmt.where(Reservation.id != exclude_reservation_id)
        return stmt

    async def count_active(
        self,
        guild_id: int,
        user_id: int,
        now: datetime,
        exclude_reservation_id: Optional[UUID] = None,
    ) -> int:
        """Confirmed, unreturned reservations of the user that have not ended yet."""
        inner = self._user_reservations(guild_id, user_id, exclude_reservation_id).where(
            Reservation.returned_at.is_(None),
            Reservation.end_time > now,
        )
        stmt = select(func.count()).select_from(inner.subquery())
        return (await self.db.execute(stmt)).scalar() or 0

    async def count_overlapping(
        self,
        guild_id: int,
        user_id: int,
        start: datetime,
        end: datetime,
        now: datetime,
        exclude_reservation_id: Optional[UUID] = None,
    ) -> int:
        """Active reservations of the user intersecting [start, end)."""
        inner = self._user_reservations(guild_id, user_id, exclude_reservation_id).where(
            Reservation.returned_at.is_(None),
            Reservation.end_time > now,
            overlap_clause(Reservation.start_time, Reservation.end_time, start, end),
        )
        stmt = select(func.count()).select_from(inner.subquery())
        return (await self.db.execute(stmt)).scalar() or 0

    async def hours_in_window(
        self,
        guild_id: int,
        user_id: int,
        window_start: datetime,
        window_end: datetime,
        exclude_reservation_id: Optional[UUID] = None,
    ) -> float:
        """
        Hours the user's reservations occupy inside [window_start, window_end].

        A returned reservation counts up to its return time.
        """
        stmt = self._user_reservations(guild_id, user_id, exclude_reservation_id).where(
            overlap_clause(Reservation.start_time, occupied_end(), window_start, window_end),
        )
        reservations = (await self.db.execute(stmt)).scalars()
        return sum(
            clipped_hours(r.start_time, r.effective_end, window_start, window_end)
            for r in reservations
        )

    async def usage(self, guild_id: int, user_id: int) -> QuotaUsage:
        now = self.clock.now()
        return QuotaUsage(
            active_count=await self.count_active(guild_id, user_id, now),
            hours_7d=await self.hours_in_window(guild_id, user_id, now - HOURS_7D_WINDOW, now),
            hours_30d=await self.hours_in_window(guild_id, user_id, now - HOURS_30D_WINDOW, now),
        )

    async def get_base_or_raise(self, guild_id: int) -> QuotaSettings:
        row = await self.db.get(QuotaSettings, guild_id)
        if row is None:
            raise NotFoundError(resource_type="quota settings", resource_id=str(guild_id))
        return row
