"""Interval conflict detection against confirmed reservations."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import exists, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.reservation import Reservation, ReservationStatus
from .intervals import overlap_clause, validate_interval


def occupied_end():
    """End of the time a reservation actually blocks: its return if returned early."""
    return func.coalesce(Reservation.returned_at, Reservation.end_time)


class ConflictService:
    """Answers whether a proposed interval collides with a resource's bookings."""

    def __init__(self, db: AsyncSession):
        self.db = db

    def _conflict_filter(
        self,
        resource_id: UUID,
        start: datetime,
        end: datetime,
        exclude_reservation_id: Optional[UUID],
    ) -> list:
        conditions = [
            Reservation.resource_id == resource_id,
            Reservation.status == ReservationStatus.CONFIRMED,
            overlap_clause(Reservation.start_time, occupied_end(), start, end),
        ]
        if exclude_reservation_id is not None:
            conditions.append(Reservation.id != exclude_reservation_id)
        return conditions

    async def has_conflict(
        self,
        resource_id: UUID,
        start: datetime,
        end: datetime,
        exclude_reservation_id: Optional[UUID] = None,
    ) -> bool:
        """
        True if a confirmed reservation of the resource intersects [start, end).

        Args:
            resource_id: Resource being booked
            start: Proposed start
            end: Proposed end
            exclude_reservation_id: Reservation to ignore, used when re-validating an edit

        Raises:
            InvalidIntervalError: If start >= end
        """
        validate_interval(start, end)
        stmt = select(
            exists().where(*self._conflict_filter(resource_id, start, end, exclude_reservation_id))
        )
        result = await self.db.execute(stmt)
        return bool(result.scalar())

    async def find_conflicts(
        self,
        resource_id: UUID,
        start: datetime,
        end: datetime,
        exclude_reservation_id: Optional[UUID] = None,
    ) -> list[Reservation]:
        validate_interval(start, end)
        stmt = (
            select(Reservation)
            .where(*self._conflict_filter(resource_id, start, end, exclude_reservation_id))
            .order_by(Reservation.start_time)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars())

    async def next_reservation_start(
        self,
        resource_id: UUID,
        after: datetime,
        exclude_reservation_id: Optional[UUID] = None,
    ) -> Optional[datetime]:
        """Start of the earliest confirmed reservation of the resource starting at or after ``after``."""
        stmt = select(func.min(Reservation.start_time)).where(
            Reservation.resource_id == resource_id,
            Reservation.status == ReservationStatus.CONFIRMED,
            Reservation.start_time >= after,
        )
        if exclude_reservation_id is not None:
            stmt = stmt.where(Reservation.id != exclude_reservation_id)
        result = await self.db.execute(stmt)
        return result.scalar()
