"""Reservation lifecycle: create, edit, cancel, return and return correction."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import Clock, system_clock
from ..core.config import settings
from ..core.exceptions import (
    AlreadyReturnedError,
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    ReturnCorrectionClosedError,
)
from ..core.observability import metrics_collector
from ..models.guild import Resource
from ..models.reservation import Reservation, ReservationAction, ReservationLog, ReservationStatus
from ..models.transfer import TransferRequest, TransferStatus
from ..schemas.admission import AdmissionOutcome
from .admission_service import AdmissionService
from .conflict_service import ConflictService
from .intervals import return_correction_deadline, validate_interval
from .quota_service import QuotaService
from .resource_service import ResourceService

logger = logging.getLogger(__name__)


@dataclass
class FreedWindow:
    """Part of a resource's timeline that just became bookable again."""

    guild_id: int
    resource_id: UUID
    start: datetime
    end: datetime


@dataclass
class ReservationOutcome:
    """Admission decision plus the reservation it produced, if any."""

    result: AdmissionOutcome
    reservation: Optional[Reservation] = None
    quota_overridden: bool = False

    @property
    def created(self) -> bool:
        return self.reservation is not None


class ReservationService:
    """Service for reservation-related operations."""

    def __init__(self, db: AsyncSession, clock: Clock = system_clock):
        self.db = db
        self.clock = clock
        self.resources = ResourceService(db, clock)
        self.admission = AdmissionService(db, clock)
        self.conflicts = ConflictService(db)
        self.quotas = QuotaService(db, clock)

    async def create_reservation(
        self,
        guild_id: int,
        user_id: int,
        role_ids: Iterable[int],
        resource_id: UUID,
        start: datetime,
        end: datetime,
        location: Optional[str] = None,
        override_by_user_id: Optional[int] = None,
        override_reason: Optional[str] = None,
    ) -> ReservationOutcome:
        """
        Admit and insert a reservation in one transaction scoped to the resource.

        Args:
            guild_id: Tenant of the resource
            user_id: Holder of the new reservation
            role_ids: Holder's roles, used for quota resolution
            resource_id: Resource to book
            start: Interval start
            end: Interval end (exclusive)
            location: Optional pickup location
            override_by_user_id: Admin booking past a quota rejection
            override_reason: Free-text justification for the override

        Returns:
            ReservationOutcome with the reservation when admitted or overridden

        Raises:
            InvalidIntervalError: If start >= end
            NotFoundError: If the resource does not belong to the guild
        """
        validate_interval(start, end)
        resource = await self.resources.get_resource_with_lock(resource_id, guild_id)

        result = await self.admission.validate(
            guild_id, user_id, role_ids, resource_id, resource.class_id, start, end
        )

        overridden = False
        if not result.is_admitted:
            if override_by_user_id is None or not result.is_quota_rejection:
                # End the transaction so the resource lock is released
                await self.db.commit()
                return ReservationOutcome(result=result)
            overridden = True

        now = self.clock.now()
        reservation = Reservation(
            resource_id=resource_id,
            user_id=user_id,
            start_time=start,
            end_time=end,
            location=location,
            status=ReservationStatus.CONFIRMED,
            created_at=now,
            updated_at=now,
        )
        self.db.add(reservation)
        await self.db.flush()

        self._log(reservation, user_id, ReservationAction.RESERVE, None, ReservationStatus.CONFIRMED)

        if overridden:
            await self.quotas.record_override(
                guild_id=guild_id,
                user_id=user_id,
                acted_by_user_id=override_by_user_id,
                reservation_id=reservation.id,
                rejection_code=result.code,
                reason=override_reason,
            )
            self._log(
                reservation,
                override_by_user_id,
                ReservationAction.QUOTA_OVERRIDE,
                None,
                ReservationStatus.CONFIRMED,
                notes=f"{result.describe()}; reason: {override_reason or 'none given'}",
            )

        await self.db.commit()

        metrics_collector.record_reservation_event(ReservationAction.RESERVE.value)
        if overridden:
            metrics_collector.record_quota_override()

        logger.info(
            "Reservation created",
            extra={
                "reservation_id": str(reservation.id),
                "resource_id": str(resource_id),
                "user_id": user_id,
                "start": start.isoformat(),
                "end": end.isoformat(),
                "quota_overridden": overridden,
            },
        )
        return ReservationOutcome(result=result, reservation=reservation, quota_overridden=overridden)

    async def edit_reservation(
        self,
        reservation_id: UUID,
        user_id: int,
        role_ids: Iterable[int],
        start: datetime,
        end: datetime,
    ) -> ReservationOutcome:
        """
        Move a reservation to a new interval, re-admitting it against everything but itself.

        Only the holder may move it, and admission runs against the holder's
        own roles.

        Raises:
            NotFoundError: If the reservation does not exist
            ForbiddenError: If the caller is not the holder
            InvalidTransitionError: If it is cancelled or already returned
        """
        validate_interval(start, end)
        reservation = await self.get_reservation_or_raise(reservation_id)
        self._require_holder(reservation, user_id, action="edit")
        self._require_editable(reservation)

        resource = await self.resources.get_resource_with_lock(reservation.resource_id)
        result = await self.admission.validate(
            resource.guild_id,
            reservation.user_id,
            role_ids,
            resource.id,
            resource.class_id,
            start,
            end,
            exclude_reservation_id=reservation.id,
        )
        if not result.is_admitted:
            await self.db.commit()
            return ReservationOutcome(result=result)

        previous = f"{reservation.start_time.isoformat()} - {reservation.end_time.isoformat()}"
        reservation.start_time = start
        reservation.end_time = end
        reservation.updated_at = self.clock.now()
        self._log(
            reservation,
            user_id,
            ReservationAction.EDIT,
            reservation.status,
            reservation.status,
            notes=f"moved from {previous}",
        )
        await self.db.commit()

        metrics_collector.record_reservation_event(ReservationAction.EDIT.value)
        logger.info(
            "Reservation edited",
            extra={"reservation_id": str(reservation.id), "start": start.isoformat(), "end": end.isoformat()},
        )
        return ReservationOutcome(result=result, reservation=reservation)

    async def cancel_reservation(
        self,
        reservation_id: UUID,
        actor_user_id: int,
        as_admin: bool = False,
    ) -> Optional[FreedWindow]:
        """
        Cancel a reservation and any transfer waiting on it.

        Cancelling twice is a no-op. Only the holder or an admin may cancel.

        Returns:
            The still-future part of the interval, for re-offering to the waitlist
        """
        reservation = await self.get_reservation_or_raise(reservation_id)
        self._require_holder(reservation, actor_user_id, as_admin, action="cancel")
        if reservation.status == ReservationStatus.CANCELLED:
            logger.info("Reservation already cancelled", extra={"reservation_id": str(reservation_id)})
            await self.db.commit()
            return None

        resource = await self.resources.get_resource_with_lock(reservation.resource_id)
        now = self.clock.now()

        previous = reservation.status
        reservation.status = ReservationStatus.CANCELLED
        reservation.updated_at = now
        self._log(reservation, actor_user_id, ReservationAction.CANCEL, previous, ReservationStatus.CANCELLED)

        canceled_transfers = await self.db.execute(
            update(TransferRequest)
            .where(
                TransferRequest.reservation_id == reservation.id,
                TransferRequest.status == TransferStatus.PENDING,
            )
            .values(
                status=TransferStatus.CANCELED,
                canceled_at=now,
                canceled_by_user_id=actor_user_id,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        freed = None
        if reservation.returned_at is None and reservation.end_time > now:
            freed = FreedWindow(
                guild_id=resource.guild_id,
                resource_id=resource.id,
                start=max(reservation.start_time, now),
                end=reservation.end_time,
            )

        await self.db.commit()

        metrics_collector.record_reservation_event(ReservationAction.CANCEL.value)
        logger.info(
            "Reservation cancelled",
            extra={
                "reservation_id": str(reservation.id),
                "actor_user_id": actor_user_id,
                "transfers_canceled": canceled_transfers.rowcount,
                "freed_window": bool(freed),
            },
        )
        return freed

    async def return_reservation(
        self,
        reservation_id: UUID,
        actor_user_id: int,
        return_location: Optional[str] = None,
        as_admin: bool = False,
    ) -> Optional[FreedWindow]:
        """
        Mark the resource as returned now.

        Raises:
            ForbiddenError: If the actor is neither the holder nor an admin
            InvalidTransitionError: If the reservation is cancelled
            AlreadyReturnedError: If it was already returned

        Returns:
            The remainder of the booked interval when returned early
        """
        reservation = await self.get_reservation_or_raise(reservation_id)
        self._require_holder(reservation, actor_user_id, as_admin, action="return")
        if reservation.status != ReservationStatus.CONFIRMED:
            raise InvalidTransitionError("reservation", str(reservation.id), reservation.status, "returned")
        if reservation.returned_at is not None:
            raise AlreadyReturnedError(str(reservation.id), reservation.returned_at)

        resource = await self.resources.get_resource_with_lock(reservation.resource_id)
        now = self.clock.now()

        reservation.returned_at = now
        reservation.return_location = return_location
        reservation.updated_at = now
        self._log(
            reservation,
            actor_user_id,
            ReservationAction.RETURN,
            reservation.status,
            reservation.status,
            notes=f"returned to {return_location}" if return_location else None,
        )

        freed = None
        if now < reservation.end_time:
            freed = FreedWindow(
                guild_id=resource.guild_id,
                resource_id=resource.id,
                start=max(reservation.start_time, now),
                end=reservation.end_time,
            )

        await self.db.commit()

        metrics_collector.record_reservation_event(ReservationAction.RETURN.value)
        logger.info(
            "Reservation returned",
            extra={"reservation_id": str(reservation.id), "returned_at": now.isoformat(), "early": bool(freed)},
        )
        return freed

    async def correct_return(self, reservation_id: UUID, actor_user_id: int, as_admin: bool = False) -> Reservation:
        """
        Undo a return while the correction window is open.

        The window closes one hour after the return, or fifteen minutes
        before the next reservation of the resource starts, whichever is
        earlier (both configurable).

        Raises:
            ForbiddenError: If the actor is neither the holder nor an admin
            InvalidTransitionError: If the reservation was never returned
            ReturnCorrectionClosedError: If the window has closed
            ConflictError: If the freed time has since been booked
        """
        reservation = await self.get_reservation_or_raise(reservation_id)
        self._require_holder(reservation, actor_user_id, as_admin, action="correct the return of")
        if reservation.returned_at is None or reservation.status != ReservationStatus.CONFIRMED:
            raise InvalidTransitionError("reservation", str(reservation.id), reservation.status, "return corrected")

        await self.resources.lock_resource(reservation.resource_id)
        now = self.clock.now()

        next_start = await self.conflicts.next_reservation_start(
            reservation.resource_id, reservation.returned_at, exclude_reservation_id=reservation.id
        )
        deadline = return_correction_deadline(
            reservation.returned_at,
            next_start,
            timedelta(hours=settings.return_correction_window_hours),
            timedelta(minutes=settings.next_reservation_buffer_minutes),
        )
        if now > deadline:
            raise ReturnCorrectionClosedError(str(reservation.id), deadline)

        taken = await self.conflicts.find_conflicts(
            reservation.resource_id, reservation.start_time, reservation.end_time, reservation.id
        )
        if taken:
            raise ConflictError(
                detail="The returned time has already been booked by someone else",
                conflicting_resource={"reservation_ids": [str(r.id) for r in taken]},
            )

        returned_at = reservation.returned_at
        reservation.returned_at = None
        reservation.return_location = None
        reservation.updated_at = now
        self._log(
            reservation,
            actor_user_id,
            ReservationAction.RETURN_CORRECTED,
            reservation.status,
            reservation.status,
            notes=f"return at {returned_at.isoformat()} undone",
        )
        await self.db.commit()

        metrics_collector.record_reservation_event(ReservationAction.RETURN_CORRECTED.value)
        logger.info("Reservation return corrected", extra={"reservation_id": str(reservation.id)})
        return reservation

    async def get_reservation_by_id(self, reservation_id: UUID) -> Optional[Reservation]:
        stmt = select(Reservation).where(Reservation.id == reservation_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_reservation_or_raise(self, reservation_id: UUID) -> Reservation:
        reservation = await self.get_reservation_by_id(reservation_id)
        if reservation is None:
            raise NotFoundError(resource_type="reservation", resource_id=str(reservation_id))
        return reservation

    async def get_guild_id(self, reservation: Reservation) -> int:
        stmt = select(Resource.guild_id).where(Resource.id == reservation.resource_id)
        return (await self.db.execute(stmt)).scalar_one()

    async def list_for_resource(self, resource_id: UUID, include_cancelled: bool = False) -> list[Reservation]:
        stmt = select(Reservation).where(Reservation.resource_id == resource_id)
        if not include_cancelled:
            stmt = stmt.where(Reservation.status == ReservationStatus.CONFIRMED)
        stmt = stmt.order_by(Reservation.start_time)
        return list((await self.db.execute(stmt)).scalars())

    async def history(self, reservation_id: UUID) -> list[ReservationLog]:
        stmt = (
            select(ReservationLog)
            .where(ReservationLog.reservation_id == reservation_id)
            .order_by(ReservationLog.created_at)
        )
        return list((await self.db.execute(stmt)).scalars())

    def _require_holder(
        self,
        reservation: Reservation,
        actor_user_id: int,
        as_admin: bool = False,
        action: str = "change",
    ) -> None:
        if actor_user_id != reservation.user_id and not as_admin:
            raise ForbiddenError(
                f"Only the holder of reservation {reservation.id} may {action} it", actor_user_id
            )

    def _require_editable(self, reservation: Reservation) -> None:
        if reservation.status != ReservationStatus.CONFIRMED:
            raise InvalidTransitionError("reservation", str(reservation.id), reservation.status, "edited")
        if reservation.returned_at is not None:
            raise AlreadyReturnedError(str(reservation.id), reservation.returned_at)

    def _log(
        self,
        reservation: Reservation,
        user_id: int,
        action: ReservationAction,
        previous_status: Optional[str],
        new_status: Optional[str],
        notes: Optional[str] = None,
    ) -> ReservationLog:
        entry = ReservationLog(
            resource_id=reservation.resource_id,
            reservation_id=reservation.id,
            user_id=user_id,
            action=action,
            previous_status=previous_status,
            new_status=new_status,
            notes=notes,
            created_at=self.clock.now(),
        )
        self.db.add(entry)
        return entry
