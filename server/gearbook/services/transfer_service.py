"""Transfer state machine: hand a confirmed reservation to another user."""

import logging
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import Clock, system_clock
from ..core.config import settings
from ..core.exceptions import (
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    TransferAlreadyPendingError,
    TransferExpiredError,
    ValidationError,
)
from ..core.observability import metrics_collector
from ..models.reservation import Reservation, ReservationAction, ReservationLog, ReservationStatus
from ..models.transfer import TransferRequest, TransferStatus

logger = logging.getLogger(__name__)

# Pending is the only state with outgoing transitions
VALID_TRANSITIONS: dict[TransferStatus, frozenset[TransferStatus]] = {
    TransferStatus.PENDING: frozenset({
        TransferStatus.ACCEPTED,
        TransferStatus.DENIED,
        TransferStatus.EXPIRED,
        TransferStatus.CANCELED,
    }),
    TransferStatus.ACCEPTED: frozenset(),
    TransferStatus.DENIED: frozenset(),
    TransferStatus.EXPIRED: frozenset(),
    TransferStatus.CANCELED: frozenset(),
}


def can_transition(current: TransferStatus, target: TransferStatus) -> bool:
    return TransferStatus(target) in VALID_TRANSITIONS[TransferStatus(current)]


class TransferService:
    """Service for transfer-related operations."""

    def __init__(self, db: AsyncSession, clock: Clock = system_clock):
        self.db = db
        self.clock = clock

    async def create_transfer(
        self,
        reservation_id: UUID,
        from_user_id: int,
        to_user_id: int,
        requested_by_user_id: int,
        execute_at: Optional[datetime] = None,
        note: Optional[str] = None,
        as_admin: bool = False,
    ) -> TransferRequest:
        """
        Open a transfer request for a confirmed reservation.

        Only the holder, or an admin acting for them, may hand it over.

        Immediate requests wait for the recipient and expire after
        ``transfer_timeout_hours``. Scheduled requests run at ``execute_at``
        and stay valid for ``scheduled_transfer_grace_hours`` after it.

        Raises:
            NotFoundError: If the reservation does not exist
            ValidationError: If the request itself is malformed
            ForbiddenError: If the requester is neither the holder nor an admin
            InvalidTransitionError: If the reservation cannot change hands
            TransferAlreadyPendingError: If another request is pending
        """
        now = self.clock.now()

        if from_user_id == to_user_id:
            raise ValidationError(detail="Cannot transfer a reservation to its current holder")
        if note is not None and len(note) > settings.max_transfer_note_length:
            raise ValidationError(
                detail=f"Note must be at most {settings.max_transfer_note_length} characters",
                errors={"note_length": len(note)},
            )
        if execute_at is not None and execute_at <= now:
            raise ValidationError(detail="Scheduled transfer time must be in the future")

        reservation = await self._get_reservation_or_raise(reservation_id)
        self._require_transferable(reservation, now)
        if reservation.user_id != from_user_id:
            raise ValidationError(
                detail="Only the current holder's reservation can be transferred",
                errors={"holder_user_id": reservation.user_id, "from_user_id": from_user_id},
            )
        if requested_by_user_id != reservation.user_id and not as_admin:
            raise ForbiddenError(
                f"Only the holder of reservation {reservation_id} may transfer it", requested_by_user_id
            )

        pending = await self.get_pending_for_reservation(reservation_id)
        if pending is not None:
            raise TransferAlreadyPendingError(str(reservation_id), str(pending.id))

        if execute_at is None:
            expires_at = now + timedelta(hours=settings.transfer_timeout_hours)
        else:
            expires_at = execute_at + timedelta(hours=settings.scheduled_transfer_grace_hours)

        transfer = TransferRequest(
            reservation_id=reservation_id,
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            requested_by_user_id=requested_by_user_id,
            execute_at=execute_at,
            note=note,
            expires_at=expires_at,
            status=TransferStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        self.db.add(transfer)
        try:
            await self.db.commit()
        except IntegrityError:
            # A concurrent request won the one-pending-per-reservation index
            await self.db.rollback()
            raise TransferAlreadyPendingError(str(reservation_id), "unknown")

        logger.info(
            "Transfer request created",
            extra={
                "transfer_id": str(transfer.id),
                "reservation_id": str(reservation_id),
                "from_user_id": from_user_id,
                "to_user_id": to_user_id,
                "scheduled": execute_at is not None,
                "expires_at": expires_at.isoformat(),
            },
        )
        return transfer

    async def update_status(
        self,
        transfer_id: UUID,
        new_status: TransferStatus,
        actor_user_id: int,
        as_admin: bool = False,
    ) -> TransferRequest:
        """
        Move a pending request to a terminal state.

        Accepting reassigns the reservation and writes the audit log in the
        same transaction. Accepting at or after ``expires_at`` expires the
        request instead.

        Only the recipient may accept or deny. The holder, the requester or an
        admin may cancel; only an admin may expire a request by hand.

        Raises:
            NotFoundError: If the request does not exist
            ForbiddenError: If the actor is not a party allowed to make this change
            InvalidTransitionError: If the request is not pending
            TransferExpiredError: If accepted too late
        """
        transfer = await self.get_transfer_or_raise(transfer_id)
        new_status = TransferStatus(new_status)
        self._require_party(transfer, new_status, actor_user_id, as_admin)

        if not can_transition(transfer.status, new_status):
            raise InvalidTransitionError("transfer", str(transfer.id), transfer.status, new_status)

        now = self.clock.now()

        if new_status == TransferStatus.ACCEPTED:
            if now >= transfer.expires_at:
                self._finish(transfer, TransferStatus.EXPIRED, now)
                await self.db.commit()
                raise TransferExpiredError(str(transfer.id), transfer.expires_at)

            reservation = await self._get_reservation_or_raise(transfer.reservation_id)
            self._require_transferable(reservation, now)
            self._reassign(reservation, transfer, actor_user_id, now)

        if new_status == TransferStatus.CANCELED:
            transfer.canceled_at = now
            transfer.canceled_by_user_id = actor_user_id

        self._finish(transfer, new_status, now)
        await self.db.commit()

        logger.info(
            "Transfer status updated",
            extra={
                "transfer_id": str(transfer.id),
                "status": new_status.value,
                "actor_user_id": actor_user_id,
            },
        )
        return transfer

    async def execute_due(self) -> dict[str, List[UUID]]:
        """
        Run scheduled transfers whose time has come.

        Each request is re-validated and applied in its own savepoint: it must
        still be inside its grace period and the reservation must still be
        confirmed, unreturned and not ended, or the request expires. One bad
        request never stops the others.

        Returns:
            IDs grouped into "executed" and "expired"
        """
        now = self.clock.now()
        stmt = (
            select(TransferRequest)
            .where(
                TransferRequest.status == TransferStatus.PENDING,
                TransferRequest.execute_at.is_not(None),
                TransferRequest.execute_at <= now,
            )
            .order_by(TransferRequest.execute_at)
        )
        due = list((await self.db.execute(stmt)).scalars())

        outcome: dict[str, List[UUID]] = {"executed": [], "expired": []}
        for transfer in due:
            transfer_id = transfer.id
            try:
                async with self.db.begin_nested():
                    reservation = await self.db.get(Reservation, transfer.reservation_id)
                    reason = self._revalidation_failure(reservation, transfer, now)
                    if reason is None:
                        self._reassign(reservation, transfer, transfer.requested_by_user_id, now)
                        self._finish(transfer, TransferStatus.ACCEPTED, now)
                    else:
                        self._finish(transfer, TransferStatus.EXPIRED, now)
            except Exception as e:
                logger.error(
                    "Failed to execute scheduled transfer",
                    extra={"transfer_id": str(transfer_id), "error": str(e)},
                )
                continue

            if reason is None:
                outcome["executed"].append(transfer_id)
            else:
                outcome["expired"].append(transfer_id)
                logger.info(
                    "Scheduled transfer expired on re-validation",
                    extra={"transfer_id": str(transfer_id), "reason": reason},
                )

        await self.db.commit()

        if due:
            logger.info(
                "Scheduled transfers processed",
                extra={"executed": len(outcome["executed"]), "expired": len(outcome["expired"])},
            )
        return outcome

    async def expire_stale(self) -> List[UUID]:
        """Expire immediate requests nobody answered before ``expires_at``."""
        now = self.clock.now()
        stmt = select(TransferRequest).where(
            TransferRequest.status == TransferStatus.PENDING,
            TransferRequest.execute_at.is_(None),
            TransferRequest.expires_at <= now,
        )
        stale = list((await self.db.execute(stmt)).scalars())

        expired_ids: List[UUID] = []
        for transfer in stale:
            transfer_id = transfer.id
            try:
                async with self.db.begin_nested():
                    self._finish(transfer, TransferStatus.EXPIRED, now)
                expired_ids.append(transfer_id)
            except Exception as e:
                logger.error(
                    "Failed to expire transfer request",
                    extra={"transfer_id": str(transfer_id), "error": str(e)},
                )
                continue

        await self.db.commit()

        if expired_ids:
            logger.info("Expired stale transfer requests", extra={"expired_count": len(expired_ids)})
        return expired_ids

    async def get_transfer_by_id(self, transfer_id: UUID) -> Optional[TransferRequest]:
        stmt = select(TransferRequest).where(TransferRequest.id == transfer_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_transfer_or_raise(self, transfer_id: UUID) -> TransferRequest:
        transfer = await self.get_transfer_by_id(transfer_id)
        if transfer is None:
            raise NotFoundError(resource_type="transfer", resource_id=str(transfer_id))
        return transfer

    async def get_pending_for_reservation(self, reservation_id: UUID) -> Optional[TransferRequest]:
        stmt = select(TransferRequest).where(
            TransferRequest.reservation_id == reservation_id,
            TransferRequest.status == TransferStatus.PENDING,
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def get_transfers_for_user(self, user_id: int, pending_only: bool = True) -> List[TransferRequest]:
        stmt = select(TransferRequest).where(
            or_(TransferRequest.from_user_id == user_id, TransferRequest.to_user_id == user_id)
        )
        if pending_only:
            stmt = stmt.where(TransferRequest.status == TransferStatus.PENDING)
        stmt = stmt.order_by(TransferRequest.created_at)
        result = await self.db.execute(stmt)
        return list(result.scalars())

    async def _get_reservation_or_raise(self, reservation_id: UUID) -> Reservation:
        reservation = await self.db.get(Reservation, reservation_id)
        if reservation is None:
            raise NotFoundError(resource_type="reservation", resource_id=str(reservation_id))
        return reservation

    def _require_transferable(self, reservation: Reservation, now: datetime) -> None:
        if self._reservation_problem(reservation, now) is not None:
            raise InvalidTransitionError(
                "reservation", str(reservation.id), reservation.status, "transferred"
            )

    @staticmethod
    def _reservation_problem(reservation: Optional[Reservation], now: datetime) -> Optional[str]:
        if reservation is None:
            return "reservation deleted"
        if reservation.status != ReservationStatus.CONFIRMED:
            return "reservation not confirmed"
        if reservation.returned_at is not None:
            return "reservation already returned"
        if reservation.end_time <= now:
            return "reservation already ended"
        return None

    @staticmethod
    def _require_party(
        transfer: TransferRequest,
        new_status: TransferStatus,
        actor_user_id: int,
        as_admin: bool,
    ) -> None:
        if new_status in (TransferStatus.ACCEPTED, TransferStatus.DENIED):
            allowed = actor_user_id == transfer.to_user_id
        elif new_status == TransferStatus.CANCELED:
            allowed = as_admin or actor_user_id in (transfer.from_user_id, transfer.requested_by_user_id)
        elif new_status == TransferStatus.EXPIRED:
            allowed = as_admin
        else:
            # Pending is never a valid target; the transition check reports it
            allowed = True

        if not allowed:
            raise ForbiddenError(
                f"User {actor_user_id} may not mark transfer {transfer.id} {new_status.value}",
                actor_user_id,
            )

    def _revalidation_failure(
        self,
        reservation: Optional[Reservation],
        transfer: TransferRequest,
        now: datetime,
    ) -> Optional[str]:
        if now >= transfer.expires_at:
            return "execution window passed"
        problem = self._reservation_problem(reservation, now)
        if problem is None and reservation.user_id != transfer.from_user_id:
            problem = "holder changed since the request was made"
        return problem

    def _reassign(self, reservation: Reservation, transfer: TransferRequest, actor_user_id: int, now: datetime) -> None:
        reservation.user_id = transfer.to_user_id
        reservation.updated_at = now

        notes = f"transferred from {transfer.from_user_id} to {transfer.to_user_id}"
        if transfer.note:
            notes += f": {transfer.note}"
        self.db.add(
            ReservationLog(
                resource_id=reservation.resource_id,
                reservation_id=reservation.id,
                user_id=actor_user_id,
                action=ReservationAction.TRANSFER,
                previous_status=reservation.status,
                new_status=reservation.status,
                notes=notes,
                created_at=now,
            )
        )

    def _finish(self, transfer: TransferRequest, status: TransferStatus, now: datetime) -> None:
        transfer.status = status
        transfer.updated_at = now
        metrics_collector.record_transfer(status.value, transfer.is_scheduled)
