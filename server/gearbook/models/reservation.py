"""Reservation and audit log models."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import BigInteger, CheckConstraint, DateTime, ForeignKey, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..core.database import Base
from .guild import Resource, utcnow


class ReservationStatus(str, Enum):
    """Reservation status enumeration."""
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class ReservationAction(str, Enum):
    """Actions recorded in the reservation audit log."""
    RESERVE = "reserve"
    EDIT = "edit"
    CANCEL = "cancel"
    RETURN = "return"
    RETURN_CORRECTED = "return_corrected"
    TRANSFER = "transfer"
    QUOTA_OVERRIDE = "quota_override"


class Reservation(Base):
    """A half-open interval [start_time, end_time) during which a user holds a resource."""

    __tablename__ = "reservations"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    resource_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("resources.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)

    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    location: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    status: Mapped[ReservationStatus] = mapped_column(
        String(20), nullable=False, default=ReservationStatus.CONFIRMED, index=True
    )

    # Actual return, may be earlier than end_time
    returned_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    return_location: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("start_time < end_time", name="ck_reservation_interval_ordered"),
        CheckConstraint(
            "status IN ('confirmed', 'cancelled')",
            name="ck_reservation_status_valid",
        ),
        # Serves "reservations of resource X intersecting [a, b)"
        Index("ix_reservations_resource_interval", "resource_id", "status", "start_time", "end_time"),
    )

    resource: Mapped[Resource] = relationship("Resource")

    @property
    def effective_end(self) -> datetime:
        """When the resource was actually freed (or will be)."""
        return self.returned_at or self.end_time

    def __repr__(self) -> str:
        return (
            f"<Reservation(id={self.id}, resource_id={self.resource_id}, user_id={self.user_id}, "
            f"start={self.start_time}, end={self.end_time}, status={self.status})>"
        )


class ReservationLog(Base):
    """Append-only audit trail of reservation changes."""

    __tablename__ = "reservation_logs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    resource_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("resources.id", ondelete="CASCADE"), nullable=False, index=True
    )
    reservation_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid, ForeignKey("reservations.id", ondelete="SET NULL"), nullable=True, index=True
    )
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    action: Mapped[ReservationAction] = mapped_column(String(30), nullable=False)
    previous_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    new_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<ReservationLog(reservation_id={self.reservation_id}, action={self.action})>"
