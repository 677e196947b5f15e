"""Transfer request model."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import BigInteger, CheckConstraint, DateTime, ForeignKey, Index, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..core.database import Base
from .guild import utcnow
from .reservation import Reservation


class TransferStatus(str, Enum):
    """Transfer status enumeration. Only PENDING has outgoing transitions."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    DENIED = "denied"
    EXPIRED = "expired"
    CANCELED = "canceled"


class TransferRequest(Base):
    """Hand-off of a confirmed reservation from one user to another."""

    __tablename__ = "transfer_requests"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    reservation_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("reservations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    from_user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    to_user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    requested_by_user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # None means the transfer waits for the recipient to accept
    execute_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[TransferStatus] = mapped_column(
        String(20), nullable=False, default=TransferStatus.PENDING
    )

    canceled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    canceled_by_user_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("from_user_id <> to_user_id", name="ck_transfer_distinct_users"),
        CheckConstraint(
            "status IN ('pending', 'accepted', 'denied', 'expired', 'canceled')",
            name="ck_transfer_status_valid",
        ),
        Index("ix_transfer_requests_due", "status", "execute_at"),
        # At most one pending request per reservation
        Index(
            "uq_transfer_requests_one_pending",
            "reservation_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    reservation: Mapped[Reservation] = relationship("Reservation")

    @property
    def is_scheduled(self) -> bool:
        return self.execute_at is not None

    def __repr__(self) -> str:
        return (
            f"<TransferRequest(id={self.id}, reservation_id={self.reservation_id}, "
            f"{self.from_user_id}->{self.to_user_id}, status={self.status})>"
        )
