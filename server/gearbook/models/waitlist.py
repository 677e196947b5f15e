"""Waitlist entry and offer models."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import BigInteger, CheckConstraint, DateTime, ForeignKey, Index, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..core.database import Base
from .guild import utcnow


class OfferStatus(str, Enum):
    """Offer status enumeration. Everything but PENDING is terminal."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"


class WaitlistEntry(Base):
    """A user's place in a resource's FIFO queue for a desired window."""

    __tablename__ = "waitlist_entries"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    guild_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("guilds.id", ondelete="CASCADE"), nullable=False
    )
    resource_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("resources.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    desired_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    desired_end: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    # FIFO key, set from the service clock
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    canceled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("desired_start < desired_end", name="ck_waitlist_window_ordered"),
        Index("ix_waitlist_resource_fifo", "resource_id", "canceled_at", "created_at"),
    )

    offers: Mapped[list["WaitlistOffer"]] = relationship(
        "WaitlistOffer",
        back_populates="entry",
        cascade="all, delete-orphan",
        order_by="WaitlistOffer.created_at",
    )

    @property
    def is_active(self) -> bool:
        return self.canceled_at is None

    def __repr__(self) -> str:
        return (
            f"<WaitlistEntry(id={self.id}, resource_id={self.resource_id}, user_id={self.user_id}, "
            f"window=[{self.desired_start}, {self.desired_end}), canceled_at={self.canceled_at})>"
        )


class WaitlistOffer(Base):
    """Time-boxed exclusive hold on a freed window for one waitlist entry."""

    __tablename__ = "waitlist_offers"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    waitlist_entry_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("waitlist_entries.id", ondelete="CASCADE"), nullable=False, index=True
    )
    offered_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    offered_end: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[OfferStatus] = mapped_column(
        String(20), nullable=False, default=OfferStatus.PENDING
    )
    reserved_reservation_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid, ForeignKey("reservations.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("offered_start < offered_end", name="ck_offer_window_ordered"),
        CheckConstraint(
            "status IN ('pending', 'accepted', 'declined', 'expired')",
            name="ck_offer_status_valid",
        ),
        Index("ix_waitlist_offers_status_expiry", "status", "expires_at"),
    )

    entry: Mapped[WaitlistEntry] = relationship("WaitlistEntry", back_populates="offers")

    def is_live(self, now: datetime) -> bool:
        """Pending and not yet past its hold deadline."""
        return self.status == OfferStatus.PENDING and now < self.expires_at

    def __repr__(self) -> str:
        return (
            f"<WaitlistOffer(id={self.id}, entry_id={self.waitlist_entry_id}, status={self.status}, "
            f"expires_at={self.expires_at})>"
        )
