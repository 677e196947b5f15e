"""Quota policy layers and the admin override audit trail.

A row's NULL limit column means "no limit from this layer". A guild has quota
enforcement iff it has a QuotaSettings row.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import BigInteger, CheckConstraint, DateTime, ForeignKey, Integer, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ..core.database import Base
from .guild import utcnow


def _non_negative(*columns: str, table: str) -> tuple:
    return tuple(
        CheckConstraint(f"{column} IS NULL OR {column} >= 0", name=f"ck_{table}_{column}_non_negative")
        for column in columns
    )


SHARED_LIMIT_FIELDS = ("max_active_count", "max_overlap_count", "max_hours_7d", "max_hours_30d")
CLASS_ONLY_FIELDS = ("max_duration_hours", "min_lead_time_minutes", "max_lead_time_days")


class QuotaSettings(Base):
    """Guild base layer."""

    __tablename__ = "quota_settings"

    guild_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("guilds.id", ondelete="CASCADE"), primary_key=True, autoincrement=False
    )
    max_active_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_overlap_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_hours_7d: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_hours_30d: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = _non_negative(*SHARED_LIMIT_FIELDS, table="quota_settings")


class QuotaRoleOverride(Base):
    """Per-role layer, merged most-permissive-wins across all held roles."""

    __tablename__ = "quota_role_overrides"

    guild_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("guilds.id", ondelete="CASCADE"), primary_key=True, autoincrement=False
    )
    role_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    max_active_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_overlap_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_hours_7d: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_hours_30d: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = _non_negative(*SHARED_LIMIT_FIELDS, table="quota_role_overrides")


class QuotaClassOverride(Base):
    """Per-resource-class layer with the class-intrinsic duration and lead-time limits."""

    __tablename__ = "quota_class_overrides"

    guild_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("guilds.id", ondelete="CASCADE"), primary_key=True, autoincrement=False
    )
    class_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("resource_classes.id", ondelete="CASCADE"), primary_key=True
    )
    max_active_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_overlap_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_hours_7d: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_hours_30d: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_duration_hours: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    min_lead_time_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_lead_time_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = _non_negative(
        *SHARED_LIMIT_FIELDS, *CLASS_ONLY_FIELDS, table="quota_class_overrides"
    )


class QuotaOverrideAudit(Base):
    """Record of an admin booking past a quota rejection."""

    __tablename__ = "quota_override_audits"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    guild_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("guilds.id", ondelete="CASCADE"), nullable=False, index=True
    )
    reservation_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid, ForeignKey("reservations.id", ondelete="SET NULL"), nullable=True
    )
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    acted_by_user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    rejection_code: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, index=True)

    def __repr__(self) -> str:
        return (
            f"<QuotaOverrideAudit(guild_id={self.guild_id}, user_id={self.user_id}, "
            f"acted_by={self.acted_by_user_id})>"
        )
