"""Guild, resource class and resource models."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import BigInteger, CheckConstraint, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..core.clock import system_clock
from ..core.database import Base


def utcnow() -> datetime:
    return system_clock.now()


class ResourceStatus(str, Enum):
    """Informational lifecycle status of a resource."""
    AVAILABLE = "available"
    LOANED = "loaned"
    UNAVAILABLE = "unavailable"


class Guild(Base):
    """Tenant scope. Everything else belongs to exactly one guild."""

    __tablename__ = "guilds"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # None means the configured default applies
    offer_hold_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "offer_hold_minutes IS NULL OR offer_hold_minutes > 0",
            name="ck_guild_offer_hold_positive",
        ),
    )

    def __repr__(self) -> str:
        return f"<Guild(id={self.id}, offer_hold_minutes={self.offer_hold_minutes})>"


class ResourceClass(Base):
    """Policy grouping of resources (e.g. cameras, vehicles)."""

    __tablename__ = "resource_classes"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    guild_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("guilds.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("guild_id", "name", name="uq_resource_class_guild_name"),
        CheckConstraint("length(name) > 0", name="ck_resource_class_name_not_empty"),
    )

    resources: Mapped[list["Resource"]] = relationship("Resource", back_populates="resource_class")

    def __repr__(self) -> str:
        return f"<ResourceClass(id={self.id}, guild_id={self.guild_id}, name='{self.name}')>"


class Resource(Base):
    """A bookable piece of equipment."""

    __tablename__ = "resources"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    guild_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("guilds.id", ondelete="CASCADE"), nullable=False, index=True
    )
    class_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid, ForeignKey("resource_classes.id", ondelete="SET NULL"), nullable=True, index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[ResourceStatus] = mapped_column(
        String(20), nullable=False, default=ResourceStatus.AVAILABLE
    )

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("length(name) > 0", name="ck_resource_name_not_empty"),
        CheckConstraint(
            "status IN ('available', 'loaned', 'unavailable')",
            name="ck_resource_status_valid",
        ),
    )

    resource_class: Mapped[Optional[ResourceClass]] = relationship(
        "ResourceClass", back_populates="resources"
    )

    def __repr__(self) -> str:
        return f"<Resource(id={self.id}, name='{self.name}', status={self.status})>"
