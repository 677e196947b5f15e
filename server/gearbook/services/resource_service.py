"""Guild, resource class and resource bookkeeping."""

import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import Clock, system_clock
from ..core.config import settings
from ..core.exceptions import ConflictError, NotFoundError, ValidationError
from ..models.guild import Guild, Resource, ResourceClass

logger = logging.getLogger(__name__)


class ResourceService:
    """Service for guild and resource lookups, creation and per-resource locking."""

    def __init__(self, db: AsyncSession, clock: Clock = system_clock):
        self.db = db
        self.clock = clock

    async def ensure_guild(
        self,
        guild_id: int,
        name: Optional[str] = None,
        offer_hold_minutes: Optional[int] = None,
    ) -> Guild:
        """Create the guild row if missing, updating provided settings otherwise."""
        if offer_hold_minutes is not None and offer_hold_minutes <= 0:
            raise ValidationError(
                detail="offer_hold_minutes must be positive",
                errors={"offer_hold_minutes": offer_hold_minutes},
            )

        guild = await self.db.get(Guild, guild_id)
        if guild is None:
            guild = Guild(id=guild_id, name=name, created_at=self.clock.now())
            self.db.add(guild)
        if name is not None:
            guild.name = name
        if offer_hold_minutes is not None:
            guild.offer_hold_minutes = offer_hold_minutes

        await self.db.commit()

        logger.info(
            "Guild settings saved",
            extra={"guild_id": guild_id, "offer_hold_minutes": guild.offer_hold_minutes},
        )
        return guild

    async def get_offer_hold_minutes(self, guild_id: int) -> int:
        guild = await self.db.get(Guild, guild_id)
        if guild is None or guild.offer_hold_minutes is None:
            return settings.default_offer_hold_minutes
        return guild.offer_hold_minutes

    async def create_class(self, guild_id: int, name: str, description: Optional[str] = None) -> ResourceClass:
        """
        Create a resource class.

        Raises:
            NotFoundError: If the guild does not exist
            ConflictError: If the guild already has a class with this name
        """
        await self._get_guild_or_raise(guild_id)

        existing = await self.db.execute(
            select(ResourceClass.id).where(ResourceClass.guild_id == guild_id, ResourceClass.name == name)
        )
        if existing.scalar_one_or_none() is not None:
            raise ConflictError(
                detail=f"Resource class '{name}' already exists",
                conflicting_resource={"guild_id": guild_id, "name": name},
            )

        resource_class = ResourceClass(
            guild_id=guild_id,
            name=name,
            description=description,
            created_at=self.clock.now(),
        )
        self.db.add(resource_class)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError(
                detail=f"Resource class '{name}' already exists",
                conflicting_resource={"guild_id": guild_id, "name": name},
            )

        logger.info(
            "Resource class created",
            extra={"class_id": str(resource_class.id), "guild_id": guild_id, "class_name": name},
        )
        return resource_class

    async def create_resource(self, guild_id: int, name: str, class_id: Optional[UUID] = None) -> Resource:
        """
        Create a resource, optionally assigned to a class of the same guild.

        Raises:
            NotFoundError: If the guild or class does not exist
        """
        await self._get_guild_or_raise(guild_id)
        if class_id is not None:
            await self.get_class_or_raise(class_id, guild_id)

        now = self.clock.now()
        resource = Resource(
            guild_id=guild_id,
            name=name,
            class_id=class_id,
            created_at=now,
            updated_at=now,
        )
        self.db.add(resource)
        await self.db.commit()

        logger.info(
            "Resource created",
            extra={"resource_id": str(resource.id), "guild_id": guild_id, "class_id": str(class_id) if class_id else None},
        )
        return resource

    async def get_class_or_raise(self, class_id: UUID, guild_id: Optional[int] = None) -> ResourceClass:
        resource_class = await self.db.get(ResourceClass, class_id)
        if resource_class is None or (guild_id is not None and resource_class.guild_id != guild_id):
            raise NotFoundError(resource_type="resource class", resource_id=str(class_id))
        return resource_class

    async def get_resource_by_id(self, resource_id: UUID) -> Optional[Resource]:
        stmt = select(Resource).where(Resource.id == resource_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_resource_or_raise(self, resource_id: UUID, guild_id: Optional[int] = None) -> Resource:
        """
        Get a resource, optionally checking that it belongs to the guild.

        Raises:
            NotFoundError: If missing or owned by another guild
        """
        resource = await self.get_resource_by_id(resource_id)
        if resource is None or (guild_id is not None and resource.guild_id != guild_id):
            logger.warning(
                "Resource not found",
                extra={"resource_id": str(resource_id), "guild_id": guild_id},
            )
            raise NotFoundError(resource_type="resource", resource_id=str(resource_id))
        return resource

    async def lock_resource(self, resource_id: UUID) -> None:
        """
        Serialize writers on one resource's reservation timeline.

        PostgreSQL takes a transaction-scoped advisory lock. SQLite sessions
        already hold the database write lock from BEGIN IMMEDIATE.
        """
        if self.db.bind and self.db.bind.dialect.name == "postgresql":
            await self.db.execute(
                text("SELECT pg_advisory_xact_lock(hashtext(:resource_id))"),
                {"resource_id": str(resource_id)},
            )
            logger.debug("Acquired advisory lock for resource", extra={"resource_id": str(resource_id)})

    async def get_resource_with_lock(self, resource_id: UUID, guild_id: Optional[int] = None) -> Resource:
        await self.lock_resource(resource_id)
        return await self.get_resource_or_raise(resource_id, guild_id)

    async def _get_guild_or_raise(self, guild_id: int) -> Guild:
        guild = await self.db.get(Guild, guild_id)
        if guild is None:
            raise NotFoundError(resource_type="guild", resource_id=str(guild_id))
        return guild
