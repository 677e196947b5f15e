"""Guild, resource class and resource administration."""

import logging

from fastapi import APIRouter
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import Clock
from ..core.dependencies import CurrentClock, DatabaseSession, parse_uuid
from ..schemas.resource import (
    CreateClassRequest,
    CreateResourceRequest,
    Guild,
    Resource,
    ResourceClass,
    UpsertGuildRequest,
)
from ..services.resource_service import ResourceService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["resources"])


@router.put("/v1/guilds/{guild_id}", response_model=Guild)
async def upsert_guild(
    guild_id: int,
    request: UpsertGuildRequest,
    db: AsyncSession = DatabaseSession,
    clock: Clock = CurrentClock,
) -> Guild:
    """Register a guild or update its name and offer hold duration."""
    guild = await ResourceService(db, clock).ensure_guild(guild_id, request.name, request.offer_hold_minutes)
    return Guild.model_validate(guild)


@router.post("/v1/resources/classes/create", response_model=ResourceClass, status_code=201)
async def create_class(
    request: CreateClassRequest,
    db: AsyncSession = DatabaseSession,
    clock: Clock = CurrentClock,
) -> ResourceClass:
    resource_class = await ResourceService(db, clock).create_class(
        request.guild_id, request.name, request.description
    )
    return ResourceClass.model_validate(resource_class)


@router.post("/v1/resources/create", response_model=Resource, status_code=201)
async def create_resource(
    request: CreateResourceRequest,
    db: AsyncSession = DatabaseSession,
    clock: Clock = CurrentClock,
) -> Resource:
    class_id = parse_uuid(request.class_id, "class_id") if request.class_id else None
    resource = await ResourceService(db, clock).create_resource(request.guild_id, request.name, class_id)
    return Resource.model_validate(resource)


@router.get("/v1/resources/{resource_id}", response_model=Resource)
async def get_resource(
    resource_id: str,
    db: AsyncSession = DatabaseSession,
    clock: Clock = CurrentClock,
) -> Resource:
    resource = await ResourceService(db, clock).get_resource_or_raise(parse_uuid(resource_id, "resource_id"))
    return Resource.model_validate(resource)
