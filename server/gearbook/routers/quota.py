"""Quota router: effective limits and administration of the three policy layers."""

from typing import List, Optional

from fastapi import APIRouter, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import Clock
from ..core.dependencies import Actor, CurrentActor, CurrentClock, DatabaseSession, parse_uuid
from ..core.exceptions import NotFoundError
from ..schemas.quota import (
    ClassLimits,
    EffectiveLimits,
    EffectiveQuotaResponse,
    QuotaOverrideAudit,
    QuotaUsage,
    RoleOverride,
    SharedLimits,
)
from ..services.quota_service import QuotaService
from ..services.resource_service import ResourceService

router = APIRouter(prefix="/v1/quotas", tags=["quotas"])


@router.get("/effective", response_model=EffectiveQuotaResponse)
async def get_effective_quota(
    guild_id: int = Query(..., description="Guild to resolve limits in"),
    resource_id: Optional[str] = Query(None, description="Include the class layer of this resource"),
    actor: Actor = CurrentActor,
    db: AsyncSession = DatabaseSession,
    clock: Clock = CurrentClock,
) -> EffectiveQuotaResponse:
    """Limits that apply to the caller, with current usage next to them."""
    service = QuotaService(db, clock)

    class_id = None
    if resource_id is not None:
        resource = await ResourceService(db, clock).get_resource_or_raise(
            parse_uuid(resource_id, "resource_id"), guild_id
        )
        class_id = resource.class_id

    limits = await service.resolve(guild_id, actor.role_ids, class_id)
    usage = await service.usage(guild_id, actor.user_id)
    configured = await service.is_configured(guild_id)

    return EffectiveQuotaResponse(
        guild_id=guild_id,
        user_id=actor.user_id,
        resource_id=resource_id,
        configured=configured,
        limits=EffectiveLimits(**limits.to_optional_dict()),
        usage=QuotaUsage(
            active_count=usage.active_count,
            hours_7d=usage.hours_7d,
            hours_30d=usage.hours_30d,
        ),
    )


@router.get("/{guild_id}/base", response_model=SharedLimits)
async def get_base_settings(
    guild_id: int,
    db: AsyncSession = DatabaseSession,
    clock: Clock = CurrentClock,
) -> SharedLimits:
    row = await QuotaService(db, clock).get_base_or_raise(guild_id)
    return SharedLimits.model_validate(row, from_attributes=True)


@router.put("/{guild_id}/base", response_model=SharedLimits)
async def put_base_settings(
    guild_id: int,
    request: SharedLimits,
    db: AsyncSession = DatabaseSession,
    clock: Clock = CurrentClock,
) -> SharedLimits:
    """Replace the guild base layer; saving one turns quota enforcement on."""
    row = await QuotaService(db, clock).upsert_base(guild_id, **request.model_dump())
    return SharedLimits.model_validate(row, from_attributes=True)


@router.delete("/{guild_id}/base")
async def delete_base_settings(
    guild_id: int,
    db: AsyncSession = DatabaseSession,
    clock: Clock = CurrentClock,
) -> dict:
    if not await QuotaService(db, clock).remove_base(guild_id):
        raise NotFoundError(resource_type="quota settings", resource_id=str(guild_id))
    return {"deleted": True}


@router.get("/{guild_id}/roles", response_model=List[RoleOverride])
async def list_role_overrides(
    guild_id: int,
    db: AsyncSession = DatabaseSession,
    clock: Clock = CurrentClock,
) -> List[RoleOverride]:
    rows = await QuotaService(db, clock).list_role_overrides(guild_id)
    return [RoleOverride.model_validate(row) for row in rows]


@router.put("/{guild_id}/roles/{role_id}", response_model=RoleOverride)
async def put_role_override(
    guild_id: int,
    role_id: int,
    request: SharedLimits,
    db: AsyncSession = DatabaseSession,
    clock: Clock = CurrentClock,
) -> RoleOverride:
    row = await QuotaService(db, clock).upsert_role_override(guild_id, role_id, **request.model_dump())
    return RoleOverride.model_validate(row)


@router.delete("/{guild_id}/roles/{role_id}")
async def delete_role_override(
    guild_id: int,
    role_id: int,
    db: AsyncSession = DatabaseSession,
    clock: Clock = CurrentClock,
) -> dict:
    if not await QuotaService(db, clock).remove_role_override(guild_id, role_id):
        raise NotFoundError(resource_type="role quota override", resource_id=f"{guild_id}/{role_id}")
    return {"deleted": True}


@router.put("/{guild_id}/classes/{class_id}", response_model=ClassLimits)
async def put_class_override(
    guild_id: int,
    class_id: str,
    request: ClassLimits,
    db: AsyncSession = DatabaseSession,
    clock: Clock = CurrentClock,
) -> ClassLimits:
    parsed_class_id = parse_uuid(class_id, "class_id")
    await ResourceService(db, clock).get_class_or_raise(parsed_class_id, guild_id)
    row = await QuotaService(db, clock).upsert_class_override(guild_id, parsed_class_id, **request.model_dump())
    return ClassLimits.model_validate(row, from_attributes=True)


@router.delete("/{guild_id}/classes/{class_id}")
async def delete_class_override(
    guild_id: int,
    class_id: str,
    db: AsyncSession = DatabaseSession,
    clock: Clock = CurrentClock,
) -> dict:
    if not await QuotaService(db, clock).remove_class_override(guild_id, parse_uuid(class_id, "class_id")):
        raise NotFoundError(resource_type="class quota override", resource_id=f"{guild_id}/{class_id}")
    return {"deleted": True}


@router.get("/{guild_id}/overrides", response_model=List[QuotaOverrideAudit])
async def list_quota_overrides(
    guild_id: int,
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = DatabaseSession,
    clock: Clock = CurrentClock,
) -> List[QuotaOverrideAudit]:
    """Most recent admin bookings that went past a quota rejection."""
    rows = await QuotaService(db, clock).recent_overrides(guild_id, limit=limit)
    return [QuotaOverrideAudit.model_validate(row) for row in rows]
