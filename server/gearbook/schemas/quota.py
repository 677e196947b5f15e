"""Quota-related Pydantic schemas."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class SharedLimits(BaseModel):
    """Limits every layer can set. Omitted or null means no limit from this layer."""

    max_active_count: Optional[int] = Field(None, ge=0)
    max_overlap_count: Optional[int] = Field(None, ge=0)
    max_hours_7d: Optional[int] = Field(None, ge=0)
    max_hours_30d: Optional[int] = Field(None, ge=0)


class ClassLimits(SharedLimits):
    """Class layer, adding class-intrinsic duration and lead-time limits."""

    max_duration_hours: Optional[int] = Field(None, ge=0)
    min_lead_time_minutes: Optional[int] = Field(None, ge=0)
    max_lead_time_days: Optional[int] = Field(None, ge=0)


class EffectiveLimits(ClassLimits):
    """Merged limits for display; null means unlimited."""


class QuotaUsage(BaseModel):
    active_count: int
    hours_7d: float
    hours_30d: float


class EffectiveQuotaResponse(BaseModel):
    guild_id: int
    user_id: int
    resource_id: Optional[str] = None
    configured: bool
    limits: EffectiveLimits
    usage: QuotaUsage


class RoleOverride(SharedLimits):
    role_id: int

    model_config = {"from_attributes": True}


class QuotaOverrideAudit(BaseModel):
    id: str
    guild_id: int
    reservation_id: Optional[str] = None
    user_id: int
    acted_by_user_id: int
    rejection_code: Optional[str] = None
    reason: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}

    @field_validator("id", "reservation_id", mode="before")
    @classmethod
    def _stringify(cls, v):
        return None if v is None else str(v)
