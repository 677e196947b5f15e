"""Guild and resource Pydantic schemas."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from .common import enum_value


class UpsertGuildRequest(BaseModel):
    name: Optional[str] = Field(None, max_length=100)
    offer_hold_minutes: Optional[int] = Field(None, gt=0)


class Guild(BaseModel):
    id: int
    name: Optional[str] = None
    offer_hold_minutes: Optional[int] = None

    model_config = {"from_attributes": True}


class CreateClassRequest(BaseModel):
    guild_id: int
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None


class ResourceClass(BaseModel):
    id: str
    guild_id: int
    name: str
    description: Optional[str] = None

    model_config = {"from_attributes": True}

    @field_validator("id", mode="before")
    @classmethod
    def _stringify(cls, v):
        return str(v)


class CreateResourceRequest(BaseModel):
    guild_id: int
    name: str = Field(..., min_length=1, max_length=100)
    class_id: Optional[str] = None


class Resource(BaseModel):
    id: str
    guild_id: int
    class_id: Optional[str] = None
    name: str
    status: str
    created_at: datetime

    model_config = {"from_attributes": True}

    @field_validator("id", "class_id", mode="before")
    @classmethod
    def _stringify(cls, v):
        return None if v is None else str(v)

    @field_validator("status", mode="before")
    @classmethod
    def _status_value(cls, v):
        return enum_value(v)
