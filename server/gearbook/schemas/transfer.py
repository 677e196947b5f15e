"""Transfer-related Pydantic schemas."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from ..models.transfer import TransferStatus
from .common import UtcDatetime, enum_value


class CreateTransferRequest(BaseModel):
    """Request schema for handing a reservation to another user."""

    reservation_id: str
    to_user_id: int
    execute_at: Optional[UtcDatetime] = Field(None, description="Run at this time instead of waiting for acceptance")
    note: Optional[str] = None


class UpdateTransferStatusRequest(BaseModel):
    transfer_id: str
    status: TransferStatus


class Transfer(BaseModel):
    """Transfer request response schema."""

    id: str
    reservation_id: str
    from_user_id: int
    to_user_id: int
    requested_by_user_id: int
    execute_at: Optional[datetime] = None
    note: Optional[str] = None
    expires_at: datetime
    status: str
    canceled_at: Optional[datetime] = None
    canceled_by_user_id: Optional[int] = None
    created_at: datetime

    model_config = {"from_attributes": True}

    @field_validator("id", "reservation_id", mode="before")
    @classmethod
    def _stringify(cls, v):
        return str(v)

    @field_validator("status", mode="before")
    @classmethod
    def _status_value(cls, v):
        return enum_value(v)


class ExecuteDueResponse(BaseModel):
    executed: list[str] = Field(default_factory=list)
    expired: list[str] = Field(default_factory=list)
    stale_expired: list[str] = Field(default_factory=list)
