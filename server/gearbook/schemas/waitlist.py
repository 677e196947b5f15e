"""Waitlist-related Pydantic schemas."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from .common import UtcDatetime, enum_value


class JoinStatus(str, Enum):
    JOINED = "joined"
    ALREADY_EXISTS = "already_exists"
    INVALID_WINDOW = "invalid_window"


class JoinWaitlistResult(BaseModel):
    """Outcome of a join attempt. Joining twice is a no-op that returns the existing entry."""

    status: JoinStatus
    entry_id: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def joined(cls, entry_id) -> "JoinWaitlistResult":
        return cls(status=JoinStatus.JOINED, entry_id=str(entry_id))

    @classmethod
    def already_exists(cls, entry_id) -> "JoinWaitlistResult":
        return cls(status=JoinStatus.ALREADY_EXISTS, entry_id=str(entry_id))

    @classmethod
    def invalid_window(cls, reason: str) -> "JoinWaitlistResult":
        return cls(status=JoinStatus.INVALID_WINDOW, reason=reason)


class JoinWaitlistRequest(BaseModel):
    """Request schema for joining a resource's waitlist."""

    guild_id: int = Field(..., description="Guild owning the resource")
    resource_id: str = Field(..., description="Resource to wait for")
    desired_start: UtcDatetime = Field(..., description="Desired start (ISO 8601)")
    desired_end: UtcDatetime = Field(..., description="Desired end (ISO 8601)")


class WaitlistEntryRequest(BaseModel):
    """Request schema for leaving or admin-cancelling an entry."""

    entry_id: str = Field(..., description="Waitlist entry ID")


class OfferRequest(BaseModel):
    """Request schema for accepting or declining an offer."""

    offer_id: str = Field(..., description="Waitlist offer ID")


class FreedWindowRequest(BaseModel):
    """Request schema for offering a freed window to the waitlist."""

    guild_id: int
    resource_id: str
    available_start: UtcDatetime
    available_end: UtcDatetime


class WaitlistEntry(BaseModel):
    """Waitlist entry response schema."""

    id: str = Field(..., description="Unique waitlist entry ID")
    guild_id: int
    resource_id: str = Field(..., description="Resource waited for")
    user_id: int
    desired_start: datetime
    desired_end: datetime
    created_at: datetime = Field(..., description="Join time, the FIFO key")
    canceled_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

    @field_validator("id", "resource_id", mode="before")
    @classmethod
    def _stringify(cls, v):
        return str(v)


class WaitlistOffer(BaseModel):
    """Waitlist offer response schema."""

    id: str
    waitlist_entry_id: str
    offered_start: datetime
    offered_end: datetime
    expires_at: datetime
    status: str
    reserved_reservation_id: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}

    @field_validator("id", "waitlist_entry_id", "reserved_reservation_id", mode="before")
    @classmethod
    def _stringify(cls, v):
        return None if v is None else str(v)

    @field_validator("status", mode="before")
    @classmethod
    def _status_value(cls, v):
        return enum_value(v)


class LeaveWaitlistResponse(BaseModel):
    canceled: bool


class AcceptOfferResponse(BaseModel):
    accepted: bool
    reservation_id: Optional[str] = None


class DeclineOfferResponse(BaseModel):
    declined: bool
    next_offer: Optional[WaitlistOffer] = None


class ProcessExpiredResponse(BaseModel):
    expired_offer_ids: list[str] = Field(default_factory=list)
    new_offers: list[WaitlistOffer] = Field(default_factory=list)
