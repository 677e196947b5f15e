"""Reservation-related Pydantic schemas."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from .admission import AdmissionResult
from .common import UtcDatetime, enum_value


class _Window(BaseModel):
    start: UtcDatetime = Field(..., description="Interval start (ISO 8601)")
    end: UtcDatetime = Field(..., description="Interval end, exclusive (ISO 8601)")


class ValidateReservationRequest(_Window):
    """Ask whether a reservation would be admitted, without booking it."""

    guild_id: int
    resource_id: str
    exclude_reservation_id: Optional[str] = Field(None, description="Reservation to ignore, for edits")


class CreateReservationRequest(_Window):
    """Request schema for booking a resource."""

    guild_id: int
    resource_id: str
    location: Optional[str] = Field(None, max_length=200)
    on_behalf_of_user_id: Optional[int] = Field(
        None, description="Book for another user; the caller is recorded as acting admin"
    )
    override_quota: bool = Field(False, description="Book past a quota rejection (admins only)")
    override_reason: Optional[str] = Field(None, max_length=500)


class EditReservationRequest(_Window):
    reservation_id: str


class ReservationActionRequest(BaseModel):
    """Request schema for cancel, return and return correction."""

    reservation_id: str
    return_location: Optional[str] = Field(None, max_length=200)


class Reservation(BaseModel):
    """Reservation response schema."""

    id: str
    resource_id: str
    user_id: int
    start_time: datetime
    end_time: datetime
    status: str
    location: Optional[str] = None
    returned_at: Optional[datetime] = None
    return_location: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}

    @field_validator("id", "resource_id", mode="before")
    @classmethod
    def _stringify(cls, v):
        return str(v)

    @field_validator("status", mode="before")
    @classmethod
    def _status_value(cls, v):
        return enum_value(v)


class FreedWindow(BaseModel):
    resource_id: str
    start: datetime
    end: datetime


class AdmissionResponse(BaseModel):
    """Admission decision with a human readable message."""

    result: AdmissionResult
    message: str


class CreateReservationResponse(BaseModel):
    result: AdmissionResult
    message: str
    reservation: Optional[Reservation] = None
    quota_overridden: bool = False


class ReleaseResponse(BaseModel):
    """Result of cancelling or returning: the freed window and any waitlist offer it produced."""

    reservation: Reservation
    freed_window: Optional[FreedWindow] = None
    offer_id: Optional[str] = None
