"""Admission decision values.

Admission never raises for a policy rejection; it returns one of these
variants, tagged by ``code`` so callers can render a message.
"""

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field


class AdmissionOutcome(BaseModel):
    """Common base of every admission variant."""

    @property
    def is_admitted(self) -> bool:
        return False

    @property
    def is_quota_rejection(self) -> bool:
        """Rejections an admin may book past. Conflicts and offer holds never qualify."""
        return False

    def describe(self) -> str:
        return self.code


class Admitted(AdmissionOutcome):
    code: Literal["admitted"] = "admitted"

    @property
    def is_admitted(self) -> bool:
        return True

    def describe(self) -> str:
        return "Reservation admitted"


class Conflict(AdmissionOutcome):
    code: Literal["conflict"] = "conflict"

    def describe(self) -> str:
        return "The resource is already reserved during this time"


class HeldByWaitlistOffer(AdmissionOutcome):
    code: Literal["held_by_waitlist_offer"] = "held_by_waitlist_offer"

    def describe(self) -> str:
        return "This window is held for another user on the waitlist"


class _QuotaRejection(AdmissionOutcome):
    @property
    def is_quota_rejection(self) -> bool:
        return True


class ExceededActiveCount(_QuotaRejection):
    code: Literal["exceeded_active_count"] = "exceeded_active_count"
    current: int = Field(..., description="Active reservations the user already holds")
    limit: int

    def describe(self) -> str:
        return f"Active reservation limit reached ({self.current}/{self.limit})"


class ExceededOverlapCount(_QuotaRejection):
    code: Literal["exceeded_overlap_count"] = "exceeded_overlap_count"
    current: int = Field(..., description="User's reservations overlapping the proposed window")
    limit: int

    def describe(self) -> str:
        return f"Too many overlapping reservations ({self.current}/{self.limit})"


class ExceededHours7d(_QuotaRejection):
    code: Literal["exceeded_hours_7d"] = "exceeded_hours_7d"
    current: float
    proposed: float
    limit: int

    def describe(self) -> str:
        return f"7-day usage would be {self.current + self.proposed:.1f}h (limit {self.limit}h)"


class ExceededHours30d(_QuotaRejection):
    code: Literal["exceeded_hours_30d"] = "exceeded_hours_30d"
    current: float
    proposed: float
    limit: int

    def describe(self) -> str:
        return f"30-day usage would be {self.current + self.proposed:.1f}h (limit {self.limit}h)"


class ExceededMaxDuration(_QuotaRejection):
    code: Literal["exceeded_max_duration"] = "exceeded_max_duration"
    proposed: float
    limit: int

    def describe(self) -> str:
        return f"Reservation of {self.proposed:.1f}h exceeds the {self.limit}h maximum"


class TooShortLeadTime(_QuotaRejection):
    code: Literal["too_short_lead_time"] = "too_short_lead_time"
    proposed: int = Field(..., description="Minutes between now and the start")
    min: int

    def describe(self) -> str:
        return f"Reservations must be made at least {self.min} minutes in advance"


class TooLongLeadTime(_QuotaRejection):
    code: Literal["too_long_lead_time"] = "too_long_lead_time"
    proposed: int = Field(..., description="Days between now and the start")
    max: int

    def describe(self) -> str:
        return f"Reservations cannot be made more than {self.max} days in advance"


AdmissionResult = Annotated[
    Union[
        Admitted,
        Conflict,
        HeldByWaitlistOffer,
        ExceededActiveCount,
        ExceededOverlapCount,
        ExceededHours7d,
        ExceededHours30d,
        ExceededMaxDuration,
        TooShortLeadTime,
        TooLongLeadTime,
    ],
    Field(discriminator="code"),
]
