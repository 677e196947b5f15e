"""Schemas module exporting the request and response models."""

from .admission import AdmissionResult, Admitted, Conflict, HeldByWaitlistOffer
from .common import Problem, UtcDatetime

__all__ = [
    "AdmissionResult",
    "Admitted",
    "Conflict",
    "HeldByWaitlistOffer",
    "Problem",
    "UtcDatetime",
]
