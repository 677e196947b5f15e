"""Business logic services."""

from .admission_service import AdmissionService
from .conflict_service import ConflictService
from .quota_service import QuotaService
from .reservation_service import ReservationService
from .resource_service import ResourceService
from .transfer_service import TransferService
from .waitlist_service import WaitlistService

__all__ = [
    "AdmissionService",
    "ConflictService",
    "QuotaService",
    "ReservationService",
    "ResourceService",
    "TransferService",
    "WaitlistService",
]
