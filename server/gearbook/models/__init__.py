"""Models module exporting all database models."""

from .guild import Guild, Resource, ResourceClass, ResourceStatus
from .quota import QuotaClassOverride, QuotaOverrideAudit, QuotaRoleOverride, QuotaSettings
from .reservation import Reservation, ReservationAction, ReservationLog, ReservationStatus
from .transfer import TransferRequest, TransferStatus
from .waitlist import OfferStatus, WaitlistEntry, WaitlistOffer

__all__ = [
    # Tenancy and inventory
    "Guild",
    "Resource",
    "ResourceClass",
    "ResourceStatus",

    # Reservations
    "Reservation",
    "ReservationAction",
    "ReservationLog",
    "ReservationStatus",

    # Quota policy
    "QuotaSettings",
    "QuotaRoleOverride",
    "QuotaClassOverride",
    "QuotaOverrideAudit",

    # Waitlist
    "WaitlistEntry",
    "WaitlistOffer",
    "OfferStatus",

    # Transfers
    "TransferRequest",
    "TransferStatus",
]
