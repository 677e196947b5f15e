"""Background workers for offer expiry and transfer execution."""

from .offer_expiry_worker import OfferExpiryWorker
from .transfer_worker import TransferWorker

__all__ = ["OfferExpiryWorker", "TransferWorker"]
