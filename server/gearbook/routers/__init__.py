"""FastAPI routers package."""

from .metrics import router as metrics_router
from .quota import router as quota_router
from .reservation import router as reservation_router
from .resource import router as resource_router
from .transfer import router as transfer_router
from .waitlist import router as waitlist_router

__all__ = [
    "metrics_router",
    "quota_router",
    "reservation_router",
    "resource_router",
    "transfer_router",
    "waitlist_router",
]
