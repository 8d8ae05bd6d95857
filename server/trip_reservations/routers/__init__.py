"""FastAPI routers package."""

from .availability import router as availability_router
from .booking import router as booking_router
from .cart import router as cart_router
from .checkout import router as checkout_router
from .health import router as health_router
from .metrics import router as metrics_router
from .series import router as series_router
from .waitlist import router as waitlist_router

__all__ = [
    "availability_router",
    "booking_router",
    "cart_router",
    "checkout_router",
    "health_router",
    "metrics_router",
    "series_router",
    "waitlist_router",
]
