"""Service layer package."""

from .availability_ledger import AvailabilityLedger
from .booking_state_machine import BookingStateMachine
from .cart_service import CartService
from .checkout_orchestrator import CheckoutLine, CheckoutOrchestrator
from .idempotency_service import IdempotencyService
from .notification_service import ConfirmationNotifier
from .trip_series_manager import TripSeriesManager
from .waitlist_promoter import WaitlistPromoter

__all__ = [
    "AvailabilityLedger",
    "BookingStateMachine",
    "CartService",
    "CheckoutLine",
    "CheckoutOrchestrator",
    "ConfirmationNotifier",
    "IdempotencyService",
    "TripSeriesManager",
    "WaitlistPromoter",
]
