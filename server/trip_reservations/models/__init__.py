"""Database models for the trip reservation service."""

from .availability import AvailabilityRecord, CapacityAdjustment, HoldStatus, LedgerHold
from .booking import Booking, BookingStatus
from .cart import CartItem
from .checkout import CheckoutLineItem, CheckoutSession, CheckoutSource, CheckoutStatus
from .idempotency import IdempotencyRecord
from .trip import OccurrenceStatus, TripOccurrence
from .waitlist import WaitlistEntry, WaitlistStatus

__all__ = [
    "AvailabilityRecord",
    "Booking",
    "BookingStatus",
    "CapacityAdjustment",
    "CartItem",
    "CheckoutLineItem",
    "CheckoutSession",
    "CheckoutSource",
    "CheckoutStatus",
    "HoldStatus",
    "IdempotencyRecord",
    "LedgerHold",
    "OccurrenceStatus",
    "TripOccurrence",
    "WaitlistEntry",
    "WaitlistStatus",
]
