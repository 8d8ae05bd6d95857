"""Background workers for the trip reservation service."""

from .hold_expiry_worker import HoldExpiryWorker
from .session_expiry_worker import SessionExpiryWorker
from .waitlist_worker import WaitlistWorker

__all__ = ["HoldExpiryWorker", "SessionExpiryWorker", "WaitlistWorker"]
