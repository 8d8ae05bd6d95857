"""Shared test doubles and builders."""

from datetime import timedelta
from typing import Optional

import jwt

from trip_reservations.core.clock import utcnow
from trip_reservations.core.config import settings
from trip_reservations.integrations.payment_gateway import CaptureResult, GatewayOrder
from trip_reservations.schemas.common import Money
from trip_reservations.schemas.series import DateRange, TripTemplate

# Start of the frozen clock; trips are scheduled relative to it. Real time is
# used so that API tests, which run on the wall clock, see the same trips as future.
NOW = utcnow().replace(microsecond=0)


class FakeGateway:
    """In-memory payment gateway recording every call."""

    def __init__(self):
        self.created: list[dict] = []
        self.captured: list[str] = []
        self.create_error: Optional[Exception] = None
        self.capture_error: Optional[Exception] = None
        self.capture_status = "COMPLETED"
        self._counter = 0

    async def create_order(self, amount_minor, currency, return_url, cancel_url, reference_id=None):
        if self.create_error is not None:
            raise self.create_error
        self._counter += 1
        order_id = f"ORDER-{self._counter}"
        self.created.append({
            "order_id": order_id,
            "amount_minor": amount_minor,
            "currency": currency,
            "return_url": return_url,
            "cancel_url": cancel_url,
            "reference_id": reference_id,
        })
        return GatewayOrder(order_id=order_id, approve_url=f"https://gateway.test/approve/{order_id}")

    async def capture_order(self, order_id):
        self.captured.append(order_id)
        if self.capture_error is not None:
            raise self.capture_error
        return CaptureResult(order_id=order_id, status=self.capture_status, capture_id=f"CAPTURE-{order_id}")


class RecordingSender:
    """Email sender that keeps messages in memory."""

    def __init__(self):
        self.messages: list[dict] = []

    async def send(self, recipient, subject, body, attachment=None):
        self.messages.append({"recipient": recipient, "subject": subject, "body": body, "attachment": attachment})


def make_template(capacity: int = 10, amount: int = 50000, currency: str = "USD", **overrides) -> TripTemplate:
    values = {
        "name": "Dolomites Hut-to-Hut",
        "description": "Five days trekking between mountain huts",
        "destination": "Cortina d'Ampezzo",
        "country": "Italy",
        "image_urls": ["https://img.example.com/dolomites.jpg"],
        "price": Money(amount=amount, currency=currency),
        "cancellation_days_limit": 7,
        "is_visible": True,
        "capacity": capacity,
    }
    values.update(overrides)
    return TripTemplate(**values)


def trip_dates(days_ahead: int = 30, length: int = 4) -> DateRange:
    start = NOW.date() + timedelta(days=days_ahead)
    return DateRange(starts_on=start, ends_on=start + timedelta(days=length))


def make_token(buyer_id: str = "buyer@example.com", roles: Optional[list[str]] = None, **claims) -> str:
    payload = {"sub": buyer_id, "roles": roles or [], **claims}
    return jwt.encode(payload, settings.bearer_token_secret, algorithm="HS256")


def auth_headers(buyer_id: str = "buyer@example.com", roles: Optional[list[str]] = None, **extra) -> dict:
    return {"Authorization": f"Bearer {make_token(buyer_id, roles)}", **extra}

