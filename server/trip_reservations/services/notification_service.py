"""Booking confirmation notices sent through pluggable email and voucher collaborators."""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from ..models.booking import Booking
from ..models.trip import TripOccurrence

logger = logging.getLogger(__name__)


@dataclass
class EmailAttachment:
    content: bytes
    filename: str
    mime_type: str = "application/pdf"


class EmailSender(Protocol):
    async def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        attachment: Optional[EmailAttachment] = None,
    ) -> None: ...


class VoucherRenderer(Protocol):
    async def render(self, booking: Booking, occurrence: TripOccurrence) -> Optional[bytes]: ...


class BuyerDirectory(Protocol):
    async def email_for(self, buyer_id: str) -> Optional[str]: ...


class LoggingEmailSender:
    """Email sender that only records what would be sent."""

    async def send(
        self,
        recipient: str,
        subject: str,
        body: str,
        attachment: Optional[EmailAttachment] = None,
    ) -> None:
        logger.info(
            "Email queued",
            extra={
                "recipient": recipient,
                "subject": subject,
                "attachment": attachment.filename if attachment else None,
            }
        )


class BuyerIdAsEmail:
    """Directory for deployments where the buyer id is the login email."""

    async def email_for(self, buyer_id: str) -> Optional[str]:
        return buyer_id if "@" in buyer_id else None


def _format_amount(amount: int, currency: str) -> str:
    return f"{amount // 100}.{amount % 100:02d} {currency}"


class ConfirmationNotifier:
    """
    Sends one confirmation email per confirmed booking.

    Delivery is best-effort: failures are logged and never propagate, so a
    confirmed booking is never rolled back because of email trouble.
    """

    def __init__(
        self,
        sender: Optional[EmailSender] = None,
        renderer: Optional[VoucherRenderer] = None,
        directory: Optional[BuyerDirectory] = None,
    ):
        self.sender = sender or LoggingEmailSender()
        self.renderer = renderer
        self.directory = directory or BuyerIdAsEmail()

    def compose(self, booking: Booking, occurrence: TripOccurrence) -> tuple[str, str]:
        subject = f"Booking confirmed: {occurrence.name} ({booking.code})"
        body = (
            f"Your booking {booking.code} is confirmed.\n\n"
            f"Trip: {occurrence.name}\n"
            f"Destination: {occurrence.destination}\n"
            f"Dates: {occurrence.starts_on.isoformat()} - {occurrence.ends_on.isoformat()}\n"
            f"Seats: {booking.quantity}\n"
            f"Paid: {_format_amount(booking.amount, booking.currency)}\n\n"
            f"Free cancellation until {occurrence.cancellation_days_limit} days before departure."
        )
        return subject, body

    async def notify_confirmed(self, booking: Booking, occurrence: TripOccurrence) -> bool:
        """Returns True when the email was handed to the sender."""
        try:
            recipient = await self.directory.email_for(booking.buyer_id)
            if not recipient:
                logger.info("No email address for buyer", extra={"booking_id": str(booking.id)})
                return False

            attachment = None
            if self.renderer is not None:
                document = await self.renderer.render(booking, occurrence)
                if document:
                    attachment = EmailAttachment(
                        content=document,
                        filename=f"Itinerary_{booking.code}.pdf",
                    )

            subject, body = self.compose(booking, occurrence)
            await self.sender.send(recipient, subject, body, attachment)
            return True
        except Exception:
            logger.error(
                "Confirmation email failed",
                extra={"booking_id": str(booking.id)},
                exc_info=True
            )
            return False
