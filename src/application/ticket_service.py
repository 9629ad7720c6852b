import logging
import re
from dataclasses import dataclass
from datetime import datetime
from uuid import uuid4

from sqlalchemy.orm import Session

from src.domain.clock import utc_now
from src.domain.exceptions import (
    BookingNotConfirmedError,
    PermissionDeniedError,
    TicketAlreadyCheckedInError,
    TicketNotFoundError,
    ValidationError,
)
from src.domain.state_machine import BookingStatus
from src.infrastructure.db.models import Booking, Ticket
from src.infrastructure.repositories.ticket_repository import TicketRepository
from src.infrastructure.repositories.user_repository import UserRepository

logger = logging.getLogger(__name__)

_TICKET_CODE_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$")


@dataclass(frozen=True)
class TicketView:
    ticket_id: str
    qr_code: str
    booking_id: str
    event_id: str
    event_title: str
    venue: str
    start_time: datetime
    end_time: datetime | None
    attendee_name: str
    attendee_email: str
    price_at_booking: int
    booking_status: str
    issued_at: datetime | None
    check_in_at: datetime | None

    @property
    def checked_in(self) -> bool:
        return self.check_in_at is not None

    @property
    def valid(self) -> bool:
        return self.booking_status == BookingStatus.CONFIRMED.value and not self.checked_in

    @classmethod
    def from_ticket(cls, ticket: Ticket) -> "TicketView":
        return cls(
            ticket_id=ticket.id,
            qr_code=ticket.code,
            booking_id=ticket.booking_id,
            event_id=ticket.event_id,
            event_title=ticket.event_title,
            venue=ticket.venue,
            start_time=ticket.start_time,
            end_time=ticket.end_time,
            attendee_name=ticket.attendee_name,
            attendee_email=ticket.attendee_email,
            price_at_booking=ticket.price_at_booking,
            booking_status=BookingStatus(ticket.booking.status).value,
            issued_at=ticket.created_at,
            check_in_at=ticket.check_in_at,
        )


def normalize_ticket_code(code: str | None) -> str:
    sanitized = (code or "").strip().lower()
    if not _TICKET_CODE_RE.match(sanitized):
        raise ValidationError("Invalid ticket code format")
    return sanitized


class TicketService:
    """Issues admission tickets and records check-in."""

    def __init__(self, db: Session):
        self.db = db
        self.tickets = TicketRepository(db)
        self.users = UserRepository(db)

    def issue(self, booking: Booking) -> list[Ticket]:
        """
        Create one ticket per purchased unit. A booking that already has
        tickets gets them back unchanged.
        """
        if booking.status != BookingStatus.CONFIRMED:
            raise BookingNotConfirmedError(
                f"Booking {booking.id} is {BookingStatus(booking.status).value}, not confirmed"
            )

        existing = self.tickets.for_booking(booking.id)
        if existing:
            return existing

        event = booking.event
        attendee = booking.user
        issued = [
            self.tickets.add(
                Ticket(
                    id=str(uuid4()),
                    booking_id=booking.id,
                    sequence=sequence,
                    code=str(uuid4()),
                    event_id=event.id,
                    event_title=event.title,
                    venue=event.venue,
                    start_time=event.start_time,
                    end_time=event.end_time,
                    attendee_name=attendee.name,
                    attendee_email=attendee.email,
                    price_at_booking=booking.price_at_booking,
                )
            )
            for sequence in range(1, booking.quantity + 1)
        ]
        self.db.flush()
        logger.info("Issued %s ticket(s) for booking_id=%s", len(issued), booking.id)
        return issued

    def tickets_for_payment(self, payment_id: str) -> list[Ticket]:
        return self.tickets.for_payment(payment_id)

    def tickets_for_user(self, user_id: str) -> list[TicketView]:
        return [TicketView.from_ticket(t) for t in self.tickets.for_user(user_id)]

    def verify_ticket(self, ticket_code: str) -> TicketView:
        ticket = self.tickets.get_by_code(normalize_ticket_code(ticket_code))
        if ticket is None:
            raise TicketNotFoundError("Ticket not found or invalid")
        return TicketView.from_ticket(ticket)

    def check_in(
        self,
        ticket_code: str,
        staff_user_id: str,
        now: datetime | None = None,
    ) -> TicketView:
        if not self.users.is_staff(staff_user_id):
            raise PermissionDeniedError("Only staff can check in tickets")

        ticket = self.tickets.get_by_code(normalize_ticket_code(ticket_code))
        if ticket is None:
            raise TicketNotFoundError("Ticket not found")
        if ticket.booking.status != BookingStatus.CONFIRMED:
            raise BookingNotConfirmedError("Booking is not confirmed")
        if ticket.check_in_at is not None:
            raise TicketAlreadyCheckedInError("Ticket already checked in")

        if not self.tickets.mark_checked_in_if_not(ticket.id, staff_user_id, now or utc_now()):
            raise TicketAlreadyCheckedInError("Ticket already checked in")

        self.db.commit()
        self.db.refresh(ticket)
        logger.info("Checked in ticket_id=%s by staff_user_id=%s", ticket.id, staff_user_id)
        return TicketView.from_ticket(ticket)
