import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping

from sqlalchemy.orm import Session

from src import config
from src.domain.clock import utc_now
from src.domain.exceptions import AvailabilityError, ValidationError
from src.domain.state_machine import BookingStateMachine, BookingStatus, is_purchasable
from src.infrastructure.db.models import Booking
from src.infrastructure.repositories.booking_repository import BookingRepository
from src.infrastructure.repositories.event_repository import EventRepository
from src.infrastructure.repositories.payment_repository import PaymentRepository

logger = logging.getLogger(__name__)

SUPERSEDED = "SUPERSEDED"


@dataclass(frozen=True)
class ReservationItem:
    event_id: str
    quantity: int


@dataclass(frozen=True)
class BookingSummary:
    booking_id: str
    event_id: str
    event_title: str
    quantity: int
    unit_price: int
    line_total: int


@dataclass(frozen=True)
class Reservation:
    bookings: list[Booking]
    summaries: list[BookingSummary]
    grand_total: int


def normalize_items(items: Iterable[ReservationItem | Mapping[str, Any]]) -> list[ReservationItem]:
    """
    Merge repeated events (summing quantities) and sort by event id.
    The sort is the lock order for every multi-event write.
    """
    merged: dict[str, int] = defaultdict(int)
    for raw in items or []:
        if isinstance(raw, Mapping):
            event_id, quantity = raw.get("event_id"), raw.get("quantity")
        else:
            event_id, quantity = raw.event_id, raw.quantity

        if not event_id or not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
            raise ValidationError(f"Invalid item: event_id={event_id}, quantity={quantity}")
        merged[str(event_id)] += quantity

    if not merged:
        raise ValidationError("items must be a non-empty list")

    return [ReservationItem(event_id=eid, quantity=merged[eid]) for eid in sorted(merged)]


class InventoryService:
    """Seat holds against event capacity."""

    def __init__(self, db: Session):
        self.db = db
        self.events = EventRepository(db)
        self.bookings = BookingRepository(db)
        self.payments = PaymentRepository(db)

    def reserve(
        self,
        user_id: str,
        items: Iterable[ReservationItem | Mapping[str, Any]],
        now: datetime | None = None,
    ) -> Reservation:
        """
        Hold seats for every item or none of them.

        Runs inside the caller's unit of work: an exception leaves earlier
        holds from this call flushed but uncommitted, and the caller rolls
        them back.
        """
        now = now or utc_now()
        cart = normalize_items(items)
        superseded = self._supersede_stale_holds(user_id, [item.event_id for item in cart])

        bookings: list[Booking] = []
        summaries: list[BookingSummary] = []
        grand_total = 0

        for item in cart:
            event = self.events.lock_event(item.event_id)
            if event is None:
                raise ValidationError(f"Event {item.event_id} not found")
            if not is_purchasable(event.status, event.visibility):
                raise AvailabilityError(f'Event "{event.title}" is not available')

            available = max(0, event.capacity - event.sold)
            if available == 0:
                raise AvailabilityError(f'Event "{event.title}" is sold out')
            if item.quantity > available:
                raise AvailabilityError(
                    f'Only {available} spot(s) left for "{event.title}"'
                )

            released = superseded.get(event.id, 0)
            if released:
                self.events.release_seats(event.id, released)

            if not self.events.hold_seats(event.id, item.quantity):
                raise AvailabilityError(f'Event "{event.title}" is sold out')

            booking = self.bookings.create_booking(
                user_id=user_id,
                event_id=event.id,
                quantity=item.quantity,
                price_at_booking=event.price,
                expires_at=now + timedelta(minutes=config.RESERVATION_LEASE_MINUTES),
            )
            bookings.append(booking)
            grand_total += booking.total_amount
            summaries.append(
                BookingSummary(
                    booking_id=booking.id,
                    event_id=event.id,
                    event_title=event.title,
                    quantity=booking.quantity,
                    unit_price=booking.price_at_booking,
                    line_total=booking.total_amount,
                )
            )

        self.db.flush()
        logger.info(
            "Reserved seats user_id=%s events=%s grand_total=%s",
            user_id,
            [item.event_id for item in cart],
            grand_total,
        )
        return Reservation(bookings=bookings, summaries=summaries, grand_total=grand_total)

    def release(self, bookings: Iterable[Booking]) -> list[Booking]:
        """
        Cancel the still-pending bookings given and return their seats.
        Bookings must already be locked by the caller.
        """
        cancelled: list[Booking] = []
        per_event: dict[str, int] = defaultdict(int)

        for booking in bookings:
            if booking.status != BookingStatus.PENDING:
                continue
            self._transition(booking, BookingStatus.CANCELLED)
            per_event[booking.event_id] += booking.quantity
            cancelled.append(booking)

        for event_id in sorted(per_event):
            self.events.lock_event(event_id)
            self.events.release_seats(event_id, per_event[event_id])

        return cancelled

    def availability(self, event_id: str) -> dict:
        event = self.events.get_by_id(event_id)
        if event is None:
            raise ValidationError(f"Event {event_id} not found")
        return {
            "event_id": event.id,
            "capacity": event.capacity,
            "sold": event.sold,
            "available": max(0, event.capacity - event.sold),
        }

    def _supersede_stale_holds(self, user_id: str, event_ids: list[str]) -> dict[str, int]:
        """
        Cancel this user's earlier pending bookings on the same events.
        Holds under manual review are kept; the new reservation takes
        fresh seats. Returns seats to release per event; the release
        happens under the event lock taken by ``reserve``.
        """
        stale = self.bookings.pending_for_user(user_id, event_ids)
        if not stale:
            return {}

        payment_ids = sorted({b.payment_id for b in stale if b.payment_id})
        flagged = {
            payment.id
            for payment in self.payments.lock_by_ids(payment_ids)
            if payment.review_required
        }
        payment_ids = [pid for pid in payment_ids if pid not in flagged]
        locked = self.bookings.lock_by_ids(
            [b.id for b in stale if b.payment_id not in flagged]
        )

        released: dict[str, int] = defaultdict(int)
        for booking in locked:
            if booking.status != BookingStatus.PENDING:
                continue
            self._transition(booking, BookingStatus.CANCELLED)
            released[booking.event_id] += booking.quantity

        for payment_id in payment_ids:
            if self.payments.mark_failed_if_pending(
                payment_id,
                gateway_status=SUPERSEDED,
                message="Replaced by a newer checkout for the same event",
            ):
                self.payments.add_audit_entry(
                    payment_id,
                    source="checkout",
                    payload={
                        "superseded_bookings": [
                            b.id for b in locked if b.payment_id == payment_id
                        ]
                    },
                    gateway_status=SUPERSEDED,
                )

        if released:
            logger.warning(
                "Superseded stale holds user_id=%s seats=%s",
                user_id,
                dict(released),
            )
        return released

    def _transition(self, booking: Booking, to_status: BookingStatus) -> None:
        BookingStateMachine.validate_transition(booking.status, to_status)
        self.bookings.update_status(booking, to_status)
