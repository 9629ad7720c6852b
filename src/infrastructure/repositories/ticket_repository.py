# src/infrastructure/repositories/ticket_repository.py

from datetime import datetime

from sqlalchemy.orm import Session
from sqlalchemy import select, update

from src.infrastructure.db.models import Booking, Ticket


class TicketRepository:

    def __init__(self, db: Session):
        self.db = db

    def for_booking(self, booking_id: str) -> list[Ticket]:
        stmt = (
            select(Ticket)
            .where(Ticket.booking_id == booking_id)
            .order_by(Ticket.sequence)
        )
        return list(self.db.execute(stmt).scalars().all())

    def for_payment(self, payment_id: str) -> list[Ticket]:
        stmt = (
            select(Ticket)
            .join(Booking, Booking.id == Ticket.booking_id)
            .where(Booking.payment_id == payment_id)
            .order_by(Booking.event_id, Booking.id, Ticket.sequence)
        )
        return list(self.db.execute(stmt).scalars().all())

    def for_user(self, user_id: str) -> list[Ticket]:
        stmt = (
            select(Ticket)
            .join(Booking, Booking.id == Ticket.booking_id)
            .where(Booking.user_id == user_id)
            .order_by(Ticket.created_at.desc(), Ticket.booking_id, Ticket.sequence)
        )
        return list(self.db.execute(stmt).scalars().all())

    def get_by_code(self, code: str) -> Ticket | None:
        stmt = select(Ticket).where(Ticket.code == code)
        return self.db.execute(stmt).scalar_one_or_none()

    def add(self, ticket: Ticket) -> Ticket:
        self.db.add(ticket)
        return ticket

    def mark_checked_in_if_not(
        self,
        ticket_id: str,
        staff_user_id: str,
        checked_in_at: datetime,
    ) -> bool:
        stmt = (
            update(Ticket)
            .where(Ticket.id == ticket_id)
            .where(Ticket.check_in_at.is_(None))
            .values(check_in_at=checked_in_at, check_in_by=staff_user_id)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        return result.rowcount == 1
