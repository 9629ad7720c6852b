# src/infrastructure/repositories/booking_repository.py

from datetime import datetime
from uuid import uuid4

from sqlalchemy.orm import Session
from sqlalchemy import or_, select

from src.infrastructure.db.models import Booking, Payment
from src.domain.state_machine import BookingStatus


class BookingRepository:

    def __init__(self, db: Session):
        self.db = db

    def lock_by_ids(self, booking_ids: list[str]) -> list[Booking]:
        if not booking_ids:
            return []

        stmt = (
            select(Booking)
            .where(Booking.id.in_(booking_ids))
            .order_by(Booking.event_id, Booking.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(self.db.execute(stmt).scalars().all())

    def lock_for_payment(self, payment_id: str) -> list[Booking]:
        stmt = (
            select(Booking)
            .where(Booking.payment_id == payment_id)
            .order_by(Booking.event_id, Booking.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(self.db.execute(stmt).scalars().all())

    def pending_for_user(
        self,
        user_id: str,
        event_ids: list[str],
    ) -> list[Booking]:
        """Holds whose payment awaits manual review are not returned."""
        stmt = (
            select(Booking)
            .outerjoin(Payment, Payment.id == Booking.payment_id)
            .where(Booking.user_id == user_id)
            .where(Booking.event_id.in_(event_ids))
            .where(Booking.status == BookingStatus.PENDING)
            .where(or_(Payment.id.is_(None), Payment.review_required.is_(False)))
            .order_by(Booking.event_id, Booking.id)
        )
        return list(self.db.execute(stmt).scalars().all())

    def expired_pending(self, now: datetime) -> list[Booking]:
        """
        Pending bookings past their lease. Groups flagged for manual
        review are left alone.
        """
        stmt = (
            select(Booking)
            .outerjoin(Payment, Payment.id == Booking.payment_id)
            .where(Booking.status == BookingStatus.PENDING)
            .where(Booking.expires_at.is_not(None))
            .where(Booking.expires_at < now)
            .where(or_(Payment.id.is_(None), Payment.review_required.is_(False)))
            .order_by(Booking.payment_id, Booking.event_id)
        )
        return list(self.db.execute(stmt).scalars().all())

    def still_expired_pending_ids(
        self,
        booking_ids: list[str],
        now: datetime,
    ) -> set[str]:
        """Re-check under lock; the status may have moved since the scan."""
        if not booking_ids:
            return set()

        stmt = (
            select(Booking.id)
            .where(Booking.id.in_(booking_ids))
            .where(Booking.status == BookingStatus.PENDING)
            .where(Booking.expires_at < now)
        )
        return set(self.db.execute(stmt).scalars().all())

    def create_booking(
        self,
        user_id: str,
        event_id: str,
        quantity: int,
        price_at_booking: int,
        expires_at: datetime,
    ) -> Booking:

        booking = Booking(
            id=str(uuid4()),
            user_id=user_id,
            event_id=event_id,
            quantity=quantity,
            price_at_booking=price_at_booking,
            total_amount=price_at_booking * quantity,
            status=BookingStatus.PENDING,
            expires_at=expires_at,
        )

        self.db.add(booking)
        return booking

    def update_status(
        self,
        booking: Booking,
        new_status: BookingStatus,
    ) -> None:

        booking.status = new_status
        if new_status != BookingStatus.PENDING:
            booking.expires_at = None
