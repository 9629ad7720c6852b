# src/infrastructure/repositories/event_repository.py

from sqlalchemy.orm import Session
from sqlalchemy import case, select, update

from src.infrastructure.db.models import Event


class EventRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, event_id: str) -> Event | None:
        stmt = select(Event).where(Event.id == event_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def lock_event(self, event_id: str) -> Event | None:
        """
        SELECT ... FOR UPDATE
        Callers lock events in ascending id order.
        """

        stmt = (
            select(Event)
            .where(Event.id == event_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def hold_seats(self, event_id: str, quantity: int) -> bool:
        """
        Guarded increment of ``sold``. False when the hold would
        exceed capacity.
        """
        self.db.flush()
        stmt = (
            update(Event)
            .where(Event.id == event_id)
            .where(Event.sold + quantity <= Event.capacity)
            .values(sold=Event.sold + quantity)
            .execution_options(synchronize_session="fetch")
        )
        result = self.db.execute(stmt)
        return result.rowcount == 1

    def release_seats(self, event_id: str, quantity: int) -> None:
        self.db.flush()
        stmt = (
            update(Event)
            .where(Event.id == event_id)
            .values(
                sold=case(
                    (Event.sold >= quantity, Event.sold - quantity),
                    else_=0,
                )
            )
            .execution_options(synchronize_session="fetch")
        )
        self.db.execute(stmt)
