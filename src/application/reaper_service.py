import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, ContextManager

from sqlalchemy.orm import Session

from src import config
from src.application.inventory_service import InventoryService
from src.domain.clock import utc_now
from src.infrastructure.db.models import Booking
from src.infrastructure.db.session import get_db_session
from src.infrastructure.repositories.booking_repository import BookingRepository
from src.infrastructure.repositories.payment_repository import PaymentRepository

logger = logging.getLogger(__name__)

EXPIRED = "EXPIRED"


@dataclass(frozen=True)
class SweepResult:
    released_count: int = 0
    released_seats: int = 0


class ReaperService:
    """Releases pending bookings whose lease ran out without payment."""

    def __init__(self, db: Session):
        self.db = db
        self.bookings = BookingRepository(db)
        self.payments = PaymentRepository(db)
        self.inventory = InventoryService(db)

    def sweep(self, now: datetime | None = None) -> SweepResult:
        now = now or utc_now()

        groups: dict[str | None, list[str]] = defaultdict(list)
        for booking in self.bookings.expired_pending(now):
            groups[booking.payment_id].append(booking.id)
        # Only ids are carried into the per-group units of work.
        self.db.rollback()

        released_count = 0
        released_seats = 0
        for payment_id, booking_ids in groups.items():
            try:
                cancelled = self._release_group(payment_id, booking_ids, now)
            except Exception:
                self.db.rollback()
                logger.exception(
                    "Reaper could not release payment_id=%s bookings=%s",
                    payment_id,
                    booking_ids,
                )
                continue
            released_count += len(cancelled)
            released_seats += sum(b.quantity for b in cancelled)

        if released_count:
            logger.info(
                "Reaper released %s booking(s), %s seat(s)",
                released_count,
                released_seats,
            )
        return SweepResult(released_count=released_count, released_seats=released_seats)

    def _release_group(
        self,
        payment_id: str | None,
        booking_ids: list[str],
        now: datetime,
    ) -> list[Booking]:
        if payment_id:
            locked_payments = self.payments.lock_by_ids([payment_id])
            if locked_payments and locked_payments[0].review_required:
                self.db.rollback()
                logger.warning("Payment %s flagged for review; reaper skips it", payment_id)
                return []

        locked = self.bookings.lock_by_ids(booking_ids)
        still_expired = self.bookings.still_expired_pending_ids(booking_ids, now)
        expired = [b for b in locked if b.id in still_expired]
        if not expired:
            self.db.rollback()
            return []

        cancelled = self.inventory.release(expired)

        if payment_id and self.payments.mark_failed_if_pending(
            payment_id,
            gateway_status=EXPIRED,
            message="Reservation expired before payment completed",
        ):
            self.payments.add_audit_entry(
                payment_id,
                source="reaper",
                payload={
                    "expired_bookings": [b.id for b in cancelled],
                    "swept_at": now.isoformat(),
                },
                gateway_status=EXPIRED,
            )

        self.db.commit()
        return cancelled


class ReaperRunner:
    """
    Background thread that sweeps every ``interval_seconds`` with its own
    session. A failed sweep is logged and the loop carries on.
    """

    def __init__(
        self,
        interval_seconds: float = config.REAPER_INTERVAL_SECONDS,
        session_factory: Callable[[], ContextManager[Session]] = get_db_session,
    ):
        self.interval_seconds = interval_seconds
        self.session_factory = session_factory
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="reservation-reaper",
            daemon=True,
        )
        self._thread.start()
        logger.info("Reaper started (interval=%.0fs)", self.interval_seconds)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Reaper stopped")

    def run_once(self) -> SweepResult:
        with self.session_factory() as db:
            return ReaperService(db).sweep()

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception(
                    "Reaper sweep crashed; retrying in %.0f seconds",
                    self.interval_seconds,
                )
            self._stop.wait(self.interval_seconds)
