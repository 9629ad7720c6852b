import logging
import secrets
import string
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Mapping
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit
from uuid import uuid4

from sqlalchemy.orm import Session

from src import config
from src.application.inventory_service import (
    BookingSummary,
    InventoryService,
    ReservationItem,
)
from src.domain.exceptions import (
    GatewayInitError,
    InvalidStateTransitionError,
    UnknownOrderError,
    ValidationError,
)
from src.domain.gateway import Customer, GatewayClient
from src.domain.state_machine import PaymentStatus
from src.infrastructure.repositories.booking_repository import BookingRepository
from src.infrastructure.repositories.payment_repository import PaymentRepository
from src.infrastructure.repositories.user_repository import UserRepository

logger = logging.getLogger(__name__)

SESSION_CREATION_FAILED = "SESSION_CREATION_FAILED"

_ORDER_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


def generate_order_id() -> str:
    suffix = "".join(secrets.choice(_ORDER_SUFFIX_ALPHABET) for _ in range(6))
    return f"BOX-{int(time.time() * 1000)}-{suffix}"


def with_order_id(return_url: str, order_id: str) -> str:
    parts = urlsplit(return_url)
    query = [(k, v) for k, v in parse_qsl(parts.query) if k != "order_id"]
    query.append(("order_id", order_id))
    return urlunsplit(parts._replace(query=urlencode(query)))


@dataclass(frozen=True)
class OrderSession:
    order_id: str
    payment_id: str
    amount_paise: int
    currency: str
    session_payload: dict[str, Any]
    bookings: list[BookingSummary]
    expires_at: datetime | None = None


class CheckoutService:
    """
    Turns a cart into held seats, a pending payment and a gateway session.

    The reservation and payment row are committed before the gateway is
    contacted, so no database lock is held across network I/O.
    """

    def __init__(self, db: Session, gateway: GatewayClient):
        self.db = db
        self.gateway = gateway
        self.inventory = InventoryService(db)
        self.payments = PaymentRepository(db)
        self.bookings = BookingRepository(db)
        self.users = UserRepository(db)

    def create_order_session(
        self,
        user_id: str,
        items: Iterable[ReservationItem | Mapping[str, Any]],
        return_url: str,
    ) -> OrderSession:
        user = self.users.get_by_id(user_id)
        if user is None:
            raise ValidationError(f"User {user_id} not found")

        customer = Customer(
            customer_id=user.id,
            name=user.name,
            email=user.email,
            phone=user.phone,
        )
        currency = config.GATEWAY_CURRENCY

        try:
            reservation = self.inventory.reserve(user_id, items)

            order_id = generate_order_id()
            idempotency_key = str(uuid4())
            amount_paise = reservation.grand_total * 100

            payment = self.payments.create_payment(
                user_id=user_id,
                order_id=order_id,
                idempotency_key=idempotency_key,
                amount_paise=amount_paise,
                currency=currency,
                gateway="RAZORPAY",
            )
            self.db.flush()
            for booking in reservation.bookings:
                booking.payment_id = payment.id

            self.payments.add_audit_entry(
                payment.id,
                source="checkout",
                payload={
                    "bookings": [s.booking_id for s in reservation.summaries],
                    "grand_total": reservation.grand_total,
                    "amount_paise": amount_paise,
                },
            )
            payment_id = payment.id
            expires_at = min(b.expires_at for b in reservation.bookings)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "Order %s created for user_id=%s amount_paise=%s",
            order_id,
            user_id,
            amount_paise,
        )

        try:
            session = self.gateway.create_session(
                order_id=order_id,
                amount_paise=amount_paise,
                currency=currency,
                customer=customer,
                return_url=with_order_id(return_url, order_id),
                idempotency_key=idempotency_key,
            )
        except Exception as exc:
            logger.exception("Payment session creation failed for order %s", order_id)
            self._compensate(payment_id, order_id, exc)
            raise GatewayInitError("Payment could not be initialized. Please try again.") from exc

        payment = self.payments.get_by_id(payment_id)
        self.payments.attach_session(payment, session.gateway_order_id, session.payload)
        self.payments.add_audit_entry(
            payment_id,
            source="session",
            payload={
                "gateway_order_id": session.gateway_order_id,
                "session": session.payload,
            },
        )
        self.db.commit()

        logger.info(
            "Payment session ready for order %s gateway_order_id=%s",
            order_id,
            session.gateway_order_id,
        )
        return OrderSession(
            order_id=order_id,
            payment_id=payment_id,
            amount_paise=amount_paise,
            currency=currency,
            session_payload=session.payload,
            bookings=reservation.summaries,
            expires_at=expires_at,
        )

    def resume_session(self, order_id: str) -> OrderSession:
        """Stored session for a payment that is still open; no gateway call."""
        payment = self.payments.get_by_order_id(order_id)
        if payment is None:
            raise UnknownOrderError(order_id)
        if payment.status != PaymentStatus.PENDING or not payment.session_payload:
            raise InvalidStateTransitionError(
                from_state=PaymentStatus(payment.status).value,
                to_state="session resumed",
            )

        bookings = list(payment.bookings)
        return OrderSession(
            order_id=payment.order_id,
            payment_id=payment.id,
            amount_paise=payment.amount_paise,
            currency=payment.currency,
            session_payload=payment.session_payload,
            bookings=[
                BookingSummary(
                    booking_id=b.id,
                    event_id=b.event_id,
                    event_title=b.event.title,
                    quantity=b.quantity,
                    unit_price=b.price_at_booking,
                    line_total=b.total_amount,
                )
                for b in bookings
            ],
            expires_at=min((b.expires_at for b in bookings if b.expires_at), default=None),
        )

    def _compensate(self, payment_id: str, order_id: str, exc: Exception) -> None:
        """
        Fail the payment and give the seats back. If this unit of work
        fails too, the reaper releases the holds when the lease runs out.
        """
        try:
            if self.payments.mark_failed_if_pending(
                payment_id,
                gateway_status=SESSION_CREATION_FAILED,
                message=str(exc) or exc.__class__.__name__,
            ):
                released = self.inventory.release(self.bookings.lock_for_payment(payment_id))
                self.payments.add_audit_entry(
                    payment_id,
                    source="session",
                    payload={
                        "error": str(exc),
                        "released_bookings": [b.id for b in released],
                    },
                    gateway_status=SESSION_CREATION_FAILED,
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.exception(
                "Could not compensate order %s; holds stay until the lease expires",
                order_id,
            )
