import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Literal

from sqlalchemy.orm import Session

from src import config
from src.application.inventory_service import InventoryService
from src.application.ticket_service import TicketService, TicketView
from src.domain.clock import utc_now
from src.domain.exceptions import (
    ConsistencyError,
    GatewayTransientError,
    InvalidSignatureError,
    UnknownOrderError,
)
from src.domain.gateway import (
    DECLINED_STATUSES,
    TRANSIENT_STATUSES,
    GatewayClient,
    GatewayOrderStatus,
    GatewayStatus,
)
from src.domain.state_machine import (
    BookingStateMachine,
    BookingStatus,
    PaymentStateMachine,
    PaymentStatus,
)
from src.infrastructure.db.models import Booking, Payment
from src.infrastructure.repositories.booking_repository import BookingRepository
from src.infrastructure.repositories.payment_repository import PaymentRepository

logger = logging.getLogger(__name__)

AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
REVIEW_PENDING = "Payment is awaiting manual review. Please contact support."

_ORDER_ID_CLEAN_RE = re.compile(r"[^A-Za-z0-9\-_]")

VerificationStatus = Literal["success", "pending", "failed"]


@dataclass(frozen=True)
class PaymentSnapshot:
    id: str
    order_id: str
    amount_paise: int
    currency: str
    status: str
    transaction_id: str | None
    gateway_status: str | None
    review_required: bool

    @classmethod
    def from_payment(cls, payment: Payment) -> "PaymentSnapshot":
        return cls(
            id=payment.id,
            order_id=payment.order_id,
            amount_paise=payment.amount_paise,
            currency=payment.currency,
            status=PaymentStatus(payment.status).value,
            transaction_id=payment.transaction_id,
            gateway_status=payment.gateway_status,
            review_required=bool(payment.review_required),
        )


@dataclass(frozen=True)
class VerificationResult:
    status: VerificationStatus
    message: str
    payment: PaymentSnapshot
    tickets: list[TicketView] = field(default_factory=list)


@dataclass(frozen=True)
class NotificationOutcome:
    processed: bool
    message: str
    order_id: str | None = None
    result: VerificationResult | None = None


def sanitize_order_id(raw: Any) -> str | None:
    if raw is None:
        return None
    order_id = _ORDER_ID_CLEAN_RE.sub("", str(raw))
    if not order_id or len(order_id) > 50:
        return None
    return order_id


def _child(node: Any, key: str) -> dict[str, Any]:
    value = node.get(key) if isinstance(node, dict) else None
    return value if isinstance(value, dict) else {}


def extract_order_id(payload: dict[str, Any]) -> str | None:
    """Find our order id in a gateway notification body."""
    entities = _child(payload, "payload")
    payment_entity = _child(_child(entities, "payment"), "entity")
    order_entity = _child(_child(entities, "order"), "entity")

    candidates = (
        _child(payment_entity, "notes").get("order_id"),
        _child(order_entity, "notes").get("order_id"),
        order_entity.get("receipt"),
        payload.get("order_id"),
        payload.get("orderId"),
    )
    for candidate in candidates:
        if candidate:
            return sanitize_order_id(candidate)
    return None


class ReconciliationService:
    """
    Converts gateway truth into confirmed bookings.

    Each outcome branch is one unit of work: payment status, linked
    bookings, seat releases and tickets commit together. Terminal payment
    transitions are conditional writes; losing one is not an error, the
    loser re-reads and returns the winner's result.
    """

    def __init__(self, db: Session, gateway: GatewayClient):
        self.db = db
        self.gateway = gateway
        self.payments = PaymentRepository(db)
        self.bookings = BookingRepository(db)
        self.inventory = InventoryService(db)
        self.issuer = TicketService(db)

    def verify(self, order_id: str) -> VerificationResult:
        payment = self.payments.get_by_order_id(order_id)
        if payment is None:
            raise UnknownOrderError(order_id)

        settled = self._settled_result(payment)
        if settled is not None:
            return settled

        # Flagged payments wait for an operator; a later clean report
        # does not confirm them.
        if payment.review_required:
            return self._result(payment, "failed", REVIEW_PENDING)

        if not payment.gateway_order_id:
            return self._result(payment, "pending", "Payment session is not ready yet")

        report = self.gateway.query_status(payment.gateway_order_id)

        if report.status == GatewayStatus.CHARGED.value:
            try:
                self._check_amount(payment, report)
            except ConsistencyError as exc:
                return self._flag_amount_mismatch(payment, report, exc)
            return self._confirm(payment, report)

        if report.status in {s.value for s in TRANSIENT_STATUSES}:
            return self._still_processing(payment, report)

        if report.status in {s.value for s in DECLINED_STATUSES}:
            return self._decline(payment, report)

        return self._unrecognized(payment, report)

    def status(self, order_id: str) -> PaymentSnapshot:
        payment = self.payments.get_by_order_id(order_id)
        if payment is None:
            raise UnknownOrderError(order_id)
        return PaymentSnapshot.from_payment(payment)

    def verify_until_settled(
        self,
        order_id: str,
        attempts: int = config.VERIFY_POLL_ATTEMPTS,
        delay: float = config.VERIFY_POLL_DELAY_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> VerificationResult:
        """
        Bounded polling: re-verify while the gateway says the payment is
        still in flight or the status query failed transiently.
        """
        attempts = max(1, attempts)
        result: VerificationResult | None = None
        last_error: GatewayTransientError | None = None

        for attempt in range(1, attempts + 1):
            try:
                result = self.verify(order_id)
            except GatewayTransientError as exc:
                last_error = exc
                logger.warning(
                    "Status query failed for order %s (attempt %s/%s): %s",
                    order_id,
                    attempt,
                    attempts,
                    exc,
                )
            else:
                if result.status != "pending":
                    return result

            if attempt < attempts:
                sleep(delay)

        if result is None:
            raise last_error
        return result

    def handle_notification(self, raw_body: str, signature: str | None) -> NotificationOutcome:
        """
        A verified notification only triggers ``verify``; its own status
        fields are recorded for audit and never acted on.
        """
        if not self.gateway.verify_signature(raw_body, signature):
            raise InvalidSignatureError("Invalid webhook signature")

        try:
            payload = json.loads(raw_body)
        except ValueError:
            logger.warning("Webhook body is not valid JSON; ignoring")
            return NotificationOutcome(processed=False, message="Malformed payload, ignoring")

        order_id = extract_order_id(payload if isinstance(payload, dict) else {})
        if not order_id:
            logger.warning("Webhook without usable order id: %s", raw_body[:500])
            return NotificationOutcome(processed=False, message="No order_id found, ignoring")

        payment = self.payments.get_by_order_id(order_id)
        if payment is None:
            logger.warning("Webhook for unknown order %s; ignoring", order_id)
            return NotificationOutcome(
                processed=False,
                message="Unknown order, ignoring",
                order_id=order_id,
            )

        self.payments.add_audit_entry(
            payment.id,
            source="webhook",
            payload=payload,
            gateway_status=str(payload.get("event") or "") or None,
        )
        self.db.commit()

        logger.info("Webhook received for order %s", order_id)
        result = self.verify(order_id)
        logger.info("Webhook processed order %s: %s", order_id, result.status)
        return NotificationOutcome(
            processed=True,
            message=result.message,
            order_id=order_id,
            result=result,
        )

    # -----------------------------
    # Outcome branches
    # -----------------------------
    def _confirm(self, payment: Payment, report: GatewayOrderStatus) -> VerificationResult:
        order_id = payment.order_id
        won = self.payments.mark_success_if_pending(
            payment.id,
            transaction_id=report.transaction_id,
            gateway_status=report.status,
            paid_at=utc_now(),
        )
        if not won:
            return self._lost_race(order_id)

        # Capacity is not re-checked here; the hold taken at reservation
        # is trusted and every release path returns seats.
        for booking in self.bookings.lock_for_payment(payment.id):
            if booking.status != BookingStatus.PENDING:
                logger.error(
                    "Charged order %s covers booking %s in status %s; flagging for review",
                    order_id,
                    booking.id,
                    BookingStatus(booking.status).value,
                )
                self.payments.flag_for_review(
                    payment,
                    f"Charged for booking {booking.id} that was already {BookingStatus(booking.status).value}",
                )
                continue
            self._transition(booking, BookingStatus.CONFIRMED)
            self.issuer.issue(booking)

        self.payments.add_audit_entry(
            payment.id,
            source="verify",
            payload={"verified_response": report.raw},
            gateway_status=report.status,
        )
        self.db.commit()

        logger.info("Payment confirmed for order %s", order_id)
        return self._result(
            payment,
            "success",
            "Payment confirmed successfully",
            tickets=self._ticket_views(payment.id),
        )

    def _decline(self, payment: Payment, report: GatewayOrderStatus) -> VerificationResult:
        message = f"Payment {report.status.lower().replace('_', ' ')}"
        won = self.payments.mark_failed_if_pending(
            payment.id,
            gateway_status=report.status,
            message=message,
            transaction_id=report.transaction_id,
        )
        if not won:
            return self._lost_race(payment.order_id)

        released = self.inventory.release(self.bookings.lock_for_payment(payment.id))
        self.payments.add_audit_entry(
            payment.id,
            source="verify",
            payload={"failed_response": report.raw},
            gateway_status=report.status,
        )
        self.db.commit()

        logger.info(
            "Payment %s for order %s; released %s booking(s)",
            report.status,
            payment.order_id,
            len(released),
        )
        return self._result(payment, "failed", message)

    def _flag_amount_mismatch(
        self,
        payment: Payment,
        report: GatewayOrderStatus,
        exc: ConsistencyError,
    ) -> VerificationResult:
        logger.error(
            "AMOUNT MISMATCH order_id=%s expected=%s gateway=%s",
            exc.order_id,
            exc.expected,
            exc.received,
        )
        flagged = self.payments.flag_for_review_if_pending(
            payment.id,
            gateway_status=AMOUNT_MISMATCH,
            message=str(exc),
        )
        if not flagged:
            return self._lost_race(payment.order_id)

        self.payments.add_audit_entry(
            payment.id,
            source="verify",
            payload={
                "amount_mismatch": True,
                "expected": exc.expected,
                "received": exc.received,
                "gateway_response": report.raw,
            },
            gateway_status=AMOUNT_MISMATCH,
        )
        self.db.commit()
        return self._result(
            payment,
            "failed",
            "Payment amount mismatch detected. Please contact support.",
        )

    def _still_processing(self, payment: Payment, report: GatewayOrderStatus) -> VerificationResult:
        self.payments.add_audit_entry(
            payment.id,
            source="verify",
            payload={"last_check": report.raw},
            gateway_status=report.status,
        )
        self.db.commit()
        return self._result(payment, "pending", "Payment is still being processed")

    def _unrecognized(self, payment: Payment, report: GatewayOrderStatus) -> VerificationResult:
        logger.warning(
            "Unknown gateway status %r for order %s; leaving payment pending",
            report.status,
            payment.order_id,
        )
        self.payments.record_gateway_status_if_pending(payment.id, report.status[:64])
        self.payments.add_audit_entry(
            payment.id,
            source="verify",
            payload={"last_check": report.raw},
            gateway_status=report.status[:64],
        )
        self.db.commit()
        return self._result(payment, "pending", f"Payment status: {report.status}")

    # -----------------------------
    # Helpers
    # -----------------------------
    def _check_amount(self, payment: Payment, report: GatewayOrderStatus) -> None:
        if report.charged_amount != payment.amount_paise:
            raise ConsistencyError(
                order_id=payment.order_id,
                expected=payment.amount_paise,
                received=report.charged_amount,
            )

    def _lost_race(self, order_id: str) -> VerificationResult:
        self.db.rollback()
        logger.warning("Order %s was settled by a concurrent caller; returning its result", order_id)
        payment = self.payments.get_by_order_id(order_id)
        settled = self._settled_result(payment)
        if settled is not None:
            return settled
        return self._result(payment, "pending", "Payment is still being processed")

    def _settled_result(self, payment: Payment) -> VerificationResult | None:
        if not PaymentStateMachine.is_terminal(PaymentStatus(payment.status)):
            return None
        if payment.status == PaymentStatus.SUCCESS:
            return self._result(
                payment,
                "success",
                "Payment already verified and confirmed",
                tickets=self._ticket_views(payment.id),
            )
        if payment.status in (PaymentStatus.FAILED, PaymentStatus.REFUNDED):
            return self._result(
                payment,
                "failed",
                f"Payment was previously marked as {PaymentStatus(payment.status).value}",
            )
        return None

    def _ticket_views(self, payment_id: str) -> list[TicketView]:
        return [TicketView.from_ticket(t) for t in self.issuer.tickets_for_payment(payment_id)]

    def _result(
        self,
        payment: Payment,
        status: VerificationStatus,
        message: str,
        tickets: list[TicketView] | None = None,
    ) -> VerificationResult:
        return VerificationResult(
            status=status,
            message=message,
            payment=PaymentSnapshot.from_payment(payment),
            tickets=tickets or [],
        )

    def _transition(self, booking: Booking, to_status: BookingStatus) -> None:
        BookingStateMachine.validate_transition(booking.status, to_status)
        self.bookings.update_status(booking, to_status)
