# src/infrastructure/repositories/payment_repository.py

from datetime import datetime
import hashlib
import json
from typing import Any
from uuid import uuid4

from sqlalchemy.orm import Session
from sqlalchemy import select, update

from src.domain.state_machine import PaymentStatus
from src.infrastructure.db.models import Payment, PaymentAuditEntry


def _hash_payload(encoded: str) -> str:
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class PaymentRepository:
    """
    Every mutating write here is conditioned on the payment still being
    pending and reports whether it won. A False return means another
    caller already settled the payment.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, payment_id: str) -> Payment | None:
        stmt = select(Payment).where(Payment.id == payment_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_order_id(self, order_id: str) -> Payment | None:
        stmt = select(Payment).where(Payment.order_id == order_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def lock_by_ids(self, payment_ids: list[str]) -> list[Payment]:
        if not payment_ids:
            return []

        stmt = (
            select(Payment)
            .where(Payment.id.in_(payment_ids))
            .order_by(Payment.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(self.db.execute(stmt).scalars().all())

    def create_payment(
        self,
        user_id: str,
        order_id: str,
        idempotency_key: str,
        amount_paise: int,
        currency: str,
        gateway: str,
    ) -> Payment:
        payment = Payment(
            id=str(uuid4()),
            user_id=user_id,
            order_id=order_id,
            idempotency_key=idempotency_key,
            amount_paise=amount_paise,
            currency=currency,
            gateway=gateway,
            status=PaymentStatus.PENDING,
            review_required=False,
        )
        self.db.add(payment)
        return payment

    def _update_if_pending(self, payment_id: str, **values: Any) -> bool:
        self.db.flush()
        stmt = (
            update(Payment)
            .where(Payment.id == payment_id)
            .where(Payment.status == PaymentStatus.PENDING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        return result.rowcount == 1

    def mark_success_if_pending(
        self,
        payment_id: str,
        transaction_id: str | None,
        gateway_status: str,
        paid_at: datetime,
    ) -> bool:
        return self._update_if_pending(
            payment_id,
            status=PaymentStatus.SUCCESS,
            transaction_id=transaction_id,
            gateway_status=gateway_status,
            gateway_response_message=None,
            paid_at=paid_at,
        )

    def mark_failed_if_pending(
        self,
        payment_id: str,
        gateway_status: str,
        message: str,
        transaction_id: str | None = None,
    ) -> bool:
        values: dict[str, Any] = {
            "status": PaymentStatus.FAILED,
            "gateway_status": gateway_status,
            "gateway_response_message": message[:255],
        }
        if transaction_id:
            values["transaction_id"] = transaction_id
        return self._update_if_pending(payment_id, **values)

    def flag_for_review_if_pending(
        self,
        payment_id: str,
        gateway_status: str,
        message: str,
    ) -> bool:
        return self._update_if_pending(
            payment_id,
            review_required=True,
            gateway_status=gateway_status,
            gateway_response_message=message[:255],
        )

    def record_gateway_status_if_pending(
        self,
        payment_id: str,
        gateway_status: str,
    ) -> bool:
        return self._update_if_pending(payment_id, gateway_status=gateway_status)

    def flag_for_review(self, payment: Payment, message: str) -> None:
        """Raise the review marker without touching the status."""
        payment.review_required = True
        payment.gateway_response_message = message[:255]

    def attach_session(
        self,
        payment: Payment,
        gateway_order_id: str,
        session_payload: dict,
    ) -> None:
        payment.gateway_order_id = gateway_order_id
        payment.session_payload = session_payload

    def add_audit_entry(
        self,
        payment_id: str,
        source: str,
        payload: dict,
        gateway_status: str | None = None,
    ) -> PaymentAuditEntry:
        encoded = json.dumps(payload, sort_keys=True, default=str)
        entry = PaymentAuditEntry(
            payment_id=payment_id,
            source=source,
            gateway_status=gateway_status,
            payload=encoded,
            payload_hash=_hash_payload(encoded),
        )
        self.db.add(entry)
        return entry
