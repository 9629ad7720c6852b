# src/infrastructure/gateway/razorpay_gateway.py

import logging
from typing import Any

import razorpay
import requests

from src import config
from src.domain.exceptions import (
    GatewayConfigurationError,
    GatewayInitError,
    GatewayTransientError,
)
from src.domain.gateway import (
    Customer,
    GatewayClient,
    GatewayOrderStatus,
    GatewaySession,
    GatewayStatus,
)

logger = logging.getLogger(__name__)


def normalize_order_status(order: dict[str, Any], payments: list[dict[str, Any]]) -> GatewayOrderStatus:
    """
    Collapse a Razorpay order and its payment attempts into one status.
    Amounts stay in paise.
    """
    order_status = (order.get("status") or "").lower()
    captured = [p for p in payments if p.get("status") == "captured"]
    raw = {"order": order, "payments": payments}

    if order_status == "paid" or captured:
        charged = order.get("amount_paid")
        if not charged:
            charged = sum(int(p.get("amount") or 0) for p in captured)
        return GatewayOrderStatus(
            status=GatewayStatus.CHARGED.value,
            charged_amount=int(charged),
            transaction_id=captured[0].get("id") if captured else None,
            raw=raw,
        )

    latest = max(payments, key=lambda p: p.get("created_at") or 0) if payments else None
    latest_status = (latest or {}).get("status")
    transaction_id = (latest or {}).get("id")

    if latest_status in ("authorized", "failed"):
        # A failed attempt does not close a Razorpay order; the shopper may
        # retry in the same Checkout until the hold expires.
        status = GatewayStatus.PENDING
    elif latest_status == "created":
        status = GatewayStatus.PENDING_VBV
    elif order_status == "created" and latest is None:
        status = GatewayStatus.NEW
    elif order_status == "attempted" and latest is None:
        status = GatewayStatus.PENDING
    else:
        return GatewayOrderStatus(
            status=(latest_status or order_status or "UNKNOWN").upper(),
            transaction_id=transaction_id,
            raw=raw,
        )

    return GatewayOrderStatus(status=status.value, transaction_id=transaction_id, raw=raw)


class RazorpayGateway(GatewayClient):
    """GatewayClient backed by the Razorpay Orders API."""

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        webhook_secret: str | None = None,
        timeout: float = config.GATEWAY_TIMEOUT_SECONDS,
        client: razorpay.Client | None = None,
    ):
        self.key_id = key_id
        self.webhook_secret = webhook_secret
        self.timeout = timeout
        self.client = client or razorpay.Client(auth=(key_id, key_secret))

    @classmethod
    def from_env(cls) -> "RazorpayGateway":
        if not config.RAZORPAY_KEY_ID or not config.RAZORPAY_KEY_SECRET:
            raise GatewayConfigurationError(
                "Razorpay keys not configured. Set RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET."
            )
        return cls(
            key_id=config.RAZORPAY_KEY_ID,
            key_secret=config.RAZORPAY_KEY_SECRET,
            webhook_secret=config.RAZORPAY_WEBHOOK_SECRET,
        )

    def create_session(
        self,
        order_id: str,
        amount_paise: int,
        currency: str,
        customer: Customer,
        return_url: str,
        idempotency_key: str,
    ) -> GatewaySession:
        try:
            order = self.client.order.create(
                {
                    "amount": amount_paise,
                    "currency": currency,
                    "receipt": order_id,
                    "notes": {
                        "order_id": order_id,
                        "idempotency_key": idempotency_key,
                        "customer_id": customer.customer_id,
                    },
                },
                timeout=self.timeout,
            )
        except Exception as exc:
            # Includes timeouts: the order may exist upstream, so the
            # caller compensates instead of retrying.
            raise GatewayInitError(f"Razorpay order creation failed: {exc}") from exc

        gateway_order_id = order.get("id")
        if not gateway_order_id:
            raise GatewayInitError("Razorpay returned an order without an id")

        payload = {
            "key_id": self.key_id,
            "order_id": gateway_order_id,
            "amount": amount_paise,
            "currency": currency,
            "callback_url": return_url,
            "prefill": {
                "name": customer.name,
                "email": customer.email,
                "contact": customer.phone,
            },
            "notes": {"order_id": order_id},
        }
        return GatewaySession(gateway_order_id=gateway_order_id, payload=payload)

    def query_status(self, gateway_order_id: str) -> GatewayOrderStatus:
        try:
            order = self.client.order.fetch(gateway_order_id, timeout=self.timeout)
            payments = self.client.order.payments(gateway_order_id, timeout=self.timeout)
        except (
            requests.exceptions.RequestException,
            razorpay.errors.ServerError,
            razorpay.errors.GatewayError,
        ) as exc:
            raise GatewayTransientError(f"Razorpay status query failed: {exc}") from exc
        except razorpay.errors.BadRequestError as exc:
            logger.warning("Razorpay rejected status query for %s: %s", gateway_order_id, exc)
            raise GatewayTransientError(f"Razorpay status query rejected: {exc}") from exc

        return normalize_order_status(order, list((payments or {}).get("items", [])))

    def verify_signature(self, raw_body: str, signature: str | None) -> bool:
        if not self.webhook_secret:
            logger.warning("RAZORPAY_WEBHOOK_SECRET not set; cannot verify webhook signature")
            return False
        if not raw_body or not signature:
            return False

        try:
            # HMAC-SHA256 over the raw body, compared with hmac.compare_digest.
            self.client.utility.verify_webhook_signature(raw_body, signature, self.webhook_secret)
        except razorpay.errors.SignatureVerificationError:
            return False
        return True
