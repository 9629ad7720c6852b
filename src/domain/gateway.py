"""Payment gateway contract.

The reconciliation engine and the checkout service receive a
``GatewayClient`` explicitly; nothing reaches for a process-wide client.
Amounts crossing this boundary are integer minor units (paise).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class GatewayStatus(str, Enum):
    CHARGED = "CHARGED"
    PENDING = "PENDING"
    PENDING_VBV = "PENDING_VBV"
    NEW = "NEW"
    AUTHORIZATION_FAILED = "AUTHORIZATION_FAILED"
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    DECLINED = "DECLINED"


TRANSIENT_STATUSES = frozenset(
    {GatewayStatus.PENDING, GatewayStatus.PENDING_VBV, GatewayStatus.NEW}
)
DECLINED_STATUSES = frozenset(
    {
        GatewayStatus.AUTHORIZATION_FAILED,
        GatewayStatus.AUTHENTICATION_FAILED,
        GatewayStatus.DECLINED,
    }
)


@dataclass(frozen=True)
class Customer:
    customer_id: str
    name: str | None = None
    email: str | None = None
    phone: str | None = None


@dataclass(frozen=True)
class GatewaySession:
    gateway_order_id: str
    payload: dict[str, Any]


@dataclass(frozen=True)
class GatewayOrderStatus:
    # Raw gateway string; may be outside GatewayStatus when the gateway
    # reports something this engine does not recognize.
    status: str
    charged_amount: int | None = None
    transaction_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


class GatewayClient(ABC):
    """Interface for the external payment processor."""

    @abstractmethod
    def create_session(
        self,
        order_id: str,
        amount_paise: int,
        currency: str,
        customer: Customer,
        return_url: str,
        idempotency_key: str,
    ) -> GatewaySession:
        """Open a payment session. Raises GatewayInitError; never retried."""
        ...

    @abstractmethod
    def query_status(self, gateway_order_id: str) -> GatewayOrderStatus:
        """Authoritative charge status. Raises GatewayTransientError."""
        ...

    @abstractmethod
    def verify_signature(self, raw_body: str, signature: str | None) -> bool:
        """Check an inbound notification's HMAC in constant time."""
        ...
