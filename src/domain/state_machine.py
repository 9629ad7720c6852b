# src/domain/state_machine.py

from enum import Enum
from typing import Dict, Set

from src.domain.exceptions import InvalidStateTransitionError


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    REFUNDED = "refunded"


class EventStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class EventVisibility(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


class _StateMachine:
    """
    Shared lifecycle controller.
    Subclasses define the legal state transitions.
    """

    _STATUS_TYPE: type[Enum]
    _ALLOWED_TRANSITIONS: Dict[Enum, Set[Enum]]

    @classmethod
    def can_transition(cls, from_status, to_status) -> bool:
        """
        Returns True if transition is allowed.
        """
        cls._ensure_valid_status(from_status)
        cls._ensure_valid_status(to_status)

        return to_status in cls._ALLOWED_TRANSITIONS.get(from_status, set())

    @classmethod
    def validate_transition(cls, from_status, to_status) -> None:
        """
        Raises InvalidStateTransitionError if transition is illegal.
        """
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateTransitionError(
                from_state=from_status.value,
                to_state=to_status.value,
            )

    @classmethod
    def is_terminal(cls, status) -> bool:
        """
        Returns True if the state is terminal (no further transitions allowed).
        """
        cls._ensure_valid_status(status)
        return len(cls._ALLOWED_TRANSITIONS.get(status, set())) == 0

    @classmethod
    def terminal_states(cls) -> Set[Enum]:
        return {
            status
            for status, targets in cls._ALLOWED_TRANSITIONS.items()
            if not targets
        }

    @classmethod
    def _ensure_valid_status(cls, status) -> None:
        if not isinstance(status, cls._STATUS_TYPE):
            raise TypeError(
                f"Expected {cls._STATUS_TYPE.__name__}, got {type(status)}"
            )


class BookingStateMachine(_StateMachine):
    """A booking is confirmed or cancelled exactly once."""

    _STATUS_TYPE = BookingStatus
    _ALLOWED_TRANSITIONS: Dict[BookingStatus, Set[BookingStatus]] = {
        BookingStatus.PENDING: {
            BookingStatus.CONFIRMED,
            BookingStatus.CANCELLED,
        },
        BookingStatus.CONFIRMED: set(),
        BookingStatus.CANCELLED: set(),
    }


class PaymentStateMachine(_StateMachine):
    """
    Only a pending payment may move. Refunds are recorded by operators
    outside this engine, so nothing here transitions into REFUNDED.
    """

    _STATUS_TYPE = PaymentStatus
    _ALLOWED_TRANSITIONS: Dict[PaymentStatus, Set[PaymentStatus]] = {
        PaymentStatus.PENDING: {
            PaymentStatus.SUCCESS,
            PaymentStatus.FAILED,
        },
        PaymentStatus.SUCCESS: set(),
        PaymentStatus.FAILED: set(),
        PaymentStatus.REFUNDED: set(),
    }


def is_purchasable(status: EventStatus, visibility: EventVisibility) -> bool:
    return status == EventStatus.PUBLISHED and visibility == EventVisibility.PUBLIC
