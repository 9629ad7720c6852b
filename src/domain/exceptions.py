

class BoxOfficeError(Exception):
    """
    Base exception for all domain-level errors
    inside the Box Office engine.
    """


class ValidationError(BoxOfficeError):
    """Raised when a request is malformed or references unknown data."""


class AvailabilityError(BoxOfficeError):
    """Raised when an event is sold out or cannot cover the requested quantity."""


class InvalidStateTransitionError(BoxOfficeError):
    """
    Raised when an illegal booking or payment state transition is attempted.
    """

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state

        message = (
            f"Illegal state transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message)


class UnknownOrderError(BoxOfficeError):
    """Raised when no payment exists for an order id."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Payment record not found for order {order_id}")


class GatewayConfigurationError(BoxOfficeError):
    """Raised when gateway credentials are missing."""


class GatewayTransientError(BoxOfficeError):
    """Status query timed out or failed upstream. Safe to retry."""


class GatewayInitError(BoxOfficeError):
    """Session creation failed or is ambiguous. Never retried locally."""


class ConsistencyError(BoxOfficeError):
    """Raised when the gateway charged a different amount than expected."""

    def __init__(self, order_id: str, expected: int, received: int | None):
        self.order_id = order_id
        self.expected = expected
        self.received = received
        super().__init__(f"Expected {expected}, gateway returned {received}")


class InvalidSignatureError(BoxOfficeError):
    """Raised when an inbound notification fails signature verification."""


class TicketNotFoundError(BoxOfficeError):
    """Raised when no ticket matches a code."""


class BookingNotConfirmedError(BoxOfficeError):
    """Raised when checking in a ticket whose booking is not confirmed."""


class TicketAlreadyCheckedInError(BoxOfficeError):
    """Raised when a ticket has already been checked in."""


class PermissionDeniedError(BoxOfficeError):
    """Raised when a user lacks the capability for an operation."""
