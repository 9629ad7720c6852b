from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class OrderItem(BaseModel):
    event_id: str
    quantity: int = Field(gt=0)


class CreateOrderRequest(BaseModel):
    user_id: str
    items: list[OrderItem] = Field(min_length=1)
    return_url: str | None = None


class BookingLineResponse(BaseModel):
    booking_id: str
    event_id: str
    event_title: str
    quantity: int
    unit_price: int
    line_total: int


class OrderSessionResponse(BaseModel):
    order_id: str
    status: str = "pending"
    amount: int
    amount_paise: int
    currency: str
    expires_at: datetime | None = None
    session: dict[str, Any]
    bookings: list[BookingLineResponse]


class PaymentResponse(BaseModel):
    id: str
    order_id: str
    amount: int
    amount_paise: int
    currency: str
    status: str
    transaction_id: str | None = None
    gateway_status: str | None = None
    review_required: bool = False


class TicketResponse(BaseModel):
    ticket_id: str
    qr_code: str
    booking_id: str
    event_id: str
    event_title: str
    venue: str
    start_time: datetime
    end_time: datetime | None = None
    attendee_name: str
    attendee_email: str
    price_at_booking: int
    booking_status: str
    issued_at: datetime | None = None
    check_in_at: datetime | None = None
    checked_in: bool
    valid: bool


class VerificationResponse(BaseModel):
    status: Literal["success", "pending", "failed"]
    message: str
    payment: PaymentResponse
    tickets: list[TicketResponse] = []


class WebhookResponse(BaseModel):
    status: Literal["processed", "ignored", "deferred"]
    message: str
    order_id: str | None = None


class InventoryResponse(BaseModel):
    event_id: str
    capacity: int
    sold: int
    available: int


class TicketCodeRequest(BaseModel):
    ticket_code: str


class CheckInRequest(BaseModel):
    ticket_code: str
    staff_user_id: str


class SweepResponse(BaseModel):
    released_count: int
    released_seats: int
