import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from src import config
from src.application.checkout_service import CheckoutService, OrderSession
from src.application.inventory_service import InventoryService
from src.application.reaper_service import ReaperService
from src.application.reconciliation_service import (
    PaymentSnapshot,
    ReconciliationService,
    VerificationResult,
    sanitize_order_id,
)
from src.application.ticket_service import TicketService, TicketView
from src.api.schemas.schemas import (
    BookingLineResponse,
    CheckInRequest,
    CreateOrderRequest,
    InventoryResponse,
    OrderSessionResponse,
    PaymentResponse,
    SweepResponse,
    TicketCodeRequest,
    TicketResponse,
    VerificationResponse,
    WebhookResponse,
)
from src.domain.exceptions import (
    AvailabilityError,
    BookingNotConfirmedError,
    BoxOfficeError,
    GatewayConfigurationError,
    GatewayInitError,
    GatewayTransientError,
    InvalidSignatureError,
    InvalidStateTransitionError,
    PermissionDeniedError,
    TicketAlreadyCheckedInError,
    TicketNotFoundError,
    UnknownOrderError,
    ValidationError,
)
from src.domain.gateway import GatewayClient
from src.infrastructure.db.session import SessionLocal
from src.infrastructure.gateway.razorpay_gateway import RazorpayGateway


router = APIRouter()
logger = logging.getLogger(__name__)

_ERROR_STATUS = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (AvailabilityError, status.HTTP_409_CONFLICT),
    (UnknownOrderError, status.HTTP_404_NOT_FOUND),
    (TicketNotFoundError, status.HTTP_404_NOT_FOUND),
    (GatewayTransientError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (GatewayInitError, status.HTTP_502_BAD_GATEWAY),
    (InvalidStateTransitionError, status.HTTP_409_CONFLICT),
    (BookingNotConfirmedError, status.HTTP_400_BAD_REQUEST),
    (TicketAlreadyCheckedInError, status.HTTP_409_CONFLICT),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN),
    (InvalidSignatureError, status.HTTP_401_UNAUTHORIZED),
    (GatewayConfigurationError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_gateway(request: Request) -> GatewayClient:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        try:
            gateway = RazorpayGateway.from_env()
        except GatewayConfigurationError as exc:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=str(exc),
            ) from exc
        request.app.state.gateway = gateway
    return gateway


async def get_raw_body(request: Request) -> bytes:
    return await request.body()


def _http_error(exc: BoxOfficeError) -> HTTPException:
    for error_cls, status_code in _ERROR_STATUS:
        if isinstance(exc, error_cls):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=str(exc),
    )


def _payment_response(payment: PaymentSnapshot) -> PaymentResponse:
    return PaymentResponse(
        id=payment.id,
        order_id=payment.order_id,
        amount=payment.amount_paise // 100,
        amount_paise=payment.amount_paise,
        currency=payment.currency,
        status=payment.status,
        transaction_id=payment.transaction_id,
        gateway_status=payment.gateway_status,
        review_required=payment.review_required,
    )


def _ticket_response(ticket: TicketView) -> TicketResponse:
    return TicketResponse(
        ticket_id=ticket.ticket_id,
        qr_code=ticket.qr_code,
        booking_id=ticket.booking_id,
        event_id=ticket.event_id,
        event_title=ticket.event_title,
        venue=ticket.venue,
        start_time=ticket.start_time,
        end_time=ticket.end_time,
        attendee_name=ticket.attendee_name,
        attendee_email=ticket.attendee_email,
        price_at_booking=ticket.price_at_booking,
        booking_status=ticket.booking_status,
        issued_at=ticket.issued_at,
        check_in_at=ticket.check_in_at,
        checked_in=ticket.checked_in,
        valid=ticket.valid,
    )


def _verification_response(result: VerificationResult) -> VerificationResponse:
    return VerificationResponse(
        status=result.status,
        message=result.message,
        payment=_payment_response(result.payment),
        tickets=[_ticket_response(t) for t in result.tickets],
    )


def _order_session_response(order: OrderSession) -> OrderSessionResponse:
    return OrderSessionResponse(
        order_id=order.order_id,
        amount=order.amount_paise // 100,
        amount_paise=order.amount_paise,
        currency=order.currency,
        expires_at=order.expires_at,
        session=order.session_payload,
        bookings=[
            BookingLineResponse(
                booking_id=line.booking_id,
                event_id=line.event_id,
                event_title=line.event_title,
                quantity=line.quantity,
                unit_price=line.unit_price,
                line_total=line.line_total,
            )
            for line in order.bookings
        ],
    )


@router.get("/health")
def health():
    return {"status": "ok"}


@router.post("/orders", response_model=OrderSessionResponse)
def create_order(
    request: CreateOrderRequest,
    http_request: Request,
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway),
):
    return_url = request.return_url or str(http_request.url_for("payment_callback"))
    service = CheckoutService(db, gateway)

    try:
        order = service.create_order_session(
            user_id=request.user_id,
            items=[item.model_dump() for item in request.items],
            return_url=return_url,
        )
    except BoxOfficeError as exc:
        raise _http_error(exc) from exc

    return _order_session_response(order)


@router.get("/orders/{order_id}/session", response_model=OrderSessionResponse)
def resume_order_session(
    order_id: str,
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway),
):
    try:
        order = CheckoutService(db, gateway).resume_session(order_id)
    except BoxOfficeError as exc:
        raise _http_error(exc) from exc

    return _order_session_response(order)


@router.post("/payments/{order_id}/verify", response_model=VerificationResponse)
def verify_payment(
    order_id: str,
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway),
):
    try:
        result = ReconciliationService(db, gateway).verify(order_id)
    except BoxOfficeError as exc:
        raise _http_error(exc) from exc

    return _verification_response(result)


@router.get("/payments/{order_id}/status", response_model=PaymentResponse)
def payment_status(
    order_id: str,
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway),
):
    try:
        payment = ReconciliationService(db, gateway).status(order_id)
    except BoxOfficeError as exc:
        raise _http_error(exc) from exc

    return _payment_response(payment)


@router.api_route("/payments/callback", methods=["GET", "POST"], name="payment_callback")
def payment_callback(
    order_id: str | None = None,
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway),
):
    """Return URL: settle what we can, then hand the shopper to the status page."""
    clean_order_id = sanitize_order_id(order_id)
    if not clean_order_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing or invalid order_id",
        )

    service = ReconciliationService(db, gateway)
    try:
        outcome = service.verify_until_settled(
            clean_order_id,
            attempts=config.VERIFY_POLL_ATTEMPTS,
            delay=config.VERIFY_POLL_DELAY_SECONDS,
        ).status
    except UnknownOrderError:
        outcome = "error"
    except GatewayTransientError:
        outcome = "pending"
    except BoxOfficeError as exc:
        logger.warning("Callback verification failed for order %s: %s", clean_order_id, exc)
        outcome = "error"

    query = urlencode({"orderId": clean_order_id, "status": outcome})
    return RedirectResponse(
        url=f"{config.CHECKOUT_STATUS_URL}?{query}",
        status_code=status.HTTP_303_SEE_OTHER,
    )


@router.post("/payments/webhook", response_model=WebhookResponse)
def payment_webhook(
    raw_body: bytes = Depends(get_raw_body),
    x_razorpay_signature: str | None = Header(default=None),
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway),
):
    service = ReconciliationService(db, gateway)
    body = raw_body.decode("utf-8", errors="replace")

    try:
        outcome = service.handle_notification(body, x_razorpay_signature)
    except InvalidSignatureError as exc:
        logger.warning("Rejected webhook with invalid signature")
        raise _http_error(exc) from exc
    except GatewayTransientError as exc:
        # The next delivery or the shopper's return triggers verification again.
        logger.warning("Webhook verification deferred: %s", exc)
        return WebhookResponse(status="deferred", message="Gateway unavailable, will reconcile later")
    except UnknownOrderError as exc:
        return WebhookResponse(status="ignored", message=str(exc), order_id=exc.order_id)

    return WebhookResponse(
        status="processed" if outcome.processed else "ignored",
        message=outcome.message,
        order_id=outcome.order_id,
    )


@router.get("/inventory/{event_id}", response_model=InventoryResponse)
def get_inventory(event_id: str, db: Session = Depends(get_db)):
    try:
        snapshot = InventoryService(db).availability(event_id)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc

    return InventoryResponse(**snapshot)


@router.post("/tickets/verify", response_model=TicketResponse)
def verify_ticket(request: TicketCodeRequest, db: Session = Depends(get_db)):
    try:
        ticket = TicketService(db).verify_ticket(request.ticket_code)
    except BoxOfficeError as exc:
        raise _http_error(exc) from exc

    return _ticket_response(ticket)


@router.post("/tickets/check-in", response_model=TicketResponse)
def check_in_ticket(request: CheckInRequest, db: Session = Depends(get_db)):
    try:
        ticket = TicketService(db).check_in(
            ticket_code=request.ticket_code,
            staff_user_id=request.staff_user_id,
        )
    except BoxOfficeError as exc:
        raise _http_error(exc) from exc

    return _ticket_response(ticket)


@router.get("/users/{user_id}/tickets", response_model=list[TicketResponse])
def list_user_tickets(user_id: str, db: Session = Depends(get_db)):
    return [_ticket_response(t) for t in TicketService(db).tickets_for_user(user_id)]


@router.post("/reaper/sweep", response_model=SweepResponse)
def run_reaper(db: Session = Depends(get_db)):
    result = ReaperService(db).sweep()
    return SweepResponse(
        released_count=result.released_count,
        released_seats=result.released_seats,
    )
