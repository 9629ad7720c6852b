# tests/unit/test_order_parsing.py

import re

import pytest

from src.application.checkout_service import generate_order_id, with_order_id
from src.application.inventory_service import ReservationItem, normalize_items
from src.application.reconciliation_service import extract_order_id, sanitize_order_id
from src.application.ticket_service import normalize_ticket_code
from src.domain.exceptions import ValidationError


# ---------------------
# CART ITEMS
# ---------------------

def test_repeated_events_are_merged_and_sorted():
    items = normalize_items(
        [
            {"event_id": "b", "quantity": 1},
            {"event_id": "a", "quantity": 2},
            {"event_id": "b", "quantity": 3},
        ]
    )

    assert items == [
        ReservationItem(event_id="a", quantity=2),
        ReservationItem(event_id="b", quantity=4),
    ]


@pytest.mark.parametrize(
    "items",
    [
        [],
        [{"event_id": "a", "quantity": 0}],
        [{"event_id": "", "quantity": 1}],
        [{"quantity": 1}],
        [{"event_id": "a", "quantity": "2"}],
    ],
)
def test_bad_items_are_rejected(items):
    with pytest.raises(ValidationError):
        normalize_items(items)


# ---------------------
# ORDER IDS
# ---------------------

def test_generated_order_id_shape():
    order_id = generate_order_id()

    assert re.fullmatch(r"BOX-\d{13,}-[A-Z0-9]{6}", order_id)
    assert sanitize_order_id(order_id) == order_id


def test_return_url_carries_order_id():
    url = with_order_id("http://shop.test/payments/callback?lang=en", "BOX-1-ABCDEF")

    assert url == "http://shop.test/payments/callback?lang=en&order_id=BOX-1-ABCDEF"


def test_sanitize_order_id_strips_unsafe_characters():
    assert sanitize_order_id("BOX-1-AB<script>") == "BOX-1-ABscript"
    assert sanitize_order_id("  ") is None
    assert sanitize_order_id("x" * 51) is None
    assert sanitize_order_id(None) is None


def test_extract_order_id_prefers_payment_notes():
    payload = {
        "event": "payment.captured",
        "payload": {
            "payment": {"entity": {"id": "pay_1", "notes": {"order_id": "BOX-1-AAAAAA"}}},
            "order": {"entity": {"id": "order_1", "receipt": "BOX-2-BBBBBB"}},
        },
    }

    assert extract_order_id(payload) == "BOX-1-AAAAAA"


def test_extract_order_id_falls_back_to_receipt_then_top_level():
    receipt_only = {"payload": {"order": {"entity": {"receipt": "BOX-2-BBBBBB"}}}}
    top_level = {"order_id": "BOX-3-CCCCCC"}

    assert extract_order_id(receipt_only) == "BOX-2-BBBBBB"
    assert extract_order_id(top_level) == "BOX-3-CCCCCC"
    assert extract_order_id({"event": "payment.failed"}) is None


@pytest.mark.parametrize(
    "payload",
    [
        {"payload": "oops", "order_id": "BOX-4-DDDDDD"},
        {"payload": {"payment": ["x"]}, "order_id": "BOX-4-DDDDDD"},
        {"payload": {"payment": {"entity": 7}, "order": {"entity": {"notes": "n"}}}, "order_id": "BOX-4-DDDDDD"},
    ],
)
def test_extract_order_id_tolerates_odd_shapes(payload):
    assert extract_order_id(payload) == "BOX-4-DDDDDD"


# ---------------------
# TICKET CODES
# ---------------------

def test_ticket_code_is_normalized():
    code = "  3F2B8C1E-1C2D-4E5F-8A9B-0C1D2E3F4A5B "

    assert normalize_ticket_code(code) == "3f2b8c1e-1c2d-4e5f-8a9b-0c1d2e3f4a5b"


def test_malformed_ticket_code_is_rejected():
    with pytest.raises(ValidationError):
        normalize_ticket_code("not-a-ticket")
