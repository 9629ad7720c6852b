import json


def _create_order(client, user, event, quantity=1):
    return client.post(
        "/orders",
        json={
            "user_id": user.id,
            "items": [{"event_id": event.id, "quantity": quantity}],
        },
    )


def test_booking_flow(client, make_user, make_event):
    user = make_user()
    event = make_event(capacity=10, price=100)

    order_response = _create_order(client, user, event, quantity=2)
    assert order_response.status_code == 200
    order = order_response.json()
    assert order["status"] == "pending"
    assert order["amount"] == 200
    assert order["amount_paise"] == 20000
    assert "order_id=" in order["session"]["callback_url"]

    inventory = client.get(f"/inventory/{event.id}").json()
    assert inventory == {"event_id": event.id, "capacity": 10, "sold": 2, "available": 8}

    verify_response = client.post(f"/payments/{order['order_id']}/verify")
    assert verify_response.status_code == 200
    body = verify_response.json()
    assert body["status"] == "success"
    assert body["payment"]["status"] == "success"
    assert len(body["tickets"]) == 2

    again = client.post(f"/payments/{order['order_id']}/verify").json()
    assert [t["qr_code"] for t in again["tickets"]] == [t["qr_code"] for t in body["tickets"]]

    listing = client.get(f"/users/{user.id}/tickets").json()
    assert len(listing) == 2


def test_sold_out_order_is_conflict(client, make_user, make_event):
    user = make_user()
    event = make_event(capacity=1, sold=1)

    response = _create_order(client, user, event)

    assert response.status_code == 409
    assert "sold out" in response.json()["detail"]


def test_empty_cart_is_rejected(client, make_user):
    user = make_user()

    response = client.post("/orders", json={"user_id": user.id, "items": []})

    assert response.status_code == 422


def test_session_failure_is_bad_gateway(client, gateway, make_user, make_event):
    user = make_user()
    event = make_event(capacity=3)
    gateway.fail_session = True

    response = _create_order(client, user, event)

    assert response.status_code == 502
    assert response.json()["detail"] == "Payment could not be initialized. Please try again."
    assert client.get(f"/inventory/{event.id}").json()["sold"] == 0


def test_resume_session(client, make_user, make_event):
    user = make_user()
    event = make_event(capacity=3)
    order = _create_order(client, user, event).json()

    resumed = client.get(f"/orders/{order['order_id']}/session")

    assert resumed.status_code == 200
    assert resumed.json()["session"] == order["session"]


def test_unknown_order_is_not_found(client):
    assert client.post("/payments/BOX-0-NOPE00/verify").status_code == 404
    assert client.get("/payments/BOX-0-NOPE00/status").status_code == 404


def test_transient_gateway_is_service_unavailable(client, gateway, make_user, make_event):
    user = make_user()
    event = make_event(capacity=3)
    order = _create_order(client, user, event).json()
    gateway.transient = True

    response = client.post(f"/payments/{order['order_id']}/verify")

    assert response.status_code == 503
    assert client.get(f"/payments/{order['order_id']}/status").json()["status"] == "pending"


def test_callback_redirects_to_status_page(client, make_user, make_event):
    user = make_user()
    event = make_event(capacity=3)
    order = _create_order(client, user, event).json()

    response = client.get(
        "/payments/callback",
        params={"order_id": order["order_id"]},
        follow_redirects=False,
    )

    assert response.status_code == 303
    assert response.headers["location"] == (
        f"/checkout/payment-status?orderId={order['order_id']}&status=success"
    )


def test_webhook_confirms_order(client, make_user, make_event, signer):
    user = make_user()
    event = make_event(capacity=3)
    order = _create_order(client, user, event).json()
    body = json.dumps(
        {
            "event": "order.paid",
            "payload": {"order": {"entity": {"receipt": order["order_id"]}}},
        }
    )

    response = client.post(
        "/payments/webhook",
        content=body,
        headers={"X-Razorpay-Signature": signer(body), "Content-Type": "application/json"},
    )

    assert response.status_code == 200
    assert response.json() == {
        "status": "processed",
        "message": "Payment confirmed successfully",
        "order_id": order["order_id"],
    }
    assert client.get(f"/payments/{order['order_id']}/status").json()["status"] == "success"


def test_webhook_with_odd_payload_shape_still_resolves_order(client, make_user, make_event, signer):
    user = make_user()
    event = make_event(capacity=3)
    order = _create_order(client, user, event).json()
    body = json.dumps({"payload": ["not", "a", "dict"], "order_id": order["order_id"]})

    response = client.post(
        "/payments/webhook",
        content=body,
        headers={"X-Razorpay-Signature": signer(body)},
    )

    assert response.status_code == 200
    assert response.json()["status"] == "processed"


def test_webhook_bad_signature_is_unauthorized(client):
    response = client.post(
        "/payments/webhook",
        content='{"order_id": "BOX-1-ABCDEF"}',
        headers={"X-Razorpay-Signature": "nope"},
    )

    assert response.status_code == 401


def test_webhook_deferred_when_gateway_down(client, gateway, make_user, make_event, signer):
    user = make_user()
    event = make_event(capacity=3)
    order = _create_order(client, user, event).json()
    gateway.transient = True
    body = json.dumps({"order_id": order["order_id"]})

    response = client.post(
        "/payments/webhook",
        content=body,
        headers={"X-Razorpay-Signature": signer(body)},
    )

    assert response.status_code == 200
    assert response.json()["status"] == "deferred"


def test_check_in_endpoints(client, make_user, make_event):
    attendee = make_user()
    staff = make_user(role="owner")
    event = make_event(capacity=3)
    order = _create_order(client, attendee, event).json()
    ticket = client.post(f"/payments/{order['order_id']}/verify").json()["tickets"][0]

    denied = client.post(
        "/tickets/check-in",
        json={"ticket_code": ticket["qr_code"], "staff_user_id": attendee.id},
    )
    assert denied.status_code == 403

    checked = client.post(
        "/tickets/check-in",
        json={"ticket_code": ticket["qr_code"], "staff_user_id": staff.id},
    )
    assert checked.status_code == 200
    assert checked.json()["checked_in"] is True

    repeat = client.post(
        "/tickets/check-in",
        json={"ticket_code": ticket["qr_code"], "staff_user_id": staff.id},
    )
    assert repeat.status_code == 409

    verified = client.post("/tickets/verify", json={"ticket_code": ticket["qr_code"]})
    assert verified.json()["valid"] is False
    assert client.post("/tickets/verify", json={"ticket_code": "bad"}).status_code == 400


def test_reaper_sweep_endpoint(client):
    response = client.post("/reaper/sweep")

    assert response.status_code == 200
    assert response.json() == {"released_count": 0, "released_seats": 0}
