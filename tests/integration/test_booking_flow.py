import json


def _completed(world, session_id, slot_ids, user_id="user-1", amount=6000):
    return {
        "id": session_id,
        "object": "checkout.session",
        "payment_status": "paid",
        "amount_total": amount,
        "currency": "eur",
        "payment_intent": f"pi_{session_id}",
        "metadata": {
            "userId": user_id,
            "userEmail": f"{user_id}@example.com",
            "eventId": world.event_id,
            "slotIds": json.dumps(slot_ids),
            "isPack": "false",
        },
    }


def test_booking_flow(client, world, signed_event, admin_headers):

    slots_response = client.get(f"/events/{world.event_id}/slots", params={"category_id": world.category_id})
    assert slots_response.status_code == 200
    slots = slots_response.json()
    assert len(slots) == 4
    assert all(slot["available"] for slot in slots)
    assert "user_id" not in slots[0]

    payload = {
        "user_id": "user-1",
        "user_email": "u1@example.com",
        "slot_ids": [world.slot_ids[0]],
    }
    response = client.post("/checkout/single", json=payload)

    assert response.status_code == 200
    session_id = response.json()["session_id"]
    assert response.json()["url"].endswith(session_id)

    taken = client.post(
        "/checkout/single",
        json={"user_id": "user-2", "user_email": "u2@example.com", "slot_ids": [world.slot_ids[0]]},
    )
    assert taken.status_code == 409
    assert taken.json()["slot_ids"] == [world.slot_ids[0]]

    body, signature = signed_event("checkout.session.completed", _completed(world, session_id, [world.slot_ids[0]]))
    for _ in range(2):
        webhook_response = client.post(
            "/webhook/payment",
            content=body,
            headers={"Stripe-Signature": signature, "Content-Type": "application/json"},
        )
        assert webhook_response.status_code == 200

    slot = next(
        item
        for item in client.get(f"/events/{world.event_id}/slots").json()
        if item["id"] == world.slot_ids[0]
    )
    assert slot["status"] == "paid"

    payments = client.get(f"/admin/events/{world.event_id}/payments", headers=admin_headers).json()
    assert len(payments) == 1
    assert payments[0]["status"] == "paid"
    assert payments[0]["stripe_session_id"] == session_id

    users = {user["id"]: user for user in client.get("/admin/users", headers=admin_headers).json()}
    assert users["user-1"]["registrations"][0]["paid"] is True

    audit = client.get(f"/admin/events/{world.event_id}/audit", headers=admin_headers)
    assert audit.status_code == 200
    assert audit.json()["issues"] == []


def test_webhook_rejects_bad_signature(client, world, signed_event):
    body, _ = signed_event("checkout.session.completed", _completed(world, "cs_forged", [world.slot_ids[0]]))

    response = client.post(
        "/webhook/payment",
        content=body,
        headers={"Stripe-Signature": "t=1,v1=deadbeef"},
    )

    assert response.status_code == 400
    slot = next(
        item
        for item in client.get(f"/events/{world.event_id}/slots").json()
        if item["id"] == world.slot_ids[0]
    )
    assert slot["status"] == "available"


def test_public_errors_hide_internal_detail(client, world):
    response = client.post(
        "/checkout/single",
        json={"user_id": "user-1", "user_email": "u1@example.com", "slot_ids": ["no-such-slot"]},
    )

    assert response.status_code == 409
    assert response.json()["detail"] == "One or more selected slots are no longer available."


def test_admin_routes_require_admin_role(client, world):
    assert client.get("/admin/users").status_code == 403
    assert client.get("/admin/users", headers={"X-User-Id": "user-1"}).status_code == 403


def test_admin_slot_management(client, world, admin_headers):
    generated = client.post(
        f"/admin/events/{world.event_id}/slots/generate",
        json={
            "category_id": world.other_category_id,
            "date": world.day.isoformat(),
            "day_start": "16:00",
            "day_end": "18:00",
            "break_minutes": 0,
        },
        headers=admin_headers,
    )
    assert generated.status_code == 200
    assert len(generated.json()) == 4

    assigned = client.post(
        f"/admin/slots/{world.slot_ids[0]}/assign",
        json={"user_id": "user-1"},
        headers=admin_headers,
    )
    assert assigned.status_code == 200
    assert assigned.json()["status"] == "offered"
    assert assigned.json()["assigned_by"] == "admin-1"

    manual = client.post(
        "/admin/payments/manual",
        json={
            "event_id": world.event_id,
            "user_id": "user-2",
            "amount": 6000,
            "slot_ids": [world.slot_ids[1]],
            "note": "cash",
        },
        headers=admin_headers,
    )
    assert manual.status_code == 200

    refused = client.delete(
        f"/admin/events/{world.event_id}/slots",
        params={"date": world.day.isoformat()},
        headers=admin_headers,
    )
    assert refused.status_code == 409
    assert refused.json()["slot_ids"] == [world.slot_ids[1]]
    assert "Paid slots cannot be deleted" in refused.json()["detail"]

    released = client.post(
        "/admin/slots/unassign",
        json={"slot_ids": [world.slot_ids[0]]},
        headers=admin_headers,
    )
    assert released.status_code == 200
    assert released.json()["slot_ids"] == [world.slot_ids[0]]


def test_admin_catalogue_and_reconcile(client, world, admin_headers):
    category = client.post(
        f"/admin/events/{world.event_id}/categories",
        json={"name": "Gluten Free", "unit_price": 4000, "max_slots": 5, "duration_minutes": 15},
        headers=admin_headers,
    )
    assert category.status_code == 200
    assert client.delete(f"/admin/categories/{category.json()['id']}", headers=admin_headers).status_code == 200

    voucher = client.post(
        f"/admin/events/{world.event_id}/vouchers",
        json={"code": "JURY2025", "product_id": world.product_id},
        headers=admin_headers,
    )
    assert voucher.status_code == 200

    redeemed = client.post(
        "/checkout/voucher",
        json={
            "event_id": world.event_id,
            "code": "JURY2025",
            "user_id": "user-2",
            "slot_ids": world.slot_ids[2:4],
        },
    )
    assert redeemed.status_code == 200
    assert redeemed.json()["status"] == "paid"

    manual = client.post(
        "/admin/payments/manual",
        json={"event_id": world.event_id, "user_id": "user-1", "amount": 6000},
        headers=admin_headers,
    )
    payment_id = manual.json()["id"]

    reconciled = client.post(
        "/admin/reconcile",
        json={"user_id": "user-1", "payment_id": payment_id},
        headers=admin_headers,
    )
    assert reconciled.status_code == 200
    assert reconciled.json()["paid"] is True

    sweep = client.post("/admin/holds/sweep", headers=admin_headers)
    assert sweep.status_code == 200
    assert sweep.json()["released_slot_ids"] == []


def test_early_refund_webhook_asks_for_redelivery(client, world, signed_event):
    body, signature = signed_event(
        "charge.refunded",
        {"id": "ch_early", "payment_intent": "pi_unknown", "amount": 6000, "amount_refunded": 6000, "refunded": True},
    )

    response = client.post("/webhook/payment", content=body, headers={"Stripe-Signature": signature})

    assert response.status_code == 409


def test_admin_refunds_manual_payment(client, world, admin_headers):
    manual = client.post(
        "/admin/payments/manual",
        json={"event_id": world.event_id, "user_id": "user-2", "amount": 6000, "slot_ids": [world.slot_ids[2]]},
        headers=admin_headers,
    )
    assert manual.status_code == 200

    refunded = client.post(
        "/admin/slots/refund",
        json={"slot_ids": [world.slot_ids[2]]},
        headers=admin_headers,
    )
    assert refunded.status_code == 200
    assert refunded.json()["slot_ids"] == [world.slot_ids[2]]

    payment = client.get(f"/admin/payments/{manual.json()['id']}", headers=admin_headers).json()
    assert payment["status"] == "refunded"
    users = {user["id"]: user for user in client.get("/admin/users", headers=admin_headers).json()}
    assert users["user-2"]["registrations"][0]["paid"] is False
