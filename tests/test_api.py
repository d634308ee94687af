from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError

from registration_service import config, database, models, registrations


def registration_body(seed, **overrides):
    body = {
        "seminar_id": seed.seminar_id,
        "category_id": seed.category_id,
        "slab_id": seed.slab_id,
        "delegate_type": "BOA Member",
        "amount": 2000,
        "additional_persons": [
            {"name": "Sunita Devi", "category_id": seed.accompanying_category_id, "slab_id": seed.slab_id, "amount": "1000"},
        ],
        "razorpay_order_id": "order_abc",
        "razorpay_payment_id": "pay_abc",
    }
    body.update(overrides)
    return body


def as_user(user_id):
    return {"X-User-Id": str(user_id)}


def test_health_and_root(client):
    assert client.get("/health").json() == {"status": "ok"}
    assert client.get("/").json()["service"] == "Registration Service"


def test_create_confirmed_registration(client, seed, sender):
    resp = client.post("/registrations", json=registration_body(seed), headers=as_user(seed.user_id))

    assert resp.status_code == 201
    data = resp.json()
    assert data["success"] is True
    reg = data["registration"]
    assert Decimal(reg["amount"]) == Decimal("3000")
    assert reg["status"] == "confirmed"
    assert reg["membership_no"] == "LM001"
    assert reg["registration_no"].startswith("REG-")

    with database.SessionLocal() as session:
        stored = session.get(models.Registration, reg["id"])
        assert stored.delegate_type == "boa-member"
        assert len(stored.additional_persons) == 1
        outbox = session.query(models.NotificationOutbox).one()
        assert outbox.status == models.OUTBOX_SENT

    assert len(sender.of_kind("registration_email")) == 1
    assert len(sender.of_kind("activity")) == 1


def test_pending_registration_sends_nothing(client, seed, sender):
    body = registration_body(seed, additional_persons=[], razorpay_payment_id=None)
    resp = client.post("/registrations", json=body, headers=as_user(seed.user_id))

    assert resp.status_code == 201
    assert resp.json()["registration"]["status"] == "pending"
    assert sender.calls == []


def test_duplicate_registration_conflict(client, seed):
    first = client.post("/registrations", json=registration_body(seed), headers=as_user(seed.user_id)).json()

    resp = client.post("/registrations", json=registration_body(seed, amount=1), headers=as_user(seed.user_id))

    assert resp.status_code == 409
    data = resp.json()
    assert data["success"] is False
    assert data["already_registered"] is True
    assert data["registration"]["registration_no"] == first["registration"]["registration_no"]
    assert data["registration"]["status"] == "confirmed"


def test_requires_identity(client, seed):
    assert client.post("/registrations", json=registration_body(seed)).status_code == 401
    assert client.get("/registrations/my-registrations", headers={"X-User-Id": "abc"}).status_code == 401


def test_rejects_unknown_delegate_type(client, seed):
    resp = client.post("/registrations", json=registration_body(seed, delegate_type="Trade"), headers=as_user(seed.user_id))
    assert resp.status_code == 422


def test_rejects_negative_amount(client, seed):
    resp = client.post("/registrations", json=registration_body(seed, amount=-5), headers=as_user(seed.user_id))
    assert resp.status_code == 422


def test_unknown_user(client, seed):
    resp = client.post("/registrations", json=registration_body(seed), headers=as_user(9999))
    assert resp.status_code == 404


def test_database_failure_surfaces_driver_message(client, seed, monkeypatch):
    def boom(*args, **kwargs):
        raise SQLAlchemyError("Data too long for column 'name'")

    monkeypatch.setattr(registrations, "_insert_additional_persons", boom)

    resp = client.post("/registrations", json=registration_body(seed), headers=as_user(seed.user_id))

    assert resp.status_code == 500
    detail = resp.json()["detail"]
    assert detail["message"] == "Failed to create registration"
    assert "Data too long" in detail["error"]
    with database.SessionLocal() as session:
        assert session.query(models.Registration).count() == 0
        assert session.get(models.User, seed.user_id).membership_no is None


def test_my_registrations(client, seed):
    client.post("/registrations", json=registration_body(seed), headers=as_user(seed.user_id))

    resp = client.get("/registrations/my-registrations", headers=as_user(seed.user_id))

    assert resp.status_code == 200
    data = resp.json()
    assert data["count"] == 1
    reg = data["registrations"][0]
    assert reg["seminar_name"] == "BOA Annual Conference 2026"
    assert reg["category_name"] == "BOA Member"
    assert reg["slab_label"] == "Early Bird"
    assert reg["start_date"] == "2026-11-20"
    assert reg["additional_persons"][0]["name"] == "Sunita Devi"
    assert reg["additional_persons"][0]["category_name"] == "Accompanying Person"

    other = client.get("/registrations/my-registrations", headers=as_user(seed.member_id)).json()
    assert other["count"] == 0


def test_update_payment_status(client, seed, sender):
    body = registration_body(seed, additional_persons=[], razorpay_payment_id=None)
    reg_id = client.post("/registrations", json=body, headers=as_user(seed.user_id)).json()["registration"]["id"]

    resp = client.put(f"/registrations/{reg_id}/payment", json={
        "status": "confirmed", "transaction_id": "TXN-42", "payment_method": "upi",
    })

    assert resp.status_code == 200
    assert resp.json()["success"] is True
    activity = sender.of_kind("activity")
    assert len(activity) == 1
    assert activity[0][2]["name"] == "Anita Kumari"
    with database.SessionLocal() as session:
        stored = session.get(models.Registration, reg_id)
        assert stored.status == "confirmed"
        assert stored.transaction_ref == "TXN-42"


def test_update_payment_status_validation_and_missing(client, seed):
    assert client.put("/registrations/1/payment", json={"status": "refunded"}).status_code == 422
    assert client.put("/registrations/999/payment", json={"status": "confirmed"}).status_code == 404


def test_update_payment_status_admin_token(client, seed, monkeypatch):
    monkeypatch.setattr(config, "ADMIN_API_TOKEN", "s3cret")

    assert client.put("/registrations/999/payment", json={"status": "confirmed"}).status_code == 403
    resp = client.put("/registrations/999/payment", json={"status": "confirmed"}, headers={"X-Admin-Token": "s3cret"})
    assert resp.status_code == 404


def test_membership_payment_flow(client, sender):
    application = {"name": "Meera Sinha", "email": "meera@example.org", "membership_type": "Life Membership", "age": 34}

    created = client.post("/payments/create-payment", json={
        "transaction_id": "TXN123", "amount": 500, "user_data": application,
    })
    assert created.json() == {"success": True, "transaction_id": "TXN123", "message": "Payment request created"}

    pending = client.post("/payments/check-payment", json={"transaction_id": "TXN123"}).json()
    assert pending["success"] is True
    assert pending["payment_verified"] is False

    hook = client.post("/payments/webhook/payment-success", json={"transaction_id": "TXN123", "upi_ref": "UPI-1"})
    assert hook.json() == {"success": True}

    verified = client.post("/payments/check-payment", json={"transaction_id": "TXN123"}).json()
    assert verified["payment_verified"] is True
    membership_id = verified["registration_id"]
    with database.SessionLocal() as session:
        row = session.get(models.MembershipRegistration, membership_id)
        assert row.transaction_id == "TXN123"
        assert row.gateway_ref == "UPI-1"
        assert row.amount == Decimal("500.00")
    assert len(sender.of_kind("membership_email")) == 1

    again = client.post("/payments/check-payment", json={"transaction_id": "TXN123"}).json()
    assert again["success"] is False
    assert again["payment_verified"] is False
    assert again["message"] == "Payment not found"


def test_manual_verification(client, store):
    client.post("/payments/create-payment", json={"transaction_id": "TXN9", "amount": 500, "user_data": {}})

    assert client.post("/payments/verify-manual", json={"transaction_id": "TXN9"}).json()["success"] is True
    assert store.get("TXN9").verified
    assert client.post("/payments/verify-manual", json={"transaction_id": "nope"}).status_code == 404


def test_webhook_for_unknown_transaction_is_acknowledged(client, store):
    resp = client.post("/payments/webhook/payment-success", json={"transaction_id": "ghost"})
    assert resp.status_code == 200
    assert resp.json() == {"success": True}
    assert store.get("ghost") is None


def test_rejects_sub_paise_amounts(client, seed):
    persons = [
        {"name": "Guest", "category_id": seed.accompanying_category_id, "slab_id": seed.slab_id, "amount": "0.005"},
    ]
    resp = client.post(
        "/registrations", json=registration_body(seed, amount=0, additional_persons=persons), headers=as_user(seed.user_id),
    )
    assert resp.status_code == 422
    assert client.post(
        "/registrations", json=registration_body(seed, amount="10.999"), headers=as_user(seed.user_id),
    ).status_code == 422
    with database.SessionLocal() as session:
        assert session.query(models.Registration).count() == 0


def test_create_payment_rejects_bad_application(client, store):
    resp = client.post("/payments/create-payment", json={
        "transaction_id": "TXN10", "amount": 500, "user_data": {"name": "Meera Sinha", "age": "thirty"},
    })

    assert resp.status_code == 400
    detail = resp.json()["detail"]
    assert detail["message"] == "Invalid membership application"
    assert [e["field"] for e in detail["errors"]] == ["age"]
    assert store.get("TXN10") is None

    too_long = client.post("/payments/create-payment", json={
        "transaction_id": "TXN10", "user_data": {"mobile": "9" * 21},
    })
    assert too_long.status_code == 400


def test_create_payment_normalizes_application(client, store):
    resp = client.post("/payments/create-payment", json={
        "transaction_id": "TXN11", "amount": "500.00",
        "user_data": {"name": "Meera Sinha", "age": "34", "year_passing": 2015, "referral": "camp"},
    })

    assert resp.status_code == 200
    payload = store.get("TXN11").payload
    assert payload["age"] == 34
    assert payload["year_passing"] == "2015"
    assert payload["referral"] == "camp"

    blank = client.post("/payments/create-payment", json={"transaction_id": "TXN12", "user_data": {"age": ""}})
    assert blank.status_code == 200
    assert store.get("TXN12").payload["age"] is None


def test_membership_with_unreadable_age_still_completes(client, store):
    # entries can reach the store without the HTTP form check, e.g. from older clients
    store.create("TXN13", Decimal("500"), {"name": "Meera Sinha", "age": "thirty"})
    client.post("/payments/webhook/payment-success", json={"transaction_id": "TXN13", "upi_ref": "UPI-13"})

    verified = client.post("/payments/check-payment", json={"transaction_id": "TXN13"}).json()

    assert verified["payment_verified"] is True
    with database.SessionLocal() as session:
        assert session.get(models.MembershipRegistration, verified["registration_id"]).age is None
    assert client.post("/payments/check-payment", json={"transaction_id": "TXN13"}).json()["success"] is False
