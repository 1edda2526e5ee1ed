from src.db.orders import reopen_listing

INTERNAL = {"x-internal-secret": "internal-secret"}


def _mark_sold_body(**overrides):
    body = {
        "order_id": "HM-MS1",
        "listing_id": "lst_1",
        "buyer_id": "usr_buyer",
        "seller_id": "usr_seller",
        "buyer_email": "buyer@example.com",
        "listing_name": "Wool crepe",
        "payment_intent": "pi_ms1",
        "total_cents": 3500,
        "shipping_cents": 500,
    }
    body.update(overrides)
    return body


# ---------- /orders/mark-sold ----------

def test_mark_sold_requires_internal_secret(client, db):
    res = client.post("/api/v1/orders/mark-sold", json=_mark_sold_body())
    assert res.status_code == 401
    assert res.json()["code"] == "unauthorized"

    res = client.post(
        "/api/v1/orders/mark-sold", json=_mark_sold_body(), headers={"x-internal-secret": "nope"}
    )
    assert res.status_code == 401
    assert db.rows("orders") == []


def test_mark_sold_records_paid_order(client, db, notifications):
    db.seed("listings", {"id": "lst_1", "status": "IN_CART", "cart_hold_user_id": "usr_buyer"})

    res = client.post("/api/v1/orders/mark-sold", json=_mark_sold_body(), headers=INTERNAL)
    assert res.status_code == 200, res.text
    assert res.json() == {"ok": True, "order_id": "HM-MS1", "status": "PAID", "duplicate": False}

    order = db.row("orders", id="HM-MS1")
    assert order["status"] == "PAID"
    assert order["subtotal_cents"] == 3000
    assert order["total_cents"] == 3500

    listing = db.row("listings", id="lst_1")
    assert listing["status"] == "SOLD"
    assert listing["cart_hold_user_id"] is None
    assert len(notifications.requests) == 4


def test_mark_sold_twice_is_idempotent(client, db, notifications):
    db.seed("listings", {"id": "lst_1", "status": "ACTIVE"})
    client.post("/api/v1/orders/mark-sold", json=_mark_sold_body(), headers=INTERNAL)
    res = client.post("/api/v1/orders/mark-sold", json=_mark_sold_body(), headers=INTERNAL)

    assert res.status_code == 200
    assert res.json()["duplicate"] is True
    assert len(db.rows("orders")) == 1
    assert len(notifications.requests) == 4


def test_mark_sold_with_another_payment_is_refunded(client, db, stripe_api, notifications):
    db.seed("listings", {"id": "lst_1", "status": "ACTIVE"}, {"id": "lst_2", "status": "ACTIVE"})
    client.post("/api/v1/orders/mark-sold", json=_mark_sold_body(), headers=INTERNAL)

    body = _mark_sold_body(listing_id="lst_2", payment_intent="pi_ms2")
    res = client.post("/api/v1/orders/mark-sold", json=body, headers=INTERNAL)
    assert res.status_code == 200
    assert res.json()["collision"] is True
    assert res.json()["duplicate"] is False

    assert db.row("orders", id="HM-MS1")["stripe_payment_intent"] == "pi_ms1"
    assert db.row("listings", id="lst_2")["status"] == "ACTIVE"
    assert [r["payment_intent"] for r in stripe_api.refunds] == ["pi_ms2"]


# ---------- /cart/hold and /cart/release ----------

def test_hold_and_release_listing(client, db):
    db.seed("listings", {"id": "lst_1", "status": "ACTIVE"})

    res = client.post("/api/v1/cart/hold", json={"listing_id": "lst_1", "user_id": "usr_a"})
    assert res.status_code == 200
    listing = db.row("listings", id="lst_1")
    assert listing["status"] == "IN_CART"
    assert listing["cart_hold_user_id"] == "usr_a"
    assert listing["cart_hold_at"]

    res = client.post("/api/v1/cart/release", json={"listing_id": "lst_1", "user_id": "usr_a"})
    assert res.json() == {"ok": True, "listing_id": "lst_1", "released": True}
    assert db.row("listings", id="lst_1")["status"] == "ACTIVE"


def test_same_user_can_refresh_hold(client, db):
    db.seed("listings", {"id": "lst_1", "status": "IN_CART", "cart_hold_user_id": "usr_a", "cart_hold_at": "old"})
    res = client.post("/api/v1/cart/hold", json={"listing_id": "lst_1", "user_id": "usr_a"})
    assert res.status_code == 200
    assert db.row("listings", id="lst_1")["cart_hold_at"] != "old"


def test_hold_by_another_user_conflicts(client, db):
    db.seed("listings", {"id": "lst_1", "status": "IN_CART", "cart_hold_user_id": "usr_a"})
    res = client.post("/api/v1/cart/hold", json={"listing_id": "lst_1", "user_id": "usr_b"})
    assert res.status_code == 400
    assert res.json()["code"] == "listing_unavailable"
    assert db.row("listings", id="lst_1")["cart_hold_user_id"] == "usr_a"


def test_sold_listing_cannot_be_held(client, db):
    db.seed("listings", {"id": "lst_1", "status": "SOLD"})
    res = client.post("/api/v1/cart/hold", json={"listing_id": "lst_1", "user_id": "usr_a"})
    assert res.status_code == 400


def test_hold_unknown_listing_is_not_found(client, db):
    res = client.post("/api/v1/cart/hold", json={"listing_id": "lst_x", "user_id": "usr_a"})
    assert res.status_code == 404


def test_release_by_other_user_is_ignored(client, db):
    db.seed("listings", {"id": "lst_1", "status": "IN_CART", "cart_hold_user_id": "usr_a"})
    res = client.post("/api/v1/cart/release", json={"listing_id": "lst_1", "user_id": "usr_b"})
    assert res.json()["released"] is False
    assert db.row("listings", id="lst_1")["status"] == "IN_CART"


# ---------- reopening listings ----------

def test_reopen_leaves_a_live_cart_hold_alone(db):
    db.seed("listings", {"id": "lst_1", "status": "IN_CART", "cart_hold_user_id": "usr_other"})
    assert reopen_listing("lst_1", "HM-1") is False
    listing = db.row("listings", id="lst_1")
    assert listing["status"] == "IN_CART"
    assert listing["cart_hold_user_id"] == "usr_other"


def test_reopen_puts_unowned_sold_listing_back_on_sale(db):
    db.seed("listings", {"id": "lst_1", "status": "SOLD"})
    assert reopen_listing("lst_1", "HM-1") is True
    assert db.row("listings", id="lst_1")["status"] == "ACTIVE"
