import asyncio
from datetime import datetime, timedelta, timezone

from src.scheduler import release_delivered_payouts, release_stale_cart_holds, scheduler_enabled
from src.utils import clock

NOW = datetime(2026, 3, 20, 9, 0, 0, 500000, tzinfo=timezone.utc)


def _ago(**delta):
    return clock.iso(NOW - timedelta(**delta))


# ---------- cart holds ----------

def test_stale_holds_are_released(db, clock_at):
    clock_at(NOW)
    db.seed(
        "listings",
        {"id": "lst_stale", "status": "IN_CART", "cart_hold_user_id": "usr_a", "cart_hold_at": _ago(minutes=20)},
        {"id": "lst_fresh", "status": "IN_CART", "cart_hold_user_id": "usr_b", "cart_hold_at": _ago(minutes=5)},
        {"id": "lst_sold", "status": "SOLD", "cart_hold_at": _ago(minutes=50)},
    )

    assert asyncio.run(release_stale_cart_holds()) == 1

    stale = db.row("listings", id="lst_stale")
    assert stale["status"] == "ACTIVE"
    assert stale["cart_hold_user_id"] is None
    assert db.row("listings", id="lst_fresh")["status"] == "IN_CART"
    assert db.row("listings", id="lst_sold")["status"] == "SOLD"


def test_hold_minutes_configurable(db, clock_at, monkeypatch):
    clock_at(NOW)
    monkeypatch.setenv("CART_HOLD_MINUTES", "3")
    db.seed("listings", {"id": "lst_1", "status": "IN_CART", "cart_hold_at": _ago(minutes=5)})
    assert asyncio.run(release_stale_cart_holds()) == 1


# ---------- payouts ----------

def test_payouts_run_for_orders_delivered_three_days_ago(db, clock_at, stripe_api):
    clock_at(NOW)
    db.seed("profiles", {"id": "usr_seller", "stripe_account_id": "acct_seller"})
    base = {"status": "DELIVERED", "seller_id": "usr_seller", "subtotal_cents": 2000, "seller_splits": {"usr_seller": 1740}}
    db.seed(
        "orders",
        dict(base, id="HM-OLD", delivered_at=_ago(days=4)),
        dict(base, id="HM-NEW", delivered_at=_ago(days=1)),
        dict(base, id="HM-PAID", delivered_at=_ago(days=5), payout_at=_ago(days=1)),
    )

    result = asyncio.run(release_delivered_payouts())
    assert result == {"paid": 1, "failed": 0}

    assert [t["transfer_group"] for t in stripe_api.transfers] == ["HM-OLD"]
    assert db.row("orders", id="HM-OLD")["status"] == "COMPLETE"
    assert db.row("orders", id="HM-NEW")["status"] == "DELIVERED"


def test_payout_failures_are_counted_not_raised(db, clock_at, stripe_api):
    clock_at(NOW)
    db.seed(
        "orders",
        {"id": "HM-1", "status": "DELIVERED", "seller_id": "usr_nobody", "subtotal_cents": 2000, "delivered_at": _ago(days=4)},
    )
    assert asyncio.run(release_delivered_payouts()) == {"paid": 0, "failed": 1}
    assert stripe_api.transfers == []


# ---------- config ----------

def test_scheduler_enabled_flag(monkeypatch):
    monkeypatch.setenv("SCHEDULER_ENABLED", "false")
    assert scheduler_enabled() is False
    monkeypatch.setenv("SCHEDULER_ENABLED", "0")
    assert scheduler_enabled() is False
    monkeypatch.delenv("SCHEDULER_ENABLED")
    assert scheduler_enabled() is True
