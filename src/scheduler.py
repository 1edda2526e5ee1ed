"""Background jobs: stale cart hold release and delivered-order payouts."""

import os
from datetime import timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from src.admin_handlers import release_payout
from src.checkout_handlers import cart_hold_minutes
from src.db.orders import release_stale_holds
from src.models.order import OrderStatus
from src.utils import clock
from src.utils.logger import log_database_operation, scheduler_logger
from src.utils.supabase import supabase_get_rows

PAYOUT_DELAY_DAYS = 3


# ==============================================================================
# JOBS
# ==============================================================================


async def release_stale_cart_holds() -> int:
    """IN_CART listings whose hold is older than CART_HOLD_MINUTES go back to ACTIVE."""
    cutoff = clock.iso(clock.utcnow() - timedelta(minutes=cart_hold_minutes()))
    released = release_stale_holds(cutoff)
    if released:
        log_database_operation(scheduler_logger, "released", len(released), "listings")
    return len(released)


async def release_delivered_payouts() -> dict:
    """Pay sellers for orders delivered more than PAYOUT_DELAY_DAYS ago."""
    cutoff = clock.iso(clock.utcnow() - timedelta(days=PAYOUT_DELAY_DAYS))
    orders = supabase_get_rows(
        "orders",
        {
            "status": OrderStatus.DELIVERED.value,
            "payout_at": {"is": "null"},
            "delivered_at": {"lt": cutoff},
        },
    )

    results = {"paid": 0, "failed": 0}
    for order in orders:
        try:
            await release_payout(order)
            results["paid"] += 1
        except Exception as e:
            results["failed"] += 1
            scheduler_logger.error(f"   ❌ Payout for {order.get('id')} failed: {e}")

    if orders:
        scheduler_logger.info(
            f"💸 Payout run: {results['paid']} paid, {results['failed']} failed"
        )
    return results


# ==============================================================================
# SCHEDULER CLASS
# ==============================================================================


class OrderScheduler:
    """Runs the order housekeeping jobs inside the API process."""

    def __init__(self):
        self.scheduler = AsyncIOScheduler()

    def start(self):
        self.scheduler.add_job(
            release_stale_cart_holds,
            IntervalTrigger(minutes=5),
            id="release_stale_cart_holds",
            name="Release stale cart holds",
            replace_existing=True,
        )
        self.scheduler.add_job(
            release_delivered_payouts,
            CronTrigger(hour=9, minute=0),
            id="release_delivered_payouts",
            name="Release delivered payouts",
            replace_existing=True,
        )
        self.scheduler.start()
        scheduler_logger.info("📅 Order scheduler started (holds every 5m, payouts 09:00 UTC)")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown()
            scheduler_logger.info("⏹️  Order scheduler stopped")


order_scheduler = OrderScheduler()


def scheduler_enabled() -> bool:
    return (os.environ.get("SCHEDULER_ENABLED") or "true").lower() not in ("0", "false", "no")


def start_order_scheduler():
    order_scheduler.start()


def stop_order_scheduler():
    order_scheduler.stop()
