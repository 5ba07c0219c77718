"""
scheduler_setup.py
------------------
APScheduler wiring for the credit ledger retention sweeps.

SCHEDULE (interval jobs):
  every 5 min  -> pending orders older than the retention window become expired
  every 15 min -> generation task records past expire_at are deleted
  every 10 min -> accounts past expires_at are expired (balance forfeited once)

The lapsed-account sweep is a backstop. The Entitlement Guard expires an
account the first time it sees it lapsed, so the sweep only catches accounts
nobody has touched since their plan ran out.

STARTUP USAGE:
    from credit_ledger.scheduler_setup import setup_scheduler
    scheduler = AsyncIOScheduler()
    setup_scheduler(scheduler, db)
    scheduler.start()
"""

import logging

from apscheduler.triggers.interval import IntervalTrigger

from .account_store import AccountStore
from .errors import LedgerError
from .pending_orders import PendingOrderStore
from .settlement import SettlementEngine
from .task_store import TaskStore
from .timestamps import utc_now

logger = logging.getLogger(__name__)


def setup_scheduler(scheduler, db) -> None:
    """
    Register the sweep jobs with the provided APScheduler instance.

    Call this BEFORE scheduler.start().
    """
    scheduler.add_job(
        make_pending_order_sweep(db),
        IntervalTrigger(minutes=5),
        id="pending_order_expiry",
        replace_existing=True,
        misfire_grace_time=300,
    )

    scheduler.add_job(
        make_task_record_sweep(db),
        IntervalTrigger(minutes=15),
        id="task_record_ttl",
        replace_existing=True,
        misfire_grace_time=600,
    )

    scheduler.add_job(
        make_lapsed_account_sweep(db),
        IntervalTrigger(minutes=10),
        id="lapsed_account_expiry",
        replace_existing=True,
        misfire_grace_time=600,
    )

    logger.info("Ledger scheduler registered: orders@5m | tasks@15m | lapsed accounts@10m")


# ---------------------------------------------------------------------------
# Job factories
# ---------------------------------------------------------------------------

def make_pending_order_sweep(db):
    async def pending_order_sweep():
        try:
            expired = await PendingOrderStore(db).expire_stale()
            if expired:
                logger.info("[SWEEP] %d pending order(s) expired", expired)
        except Exception as e:
            logger.error("[SWEEP] Pending order sweep failed: %s", e, exc_info=True)

    return pending_order_sweep


def make_task_record_sweep(db):
    async def task_record_sweep():
        try:
            await TaskStore(db).purge_expired()
        except Exception as e:
            logger.error("[SWEEP] Task record sweep failed: %s", e, exc_info=True)

    return task_record_sweep


def make_lapsed_account_sweep(db):
    """
    Expires every account whose plan has run out. One failing account does
    not stop the rest of the batch.
    """
    async def lapsed_account_sweep():
        try:
            lapsed = await AccountStore(db).find_lapsed(utc_now())
        except Exception as e:
            logger.error("[SWEEP] Lapsed account scan failed: %s", e, exc_info=True)
            return

        engine = SettlementEngine(db)
        expired = 0
        for account in lapsed:
            try:
                if await engine.expire(account.account_id) is not None:
                    expired += 1
            except LedgerError as e:
                logger.warning("[SWEEP] Could not expire %s: %s", account.account_id, e.message)

        if expired:
            logger.info("[SWEEP] %d lapsed account(s) expired", expired)

    return lapsed_account_sweep
