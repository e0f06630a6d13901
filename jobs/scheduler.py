"""
Monetization Background Job Scheduler

Four jobs share the API's event loop:
1. Outbox drain - confirmation and withdrawal emails (every OUTBOX_PROCESSING_INTERVAL seconds)
2. Payment reconciliation - stale pending mobile money payments (every PENDING_PAYMENT_POLL_INTERVAL seconds)
3. Entitlement expiry - marks lapsed access windows expired (hourly)
4. Withdrawal reconciliation - payouts of unknown outcome and stuck approval claims (every WITHDRAWAL_RECONCILE_INTERVAL seconds)
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from services.entitlement_service import get_entitlement_service
from services.outbox_service import get_outbox_service
from services.payment_reconciler import get_payment_reconciler
from services.withdrawal_service import get_withdrawal_service

logger = logging.getLogger(__name__)


async def run_outbox_drain():
    """Deliver queued emails"""
    try:
        return await get_outbox_service().drain()
    except Exception as e:
        logger.error(f"❌ OUTBOX_JOB: drain failed - {e}")


async def run_payment_reconciliation():
    """Poll pending mobile money payments the gateway never called back about"""
    try:
        return await get_payment_reconciler().reconcile_stale_payments()
    except Exception as e:
        logger.error(f"❌ RECONCILE_JOB: sweep failed - {e}")


async def run_entitlement_expiry():
    try:
        return get_entitlement_service().expire_stale()
    except Exception as e:
        logger.error(f"❌ ENTITLEMENT_EXPIRY_JOB: sweep failed - {e}")


async def run_withdrawal_reconciliation():
    """Check unconfirmed creator payouts with the gateway"""
    try:
        return await get_withdrawal_service().reconcile_claimed_withdrawals()
    except Exception as e:
        logger.error(f"❌ WITHDRAWAL_RECONCILE_JOB: sweep failed - {e}")


class MonetizationScheduler:
    def __init__(self):
        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Prevent job pileup
            'max_instances': 1,
            'misfire_grace_time': 60
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        start = datetime.now(timezone.utc).replace(microsecond=0) + timedelta(seconds=5)

        self.scheduler.add_job(
            run_outbox_drain,
            trigger=IntervalTrigger(seconds=Config.OUTBOX_PROCESSING_INTERVAL, start_date=start),
            id="outbox_drain",
            name="📤 Outbox Drain - Payment & Withdrawal Emails",
            replace_existing=True
        )
        logger.info(f"✅ Outbox drain scheduled every {Config.OUTBOX_PROCESSING_INTERVAL} seconds")

        self.scheduler.add_job(
            run_payment_reconciliation,
            trigger=IntervalTrigger(seconds=Config.PENDING_PAYMENT_POLL_INTERVAL, start_date=start + timedelta(seconds=10)),
            id="payment_reconciliation",
            name="🔁 Payment Reconciliation - Stale Pending Payments",
            replace_existing=True
        )
        logger.info(f"✅ Payment reconciliation scheduled every {Config.PENDING_PAYMENT_POLL_INTERVAL} seconds")

        self.scheduler.add_job(
            run_entitlement_expiry,
            trigger=IntervalTrigger(hours=1, start_date=start + timedelta(seconds=20)),
            id="entitlement_expiry",
            name="⌛ Entitlement Expiry Sweep",
            replace_existing=True
        )
        logger.info("✅ Entitlement expiry sweep scheduled hourly")

        self.scheduler.add_job(
            run_withdrawal_reconciliation,
            trigger=IntervalTrigger(seconds=Config.WITHDRAWAL_RECONCILE_INTERVAL, start_date=start + timedelta(seconds=30)),
            id="withdrawal_reconciliation",
            name="💸 Withdrawal Reconciliation - Unconfirmed Payouts",
            replace_existing=True
        )
        logger.info(f"✅ Withdrawal reconciliation scheduled every {Config.WITHDRAWAL_RECONCILE_INTERVAL} seconds")

    def job_summary(self) -> List[Dict[str, Any]]:
        summary = []
        for job in self.scheduler.get_jobs():
            # Jobs added before start() have no next_run_time yet
            next_run = getattr(job, "next_run_time", None)
            summary.append({
                "id": job.id,
                "name": job.name,
                "nextRun": next_run.isoformat() if next_run else None,
            })
        return summary

    def start(self):
        self.setup_jobs()
        self.scheduler.start()
        logger.info(f"📋 Active jobs: {[job['id'] for job in self.job_summary()]}")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("📴 Monetization job scheduler stopped")
