"""
Settlement Background Scheduler

Three sweeps keep transactions moving when nobody acts on them:
1. Auto-Release - pays out escrows whose auto-release date has passed
2. Auto-Complete - closes transactions 48 hours after funds were released
3. Quality Reminders - nudges buyers who have not assessed a delivery

Each sweep handles transactions one at a time through the same services the
API uses, so a failure on one transaction never blocks the rest of the batch.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import Config, SettlementPolicy
from database import async_managed_session
from models import NotificationType, Transaction, TransactionStatus
from services.fund_release_service import FundReleaseService
from services.transaction_orchestrator import TransactionOrchestrator, get_transaction_orchestrator
from utils.datetime_helpers import utc_now
from utils.exceptions import SettlementError
from utils.transaction_state_validator import QUALITY_ASSESSABLE_STATES

logger = logging.getLogger(__name__)


class SweepResult:
    """Counters for one sweep run"""

    def __init__(self, name: str):
        self.name = name
        self.checked = 0
        self.processed = 0
        self.skipped = 0
        self.errors: List[str] = []

    def add_error(self, error: str):
        self.errors.append(error)
        logger.error(f"❌ {self.name.upper()}_ERROR: {error}")

    def get_summary(self) -> Dict[str, Any]:
        return {
            "sweep": self.name,
            "checked": self.checked,
            "processed": self.processed,
            "skipped": self.skipped,
            "errors": len(self.errors),
        }


class SettlementSweeps:
    """The work each scheduled job performs"""

    def __init__(
        self,
        orchestrator: Optional[TransactionOrchestrator] = None,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
        policy: Optional[SettlementPolicy] = None,
        batch_size: Optional[int] = None,
    ):
        self.orchestrator = orchestrator or get_transaction_orchestrator()
        self.session_factory = session_factory or self.orchestrator.session_factory
        self.policy = policy or self.orchestrator.policy
        self.batch_size = batch_size or Config.SETTLEMENT_SWEEP_BATCH_SIZE

    async def run_auto_release(self, now: Optional[datetime] = None) -> SweepResult:
        """Release every held escrow whose deadline passed while the buyer holds the goods"""
        now = now or utc_now()
        result = SweepResult("auto_release")

        async with async_managed_session(self.session_factory) as session:
            due_ids = await self.orchestrator.ledger.find_due_for_auto_release(session, now, self.batch_size)
        result.checked = len(due_ids)

        for transaction_id in due_ids:
            try:
                await self.orchestrator.fund_release.release(
                    transaction_id,
                    None,
                    FundReleaseService.DEADLINE_RELEASE_REASON,
                    now=now,
                    automatic=True,
                )
                result.processed += 1
            except SettlementError as e:
                # Another path got there first or the transaction moved on
                result.skipped += 1
                logger.info(f"⏭️ AUTO_RELEASE: Skipped transaction {transaction_id}: {e.message}")
            except Exception as e:
                result.add_error(f"Transaction {transaction_id}: {e}")

        if result.checked:
            logger.info(f"⏰ AUTO_RELEASE: {result.get_summary()}")
        return result

    async def run_auto_complete(self, now: Optional[datetime] = None) -> SweepResult:
        """Complete transactions whose funds were released more than AUTO_COMPLETE_HOURS ago"""
        now = now or utc_now()
        result = SweepResult("auto_complete")
        cutoff = now - timedelta(hours=self.policy.auto_complete_hours)

        async with async_managed_session(self.session_factory) as session:
            rows = await session.execute(
                select(Transaction.id)
                .where(
                    Transaction.status == TransactionStatus.FUNDS_RELEASED.value,
                    Transaction.funds_released_at <= cutoff,
                )
                .order_by(Transaction.funds_released_at)
                .limit(self.batch_size)
            )
            due_ids = list(rows.scalars().all())
        result.checked = len(due_ids)

        for transaction_id in due_ids:
            try:
                await self.orchestrator.complete(transaction_id, None)
                result.processed += 1
            except SettlementError as e:
                result.skipped += 1
                logger.info(f"⏭️ AUTO_COMPLETE: Skipped transaction {transaction_id}: {e.message}")
            except Exception as e:
                result.add_error(f"Transaction {transaction_id}: {e}")

        if result.checked:
            logger.info(f"🏁 AUTO_COMPLETE: {result.get_summary()}")
        return result

    async def run_quality_reminders(self, now: Optional[datetime] = None) -> SweepResult:
        """Remind buyers once when a delivery has waited QUALITY_REMINDER_DAYS for assessment"""
        now = now or utc_now()
        result = SweepResult("quality_reminders")
        cutoff = now - timedelta(days=self.policy.quality_reminder_days)

        async with async_managed_session(self.session_factory) as session:
            rows = await session.execute(
                select(Transaction.id, Transaction.buyer_id)
                .where(
                    Transaction.status.in_([s.value for s in QUALITY_ASSESSABLE_STATES]),
                    Transaction.delivery_confirmed_at <= cutoff,
                    Transaction.quality_reminder_sent_at.is_(None),
                )
                .limit(self.batch_size)
            )
            pending = list(rows.all())
        result.checked = len(pending)

        for transaction_id, buyer_id in pending:
            try:
                async with async_managed_session(self.session_factory) as session:
                    claimed = await session.execute(
                        update(Transaction)
                        .where(
                            Transaction.id == transaction_id,
                            Transaction.quality_reminder_sent_at.is_(None),
                        )
                        .values(quality_reminder_sent_at=now)
                        .execution_options(synchronize_session=False)
                    )
                if claimed.rowcount == 0:
                    result.skipped += 1
                    continue

                await self.orchestrator.side_effects.notify(
                    buyer_id,
                    NotificationType.QUALITY_ASSESSMENT,
                    "Quality Assessment Reminder",
                    f"Please assess the goods delivered for transaction {transaction_id}. "
                    f"Funds release automatically once the escrow deadline passes.",
                    transaction_id,
                )
                result.processed += 1
            except Exception as e:
                result.add_error(f"Transaction {transaction_id}: {e}")

        if result.checked:
            logger.info(f"🔔 QUALITY_REMINDERS: {result.get_summary()}")
        return result


class SettlementScheduler:
    """
    APScheduler wrapper for the settlement sweeps.

    All three sweeps share one interval, staggered by a few seconds so they
    do not contend for the same rows.
    """

    def __init__(self, sweeps: Optional[SettlementSweeps] = None, interval_minutes: Optional[int] = None):
        self.sweeps = sweeps or SettlementSweeps()
        self.interval_minutes = interval_minutes or Config.SETTLEMENT_SWEEP_INTERVAL_MINUTES

        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Prevent job pileup
            'max_instances': 1,  # Single instance enforcement
            'misfire_grace_time': 120
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        """Register the settlement sweeps"""
        start = datetime.now().replace(microsecond=0)

        if Config.AUTO_RELEASE_ENABLED:
            self.scheduler.add_job(
                self.sweeps.run_auto_release,
                trigger=IntervalTrigger(minutes=self.interval_minutes, start_date=start.replace(second=5)),
                id="settlement_auto_release",
                name="⏰ Escrow Auto-Release - Deadline Payouts",
                replace_existing=True
            )
            logger.info(f"✅ Escrow Auto-Release scheduled every {self.interval_minutes} minutes")
        else:
            logger.warning("🚫 AUTO_RELEASE: Disabled by configuration")

        self.scheduler.add_job(
            self.sweeps.run_auto_complete,
            trigger=IntervalTrigger(minutes=self.interval_minutes, start_date=start.replace(second=20)),
            id="settlement_auto_complete",
            name="🏁 Auto-Complete - Close Released Transactions",
            replace_existing=True
        )
        logger.info(f"✅ Auto-Complete scheduled every {self.interval_minutes} minutes")

        self.scheduler.add_job(
            self.sweeps.run_quality_reminders,
            trigger=IntervalTrigger(minutes=self.interval_minutes, start_date=start.replace(second=35)),
            id="settlement_quality_reminders",
            name="🔔 Quality Reminders - Pending Assessments",
            replace_existing=True
        )
        logger.info(f"✅ Quality Reminders scheduled every {self.interval_minutes} minutes")

    def start(self):
        self.setup_jobs()
        self.scheduler.start()
        job_names = [f"{job.name} ({job.id})" for job in self.scheduler.get_jobs()]
        logger.info(f"📋 Active settlement jobs: {job_names}")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("📴 Settlement scheduler stopped")


__all__ = [
    "SettlementScheduler",
    "SettlementSweeps",
    "SweepResult",
]
