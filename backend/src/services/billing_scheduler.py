"""
Billing scheduler for recurring batch work.

This scheduler feeds the billing task queue:
1. No-show sweep every 15 minutes
2. Nightly journal run at 1 AM, one task per account with unjournaled details
3. Monthly statements on the 1st at 4 AM for the previous month, one task per account
"""

import asyncio
import logging
from datetime import timedelta
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler  # type: ignore
from apscheduler.triggers.cron import CronTrigger  # type: ignore
from apscheduler.triggers.interval import IntervalTrigger  # type: ignore

from core.constants import (
    BILLING_SCHEDULER_MAX_INSTANCES,
    BILLING_SCHEDULER_MISFIRE_GRACE_SECONDS,
    JOURNAL_BATCH_HOUR,
    MISSED_SWEEP_INTERVAL_MINUTES,
    STATEMENT_RUN_DAY,
    STATEMENT_RUN_HOUR,
)
from core.database import get_db_context
from services.billing_task_queue import (
    TASK_JOURNAL,
    TASK_MISSED_SWEEP,
    TASK_STATEMENT,
    BillingTaskQueue,
    get_billing_task_queue,
)
from services.journal_service import JournalService
from services.statement_service import StatementService
from utils.datetime_utils import FACILITY_TZ, facility_now, previous_month_range

logger = logging.getLogger(__name__)

# Global singleton instance
_billing_scheduler: Optional['BillingScheduler'] = None


class BillingScheduler:
    """
    Scheduler for enqueueing billing batch tasks.

    Jobs only decide what to run and enqueue it; the task queue executes and
    retries. All triggers run in the facility timezone.
    """

    def __init__(self, task_queue: Optional[BillingTaskQueue] = None):
        """
        Initialize the billing scheduler.

        Note: Database sessions are created fresh for each scheduler run
        to avoid stale session issues.
        """
        self.scheduler = AsyncIOScheduler(timezone=FACILITY_TZ)
        self.task_queue = task_queue
        self._is_started = False

    @property
    def queue(self) -> BillingTaskQueue:
        return self.task_queue or get_billing_task_queue()

    async def start_scheduler(self) -> None:
        """
        Start the background scheduler for billing tasks.

        This should be called during application startup, after the task queue
        is started.
        """
        if self._is_started:
            logger.warning("Billing scheduler is already started")
            return

        self.scheduler.add_job(  # type: ignore
            self._run_missed_sweep,
            IntervalTrigger(minutes=MISSED_SWEEP_INTERVAL_MINUTES),
            id="missed_reservation_sweep",
            name="Mark no-show reservations",
            replace_existing=True,
            max_instances=BILLING_SCHEDULER_MAX_INSTANCES,
            misfire_grace_time=BILLING_SCHEDULER_MISFIRE_GRACE_SECONDS,
        )
        self.scheduler.add_job(  # type: ignore
            self._run_nightly_journal,
            CronTrigger(hour=JOURNAL_BATCH_HOUR, minute=0),
            id="nightly_journal",
            name="Nightly journal run",
            replace_existing=True,
            max_instances=BILLING_SCHEDULER_MAX_INSTANCES,
            misfire_grace_time=BILLING_SCHEDULER_MISFIRE_GRACE_SECONDS,
        )
        self.scheduler.add_job(  # type: ignore
            self._run_monthly_statements,
            CronTrigger(day=STATEMENT_RUN_DAY, hour=STATEMENT_RUN_HOUR, minute=0),
            id="monthly_statements",
            name="Monthly statement run",
            replace_existing=True,
            max_instances=BILLING_SCHEDULER_MAX_INSTANCES,
            misfire_grace_time=BILLING_SCHEDULER_MISFIRE_GRACE_SECONDS,
        )

        self.scheduler.start()
        self._is_started = True
        logger.info(
            f"Billing scheduler started (no-show sweep every {MISSED_SWEEP_INTERVAL_MINUTES} min, "
            f"journal at {JOURNAL_BATCH_HOUR}:00, statements on day {STATEMENT_RUN_DAY} at {STATEMENT_RUN_HOUR}:00)"
        )

    async def stop_scheduler(self) -> None:
        """
        Stop the background scheduler.

        This should be called during application shutdown.
        """
        if self._is_started:
            self.scheduler.shutdown(wait=True)
            self._is_started = False
            logger.info("Billing scheduler stopped")

    async def _run_missed_sweep(self) -> None:
        self.queue.submit(TASK_MISSED_SWEEP, at=facility_now())

    async def _run_nightly_journal(self) -> None:
        # Offload the account query so the event loop is not blocked
        await asyncio.to_thread(self.enqueue_journal_tasks)

    async def _run_monthly_statements(self) -> None:
        await asyncio.to_thread(self.enqueue_statement_tasks)

    def enqueue_journal_tasks(self) -> int:
        """
        Queue one journal task per account with details completed through yesterday.

        Returns:
            Number of tasks queued
        """
        as_of = facility_now().date() - timedelta(days=1)
        try:
            with get_db_context() as db:
                account_ids = JournalService.accounts_pending_journal(db, as_of)
        except Exception as e:
            logger.exception(f"Error finding accounts for nightly journal: {e}")
            return 0

        for account_id in account_ids:
            self.queue.submit(TASK_JOURNAL, account_id=account_id, as_of=as_of)
        logger.info(f"Queued {len(account_ids)} journal task(s) as of {as_of}")
        return len(account_ids)

    def enqueue_statement_tasks(self) -> int:
        """
        Queue one statement task per account with unstatemented rows last month.

        Returns:
            Number of tasks queued
        """
        period_start, period_end = previous_month_range(facility_now().date())
        try:
            with get_db_context() as db:
                account_ids = StatementService.accounts_pending_statement(db, period_start, period_end)
        except Exception as e:
            logger.exception(f"Error finding accounts for statement run: {e}")
            return 0

        for account_id in account_ids:
            self.queue.submit(
                TASK_STATEMENT, account_id=account_id, period_start=period_start, period_end=period_end
            )
        logger.info(f"Queued {len(account_ids)} statement task(s) for {period_start} - {period_end}")
        return len(account_ids)


def get_billing_scheduler() -> BillingScheduler:
    """
    Get the global billing scheduler instance.

    Returns:
        BillingScheduler: The global scheduler instance
    """
    global _billing_scheduler
    if _billing_scheduler is None:
        _billing_scheduler = BillingScheduler()
    return _billing_scheduler


async def start_billing_scheduler() -> None:
    """
    Start the global billing scheduler.

    This should be called during application startup.
    """
    scheduler = get_billing_scheduler()
    await scheduler.start_scheduler()


async def stop_billing_scheduler() -> None:
    """
    Stop the global billing scheduler.

    This should be called during application shutdown.
    """
    global _billing_scheduler
    if _billing_scheduler:
        await _billing_scheduler.stop_scheduler()
        _billing_scheduler = None
