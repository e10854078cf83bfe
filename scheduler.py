import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from balances import BalanceService
from config import get_settings
from database import session_scope
from events import EventBus
from recurrence import RecurringEngine

logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, events: Optional[EventBus] = None) -> None:
        settings = get_settings()
        self.events = events or EventBus()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_recurring(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: job=recurring source={source}")
        with session_scope() as session:
            count = RecurringEngine(session, self.events).post_due()
        logger.info(
            f"scheduler_run: job=recurring source={source} occurrences_posted={count}"
        )

    def _run_reconcile(self, source: str = "manual") -> None:
        with session_scope() as session:
            result = BalanceService(session).reconcile_account_balances()
        logger.info(
            f"scheduler_run: job=reconcile source={source} "
            f"accounts={result['total']} fixed={result['fixed']}"
        )

    def _run_budget_reset(self, source: str = "manual") -> None:
        with session_scope() as session:
            count = BalanceService(session).reset_budget_periods()
        logger.info(
            f"scheduler_run: job=budget_reset source={source} budgets_reset={count}"
        )

    def start(self) -> None:
        self._run_recurring("startup")
        self._run_budget_reset("startup")

        self.scheduler.add_job(
            self._run_recurring,
            CronTrigger(hour=3, minute=15),
            args=["daily_03:15"],
            id="recurring_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self._run_recurring,
            IntervalTrigger(hours=1),
            args=["hourly_safety_net"],
            id="recurring_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )
        self.scheduler.add_job(
            self._run_reconcile,
            CronTrigger(hour=2, minute=30),
            args=["nightly_02:30"],
            id="reconcile_nightly",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self._run_budget_reset,
            CronTrigger(day=1, hour=0, minute=5),
            args=["monthly"],
            id="budget_reset_monthly",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info(
            "Scheduler started with recurring posting, nightly reconcile "
            "and monthly budget reset"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
