import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from services import (
    auto_clear_transactions,
    ensure_pending_for_active_months,
    expire_stale_invites,
)


logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_monthly_pending(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: job=monthly_pending source={source}")
        with session_scope() as session:
            count = ensure_pending_for_active_months(session)
            logger.info(
                f"scheduler_run: job=monthly_pending source={source} created={count}"
            )

    def _run_auto_clear(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: job=auto_clear source={source}")
        with session_scope() as session:
            count = auto_clear_transactions(session)
            logger.info(f"scheduler_run: job=auto_clear source={source} cleared={count}")

    def _run_expire_invites(self, source: str = "manual") -> None:
        with session_scope() as session:
            count = expire_stale_invites(session)
            logger.info(
                f"scheduler_run: job=expire_invites source={source} expired={count}"
            )

    def start(self) -> None:
        self._run_monthly_pending("startup")

        trigger = CronTrigger(hour=3, minute=15)
        self.scheduler.add_job(
            self._run_monthly_pending,
            trigger,
            args=["daily_03:15"],
            id="monthly_pending_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self._run_monthly_pending,
            trigger,
            args=["hourly_safety_net"],
            id="monthly_pending_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )

        trigger = CronTrigger(hour=6, minute=0)
        self.scheduler.add_job(
            self._run_auto_clear,
            trigger,
            args=["daily_06:00"],
            id="auto_clear_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=6)
        self.scheduler.add_job(
            self._run_expire_invites,
            trigger,
            args=["every_6h"],
            id="expire_invites",
            replace_existing=True,
            misfire_grace_time=600,
        )

        self.scheduler.start()
        logger.info(
            "Scheduler started with monthly pending (03:15 + hourly), "
            "auto clear (06:00) and invite expiry (6h)"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
