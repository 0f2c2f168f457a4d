import logging
import time
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from models import utcnow
from recurrence import OccurrenceGenerator, as_naive_utc
from schemas import RunError, RunSummary
from store import RecurrenceStore, SqlAlchemyRecurrenceStore


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)


class SchedulerRun:
    """One pass over every due rule, shared by the interactive and cron triggers.

    Rules are processed one at a time and committed individually, so a
    crash mid-run only leaves the rule in progress to be picked up again.
    A failure on one rule is recorded in the summary and never stops the
    others. Missed or failed periods are retried by the next run; there is
    no other retry mechanism.
    """

    def __init__(
        self,
        store: RecurrenceStore,
        user_id: Optional[int] = None,
        *,
        max_periods: Optional[int] = None,
    ) -> None:
        self.store = store
        self.user_id = user_id
        self.generator = OccurrenceGenerator(store, max_periods=max_periods)

    def run(
        self,
        now: Optional[datetime] = None,
        budget_seconds: Optional[float] = None,
    ) -> RunSummary:
        now = as_naive_utc(now) if now is not None else utcnow()
        started = time.monotonic()
        rule_ids = self.store.fetch_due_rule_ids(now, user_id=self.user_id)
        logger.info(f"recurring_run: now={now.isoformat()} due_rules={len(rule_ids)}")

        summary = RunSummary()
        for index, rule_id in enumerate(rule_ids):
            if (
                budget_seconds is not None
                and time.monotonic() - started >= budget_seconds
            ):
                logger.info(
                    f"recurring_run: budget exhausted, {len(rule_ids) - index} rules left due"
                )
                break

            rule = None
            try:
                rule = self.store.claim_rule(rule_id, now)
                if rule is None:
                    # Advanced or paused by another run since the listing.
                    self.store.commit()
                    logger.info(f"recurring_rule_not_due: rule={rule_id}")
                    continue
                summary.processed += 1
                outcome = self.generator.process(rule, now)
                self.store.commit()
            except Exception as exc:
                self.store.rollback()
                if rule is None:
                    summary.processed += 1
                logger.exception(f"recurring_rule_failed: rule={rule_id}")
                summary.errors.append(RunError(rule_id=rule_id, message=str(exc)))
                continue

            summary.generated += outcome.generated
            summary.skipped += outcome.skipped
            if outcome.deactivated:
                summary.deactivated += 1
            if outcome.error:
                summary.errors.append(RunError(rule_id=rule_id, message=outcome.error))

        logger.info(
            f"recurring_run: processed={summary.processed} generated={summary.generated} "
            f"skipped={summary.skipped} deactivated={summary.deactivated} "
            f"errors={len(summary.errors)}"
        )
        return summary


def run_scheduler(
    now: Optional[datetime] = None,
    *,
    user_id: Optional[int] = None,
    budget_seconds: Optional[float] = None,
) -> RunSummary:
    settings = get_settings()
    if budget_seconds is None:
        budget_seconds = settings.run_budget_secs
    with session_scope() as session:
        run = SchedulerRun(SqlAlchemyRecurrenceStore(session), user_id=user_id)
        return run.run(now, budget_seconds=budget_seconds)


class SchedulerManager:
    def __init__(self) -> None:
        self.settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=self.settings.timezone)

    def _run_job(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: source={source}")
        try:
            summary = run_scheduler()
        except Exception:
            logger.exception(f"scheduler_run: source={source} failed")
            return
        logger.info(
            f"scheduler_run: source={source} generated={summary.generated} "
            f"errors={len(summary.errors)}"
        )

    def start(self) -> None:
        if not self.settings.scheduler_enabled:
            logger.info("Scheduler disabled; relying on external trigger")
            return

        self._run_job("startup")

        hour = self.settings.scheduler_hour
        minute = self.settings.scheduler_minute
        trigger = CronTrigger(hour=hour, minute=minute)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=[f"daily_{hour:02d}:{minute:02d}"],
            id="recurring_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["hourly_safety_net"],
            id="recurring_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with daily {hour:02d}:{minute:02d} and hourly safety net"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
