import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

from config import get_settings
from models import Frequency, MonthDayPolicy, RecurringTransaction
from store import DuplicateInstance, RecurrenceStore, StorageError


logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


def as_naive_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def period_date(cursor: datetime) -> date:
    """Calendar date a ``next_run_at`` cursor stands for."""
    return cursor.date()


def cursor_for(on_date: date) -> datetime:
    return datetime.combine(on_date, time.min)


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(base: date, months: int, *, desired_day: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    return date(year, month, min(desired_day, days_in_month(year, month)))


def calculate_next_date(
    current: date,
    frequency: Union[Frequency, str],
    interval_count: int,
    *,
    anchor_day: Optional[int] = None,
) -> date:
    """Date of the occurrence ``interval_count`` units after ``current``.

    Month and year steps that land on a day the target month lacks are
    clamped to its last day (Jan 31 + 1 month is Feb 28/29). Without
    ``anchor_day`` the step starts from ``current.day``, so a clamp carries
    forward into later months; with it, each step aims for ``anchor_day``.
    """
    if interval_count < 1:
        raise ValueError(f"Invalid interval count: {interval_count}")
    try:
        unit = Frequency(frequency)
    except ValueError:
        raise ValueError(f"Unsupported frequency: {frequency!r}") from None

    if unit == Frequency.daily:
        return current + timedelta(days=interval_count)
    if unit == Frequency.weekly:
        return current + timedelta(weeks=interval_count)

    desired_day = anchor_day or current.day
    if unit == Frequency.monthly:
        return _add_months(current, interval_count, desired_day=desired_day)
    return _add_months(current, 12 * interval_count, desired_day=desired_day)


def base_amount_for(rule: RecurringTransaction) -> Decimal:
    rate = Decimal(str(rule.exchange_rate or 1))
    amount = Decimal(str(rule.amount)) * rate
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass
class RuleOutcome:
    rule_id: int
    next_run_at: datetime
    generated: int = 0
    skipped: int = 0
    advanced: int = 0
    deactivated: bool = False
    capped: bool = False
    error: Optional[str] = None


class OccurrenceGenerator:
    """Catches a single rule up to ``now``.

    Each due period is checked against storage and materialized at most
    once, then the cursor moves to the next period. Termination by
    occurrence limit or end date deactivates the rule. A storage error stops
    the rule at the failing period so the next run retries it.
    """

    def __init__(
        self, store: RecurrenceStore, *, max_periods: Optional[int] = None
    ) -> None:
        self.store = store
        self.max_periods = max_periods or get_settings().max_periods_per_rule

    def process(self, rule: RecurringTransaction, now: datetime) -> RuleOutcome:
        now = as_naive_utc(now)
        outcome = RuleOutcome(rule_id=rule.id, next_run_at=rule.next_run_at)
        if not rule.is_active:
            return outcome

        try:
            self._validate_schedule(rule)
        except ValueError as exc:
            logger.error(f"recurring_rule_invalid: rule={rule.id} error={exc}")
            outcome.error = str(exc)
            return outcome

        anchor_day = (
            rule.start_date.day
            if rule.month_day_policy == MonthDayPolicy.anchor
            else None
        )
        created_before = rule.occurrences_created or 0
        cursor = rule.next_run_at

        try:
            while cursor <= now:
                if outcome.advanced >= self.max_periods:
                    logger.warning(
                        f"recurring_rule_capped: rule={rule.id} "
                        f"periods={outcome.advanced} next={cursor.date()}"
                    )
                    outcome.capped = True
                    break

                if (
                    rule.occurrences_limit
                    and created_before + outcome.generated >= rule.occurrences_limit
                ):
                    self._deactivate(rule, outcome, "occurrence limit reached")
                    break

                on_date = period_date(cursor)
                if rule.end_date and on_date > rule.end_date:
                    self._deactivate(rule, outcome, "end date passed")
                    break

                if self.store.exists_instance_for_period(rule.id, on_date):
                    outcome.skipped += 1
                else:
                    try:
                        self.store.insert_instance(
                            rule, on_date, base_amount_for(rule)
                        )
                    except DuplicateInstance:
                        logger.warning(
                            f"recurring_instance_raced: rule={rule.id} date={on_date}"
                        )
                        outcome.skipped += 1
                    else:
                        outcome.generated += 1

                cursor = cursor_for(
                    calculate_next_date(
                        on_date,
                        rule.frequency,
                        rule.interval_count,
                        anchor_day=anchor_day,
                    )
                )
                outcome.advanced += 1
        except StorageError as exc:
            logger.error(
                f"recurring_rule_failed: rule={rule.id} date={cursor.date()} error={exc}"
            )
            outcome.error = str(exc)

        if outcome.advanced:
            self.store.persist_rule_advance(rule.id, cursor, now, outcome.generated)
        outcome.next_run_at = cursor
        return outcome

    def _validate_schedule(self, rule: RecurringTransaction) -> None:
        # One step up front so a bad schedule fails before anything is written.
        calculate_next_date(rule.start_date, rule.frequency, rule.interval_count)

    def _deactivate(
        self, rule: RecurringTransaction, outcome: RuleOutcome, reason: str
    ) -> None:
        self.store.deactivate_rule(rule.id)
        outcome.deactivated = True
        logger.info(f"recurring_rule_deactivated: rule={rule.id} reason={reason}")
