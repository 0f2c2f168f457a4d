from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session, joinedload

from models import Category, MonthDayPolicy, RecurringTransaction, Transaction
from recurrence import calculate_next_date, cursor_for
from schemas import RecurringRuleIn, RecurringRuleUpdate


TEMPLATE_FIELDS = (
    "title",
    "type",
    "amount",
    "currency_code",
    "exchange_rate",
    "tags",
    "category_id",
    "frequency",
    "interval_count",
    "start_date",
    "end_date",
    "occurrences_limit",
    "month_day_policy",
)


class RuleNotFound(ValueError):
    pass


def get_current_user_id() -> int:
    return 1


class RecurringRuleService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self, rule_id: int) -> RecurringTransaction:
        rule = self.session.get(RecurringTransaction, rule_id)
        if not rule or rule.user_id != self.user_id:
            raise RuleNotFound("Rule not found")
        return rule

    def list(self) -> list[RecurringTransaction]:
        stmt = (
            select(RecurringTransaction)
            .options(joinedload(RecurringTransaction.category))
            .where(RecurringTransaction.user_id == self.user_id)
            .order_by(RecurringTransaction.next_run_at, RecurringTransaction.id)
        )
        return list(self.session.scalars(stmt).all())

    def create(self, data: RecurringRuleIn) -> RecurringTransaction:
        self._check_category(data)
        rule = RecurringTransaction(
            user_id=self.user_id,
            title=data.title,
            type=data.type,
            amount=data.amount,
            currency_code=data.currency_code,
            exchange_rate=data.exchange_rate,
            tags=data.tags,
            category_id=data.category_id,
            frequency=data.frequency,
            interval_count=data.interval_count,
            start_date=data.start_date,
            end_date=data.end_date,
            occurrences_limit=data.occurrences_limit,
            month_day_policy=data.month_day_policy,
            next_run_at=cursor_for(data.start_date),
            occurrences_created=0,
            is_active=True,
        )
        self.session.add(rule)
        self.session.commit()
        self.session.refresh(rule)
        return rule

    def update(self, rule_id: int, data: RecurringRuleUpdate) -> RecurringTransaction:
        """Apply a partial edit, re-validating the rule as a whole.

        Changing the frequency or interval moves the cursor to one new
        interval after the last processing pass, or back to the start date
        for a rule that never ran, and recounts ``occurrences_created`` from
        the instances that actually exist.
        """
        rule = self.get(rule_id)
        changes = data.model_dump(exclude_unset=True)
        current = {field: getattr(rule, field) for field in TEMPLATE_FIELDS}
        merged = RecurringRuleIn.model_validate({**current, **changes})
        if "category_id" in changes or "type" in changes:
            self._check_category(merged)

        reschedule = any(
            field in changes and changes[field] != current[field]
            for field in ("frequency", "interval_count")
        )
        moved_start = changes.get("start_date", rule.start_date) != rule.start_date
        if rule.last_run_at is None and moved_start:
            reschedule = True

        for field in changes:
            setattr(rule, field, getattr(merged, field))
        if reschedule:
            rule.next_run_at = self._rescheduled_cursor(rule)
            rule.occurrences_created = self._count_instances(rule.id)

        self.session.commit()
        self.session.refresh(rule)
        return rule

    def pause(self, rule_id: int) -> RecurringTransaction:
        return self._set_active(rule_id, False)

    def resume(self, rule_id: int) -> RecurringTransaction:
        # The cursor stays where it was; the next run catches up from there.
        return self._set_active(rule_id, True)

    def delete(self, rule_id: int) -> None:
        rule = self.get(rule_id)
        self.session.delete(rule)
        self.session.commit()

    def _check_category(self, data: RecurringRuleIn) -> None:
        if data.category_id is None:
            return
        category = self.session.get(Category, data.category_id)
        if not category or category.user_id != self.user_id:
            raise ValueError("Category not found")
        if category.type != data.type:
            raise ValueError("Category type mismatch")

    def _rescheduled_cursor(self, rule: RecurringTransaction) -> datetime:
        if rule.last_run_at is None:
            return cursor_for(rule.start_date)
        anchor_day = (
            rule.start_date.day
            if rule.month_day_policy == MonthDayPolicy.anchor
            else None
        )
        return cursor_for(
            calculate_next_date(
                rule.last_run_at.date(),
                rule.frequency,
                rule.interval_count,
                anchor_day=anchor_day,
            )
        )

    def _count_instances(self, rule_id: int) -> int:
        stmt = select(func.count(Transaction.id)).where(
            Transaction.source_recurring_id == rule_id
        )
        return self.session.scalar(stmt) or 0

    def _set_active(self, rule_id: int, active: bool) -> RecurringTransaction:
        rule = self.get(rule_id)
        rule.is_active = active
        self.session.commit()
        self.session.refresh(rule)
        return rule
