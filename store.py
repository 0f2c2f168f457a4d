"""Persistence boundary for the recurring-transaction engine.

The engine talks to storage only through the narrow contract of
``RecurrenceStore``. ``SqlAlchemyRecurrenceStore`` implements it on top of a
SQLAlchemy session; every check runs against the database so that two
overlapping runs (a browser session and the cron trigger) see each other's
inserts.

Due rules are listed by id and loaded one at a time with a fresh read, so
a row that fails to load only fails its own rule, and a rule another run
already advanced is seen with its current cursor and count.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Optional, Protocol

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from models import RecurringTransaction, Transaction


class RecurrenceError(Exception):
    pass


class StorageError(RecurrenceError):
    """Transient storage failure; the affected rule is retried on the next run."""


class DuplicateInstance(RecurrenceError):
    """An instance for (rule, date) was created concurrently by another run."""


class RecurrenceStore(Protocol):
    def fetch_due_rule_ids(
        self, now: datetime, user_id: Optional[int] = None
    ) -> list[int]: ...

    def claim_rule(
        self, rule_id: int, now: datetime
    ) -> Optional[RecurringTransaction]: ...

    def exists_instance_for_period(self, rule_id: int, on_date: date) -> bool: ...

    def insert_instance(
        self, rule: RecurringTransaction, on_date: date, base_amount: Decimal
    ) -> int: ...

    def persist_rule_advance(
        self,
        rule_id: int,
        next_run_at: datetime,
        last_run_at: datetime,
        generated: int,
    ) -> None: ...

    def deactivate_rule(self, rule_id: int) -> None: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...


class SqlAlchemyRecurrenceStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def fetch_due_rule_ids(
        self, now: datetime, user_id: Optional[int] = None
    ) -> list[int]:
        stmt = select(RecurringTransaction.id).where(
            RecurringTransaction.is_active.is_(True),
            RecurringTransaction.next_run_at <= now,
        )
        if user_id is not None:
            stmt = stmt.where(RecurringTransaction.user_id == user_id)
        stmt = stmt.order_by(RecurringTransaction.next_run_at, RecurringTransaction.id)
        try:
            return list(self.session.scalars(stmt).all())
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to fetch due recurring rules: {exc}") from exc

    def claim_rule(
        self, rule_id: int, now: datetime
    ) -> Optional[RecurringTransaction]:
        """Reload a due rule under a row lock, or ``None`` if it is no longer due.

        The lock holds until the caller commits, so on databases that honour
        ``FOR UPDATE`` a second run waits and then sees the advanced cursor.
        """
        stmt = (
            select(RecurringTransaction)
            .where(
                RecurringTransaction.id == rule_id,
                RecurringTransaction.is_active.is_(True),
                RecurringTransaction.next_run_at <= now,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        try:
            return self.session.scalars(stmt).one_or_none()
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to load recurring rule {rule_id}: {exc}") from exc

    def exists_instance_for_period(self, rule_id: int, on_date: date) -> bool:
        stmt = (
            select(Transaction.id)
            .where(
                Transaction.source_recurring_id == rule_id,
                Transaction.date == on_date,
            )
            .limit(1)
        )
        try:
            existing = self.session.execute(stmt).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise StorageError(
                f"Failed to check existing transaction for {on_date}: {exc}"
            ) from exc
        return existing is not None

    def insert_instance(
        self, rule: RecurringTransaction, on_date: date, base_amount: Decimal
    ) -> int:
        txn = Transaction(
            user_id=rule.user_id,
            title=rule.title,
            date=on_date,
            type=rule.type,
            amount=rule.amount,
            currency_code=rule.currency_code,
            exchange_rate=rule.exchange_rate,
            base_amount=base_amount,
            tags=list(rule.tags or []),
            category_id=rule.category_id,
            source_recurring_id=rule.id,
            is_scheduled=False,
        )
        try:
            with self.session.begin_nested():
                self.session.add(txn)
                self.session.flush()
        except IntegrityError as exc:
            # Unique key lost to a concurrent run, or a genuine constraint failure.
            if self.exists_instance_for_period(rule.id, on_date):
                raise DuplicateInstance(
                    f"Transaction for {on_date} already created by another run"
                ) from exc
            raise StorageError(
                f"Failed to create transaction for {on_date}: {exc.orig}"
            ) from exc
        except SQLAlchemyError as exc:
            raise StorageError(
                f"Failed to create transaction for {on_date}: {exc}"
            ) from exc
        return txn.id

    def persist_rule_advance(
        self,
        rule_id: int,
        next_run_at: datetime,
        last_run_at: datetime,
        generated: int,
    ) -> None:
        """Record a rule's progress relative to what is stored now.

        The count grows by ``generated`` and the cursor only ever moves
        forward, so a run working from a stale copy of the rule cannot undo
        the bookkeeping of a run that finished first.
        """
        column = RecurringTransaction.next_run_at
        stmt = (
            update(RecurringTransaction)
            .where(RecurringTransaction.id == rule_id)
            .values(
                next_run_at=case((column < next_run_at, next_run_at), else_=column),
                last_run_at=last_run_at,
                occurrences_created=RecurringTransaction.occurrences_created
                + generated,
            )
            .execution_options(synchronize_session="fetch")
        )
        try:
            self.session.execute(stmt)
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to advance rule {rule_id}: {exc}") from exc

    def deactivate_rule(self, rule_id: int) -> None:
        stmt = (
            update(RecurringTransaction)
            .where(RecurringTransaction.id == rule_id)
            .values(is_active=False)
        )
        try:
            self.session.execute(stmt)
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to deactivate rule {rule_id}: {exc}") from exc

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()
