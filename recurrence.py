import logging
from datetime import date, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database import transactional
from errors import LedgerError
from events import EventBus
from models import IntervalUnit, RecurringTransaction, Transaction
from periods import local_today
from schemas import TransactionIn
from versioning import snapshot_of

logger = logging.getLogger(__name__)


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


def calculate_next_date(rule: RecurringTransaction, from_date: date) -> date:
    """Next occurrence after ``from_date``.

    Monthly and yearly rules keep the anchor's day of month and clamp to the
    last day of shorter months (31st -> 30th/28th -> back to 31st).
    """
    if rule.interval_unit == IntervalUnit.day:
        return from_date + timedelta(days=rule.interval_count)
    if rule.interval_unit == IntervalUnit.week:
        return from_date + timedelta(weeks=rule.interval_count)
    months = rule.interval_count
    if rule.interval_unit == IntervalUnit.year:
        months *= 12
    return _add_months(from_date, months, desired_day=rule.anchor_date.day)


class RecurringEngine:
    """Posts every occurrence of a recurring transaction that fell due.

    Posting is idempotent per (rule, occurrence date): rerunning after a crash
    or an overlapping scheduler tick never double-books.
    """

    max_catch_up = 366

    def __init__(self, session: Session, events: Optional[EventBus] = None) -> None:
        self.session = session
        self.events = events or EventBus()

    def post_due(
        self, today: Optional[date] = None, workspace_id: Optional[str] = None
    ) -> int:
        today = today or local_today()
        stmt = (
            select(RecurringTransaction)
            .where(RecurringTransaction.next_run_date <= today)
            .order_by(RecurringTransaction.next_run_date, RecurringTransaction.id)
        )
        if workspace_id is not None:
            stmt = stmt.where(RecurringTransaction.workspace_id == workspace_id)
        rules = self.session.scalars(stmt).all()

        posted = 0
        for rule in rules:
            try:
                posted += self.catch_up_rule(rule, today)
            except (LedgerError, IntegrityError):
                logger.exception(f"recurring_post_failed: rule={rule.id}")
                self.session.rollback()
        return posted

    def catch_up_rule(self, rule: RecurringTransaction, today: date) -> int:
        from services import TransactionService

        service = TransactionService(
            self.session, rule.workspace_id, rule.created_by, self.events, today=today
        )
        created: list[Transaction] = []
        with transactional(self.session):
            iterations = 0
            while rule.next_run_date <= today and iterations < self.max_catch_up:
                occurrence_date = rule.next_run_date
                if rule.end_date and occurrence_date > rule.end_date:
                    break
                txn = self._post_occurrence(service, rule, occurrence_date)
                if txn is not None:
                    created.append(txn)
                rule.next_run_date = calculate_next_date(rule, occurrence_date)
                iterations += 1

        for txn in created:
            service.publish(txn.id, txn.version, "create", snapshot_of(txn))
        if created:
            logger.info(
                f"recurring_posted: rule={rule.id} count={len(created)} "
                f"next_run_date={rule.next_run_date}"
            )
        return len(created)

    def _post_occurrence(
        self, service, rule: RecurringTransaction, occurrence_date: date
    ) -> Optional[Transaction]:
        existing = self.session.scalar(
            select(Transaction.id)
            .where(
                Transaction.recurring_id == rule.id,
                Transaction.occurrence_date == occurrence_date,
            )
            .limit(1)
        )
        if existing:
            return None
        data = TransactionIn(
            value_cents=rule.value_cents,
            date=occurrence_date,
            account_id=rule.account_id,
            category_id=rule.category_id,
            payee_id=rule.payee_id,
            note=rule.note,
        )
        return service.write_create(
            data, recurring_id=rule.id, occurrence_date=occurrence_date
        )
