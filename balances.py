from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Optional

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.orm import Session

from config import get_settings
from errors import NotFoundError
from models import (
    Account,
    Budget,
    BudgetNotification,
    Category,
    CategoryType,
    Transaction,
)
from periods import Period, month_period

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerEffect:
    """What one transaction contributes to derived balances.

    ``value_cents`` is always a positive magnitude; the sign comes from the
    category type. Income adds, everything else (expense or uncategorized)
    subtracts and counts as budget spend.
    """

    workspace_id: str
    account_id: str
    category_id: Optional[str]
    payee_id: Optional[str]
    value_cents: int
    date: date
    is_income: bool

    @property
    def signed_cents(self) -> int:
        return self.value_cents if self.is_income else -self.value_cents


def _signed_value():
    return case(
        (Category.category_type == CategoryType.income, Transaction.value_cents),
        else_=-Transaction.value_cents,
    )


def _is_spend():
    return or_(
        Transaction.category_id.is_(None),
        Category.category_type == CategoryType.expense,
    )


class BalanceService:
    """Keeps ``Account.balance_cents`` and ``Budget.current_spent_cents``
    consistent with the transaction ledger.

    Every method runs inside the caller's transaction and never commits; a
    failure rolls back together with the write that triggered it.
    Derived columns are written with bulk UPDATE statements so they never bump
    the entity's concurrency version.
    """

    def __init__(
        self,
        session: Session,
        today: Optional[date] = None,
        thresholds: Optional[tuple[int, ...]] = None,
    ) -> None:
        self.session = session
        self.today = today
        self.thresholds = thresholds or get_settings().budget_thresholds

    def period(self) -> Period:
        return month_period(self.today)

    def effect_of(self, txn: Transaction) -> LedgerEffect:
        is_income = False
        if txn.category_id:
            category_type = self.session.scalar(
                select(Category.category_type).where(Category.id == txn.category_id)
            )
            is_income = category_type == CategoryType.income
        return LedgerEffect(
            workspace_id=txn.workspace_id,
            account_id=txn.account_id,
            category_id=txn.category_id,
            payee_id=txn.payee_id,
            value_cents=txn.value_cents,
            date=txn.date,
            is_income=is_income,
        )

    def get_account_balance(self, account_id: str) -> int:
        balance = self.session.scalar(
            select(Account.balance_cents).where(Account.id == account_id)
        )
        if balance is None:
            raise NotFoundError("Account", account_id)
        return int(balance)

    def increment_account_balance(self, account_id: str, delta_cents: int) -> int:
        result = self.session.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(balance_cents=Account.balance_cents + delta_cents)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount == 0:
            raise NotFoundError("Account", account_id)
        return self.get_account_balance(account_id)

    def computed_account_balance(self, account_id: str) -> int:
        init_balance = self.session.scalar(
            select(Account.init_balance_cents).where(Account.id == account_id)
        )
        if init_balance is None:
            raise NotFoundError("Account", account_id)
        ledger = self.session.scalar(
            select(func.coalesce(func.sum(_signed_value()), 0))
            .select_from(Transaction)
            .outerjoin(Category, Transaction.category_id == Category.id)
            .where(Transaction.account_id == account_id)
        )
        return int(init_balance) + int(ledger or 0)

    def recalculate_account_balance(self, account_id: str) -> int:
        balance = self.computed_account_balance(account_id)
        self.session.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(balance_cents=balance)
            .execution_options(synchronize_session="fetch")
        )
        return balance

    def _spent_in_period(self, budget: Budget, period: Period) -> int:
        field, value = budget.scope
        spent = self.session.scalar(
            select(func.coalesce(func.sum(Transaction.value_cents), 0))
            .select_from(Transaction)
            .outerjoin(Category, Transaction.category_id == Category.id)
            .where(
                Transaction.workspace_id == budget.workspace_id,
                getattr(Transaction, field) == value,
                Transaction.date.between(period.start, period.end),
                _is_spend(),
            )
        )
        return int(spent or 0)

    def recalculate_budget_balance(self, budget_id: str, user_id: str) -> int:
        budget = self.session.get(Budget, budget_id)
        if budget is None:
            raise NotFoundError("Budget", budget_id)
        period = self.period()
        spent = self._spent_in_period(budget, period)
        self.session.execute(
            update(Budget)
            .where(Budget.id == budget_id)
            .values(current_spent_cents=spent, last_reset_date=period.start)
            .execution_options(synchronize_session="fetch")
        )
        self.check_budget_thresholds(budget, user_id)
        return spent

    def _affected_budgets(self, effect: LedgerEffect) -> list[Budget]:
        scopes = [Budget.account_id == effect.account_id]
        if effect.category_id:
            scopes.append(Budget.category_id == effect.category_id)
        if effect.payee_id:
            scopes.append(Budget.payee_id == effect.payee_id)
        stmt = select(Budget).where(
            Budget.workspace_id == effect.workspace_id, or_(*scopes)
        )
        return list(self.session.scalars(stmt))

    def apply_transaction_change(
        self,
        old: Optional[LedgerEffect],
        new: Optional[LedgerEffect],
        user_id: str,
    ) -> None:
        """Apply the exact delta between two ledger states of one transaction.

        ``old`` is None on create, ``new`` is None on delete.
        """
        account_deltas: dict[str, int] = defaultdict(int)
        if old is not None:
            account_deltas[old.account_id] -= old.signed_cents
        if new is not None:
            account_deltas[new.account_id] += new.signed_cents
        for account_id, delta in account_deltas.items():
            if delta:
                self.increment_account_balance(account_id, delta)

        period = self.period()
        budget_deltas: dict[str, int] = defaultdict(int)
        budgets: dict[str, Budget] = {}
        for effect, sign in ((old, -1), (new, 1)):
            if effect is None or effect.is_income or not period.contains(effect.date):
                continue
            for budget in self._affected_budgets(effect):
                budgets[budget.id] = budget
                budget_deltas[budget.id] += sign * effect.value_cents

        for budget_id, delta in budget_deltas.items():
            budget = budgets[budget_id]
            if budget.last_reset_date < period.start:
                self.recalculate_budget_balance(budget_id, user_id)
                continue
            if not delta:
                continue
            self.session.execute(
                update(Budget)
                .where(Budget.id == budget_id)
                .values(current_spent_cents=Budget.current_spent_cents + delta)
                .execution_options(synchronize_session="fetch")
            )
            if delta > 0:
                self.check_budget_thresholds(budget, user_id)

    def recalculate_for_category(
        self, category_id: str, workspace_id: str, user_id: str
    ) -> None:
        """Full recompute after a category's type flipped between income and
        expense, which changes the sign of every linked transaction."""
        account_ids = self.session.scalars(
            select(Transaction.account_id)
            .where(Transaction.category_id == category_id)
            .distinct()
        ).all()
        for account_id in account_ids:
            self.recalculate_account_balance(account_id)
        budget_ids = self.session.scalars(
            select(Budget.id).where(Budget.workspace_id == workspace_id)
        ).all()
        for budget_id in budget_ids:
            self.recalculate_budget_balance(budget_id, user_id)

    def check_budget_thresholds(
        self, budget: Budget, user_id: str
    ) -> Optional[BudgetNotification]:
        """Notify once per (user, budget, threshold, month), highest threshold
        reached only."""
        self.session.refresh(budget, ["amount_cents", "current_spent_cents"])
        if budget.amount_cents <= 0:
            return None
        spent_x100 = budget.current_spent_cents * 100
        reached = next(
            (t for t in self.thresholds if spent_x100 >= t * budget.amount_cents),
            None,
        )
        if reached is None:
            return None

        month_start = datetime.combine(self.period().start, time.min)
        existing = self.session.scalar(
            select(BudgetNotification.id).where(
                BudgetNotification.user_id == user_id,
                BudgetNotification.budget_id == budget.id,
                BudgetNotification.threshold == reached,
                BudgetNotification.created_at >= month_start,
            )
        )
        if existing:
            return None

        notification = BudgetNotification(
            user_id=user_id,
            budget_id=budget.id,
            threshold=reached,
            message=f"Budget has reached {reached}% of its limit",
        )
        self.session.add(notification)
        self.session.flush()
        logger.info(
            f"budget_threshold_reached: budget={budget.id} threshold={reached} "
            f"user={user_id}"
        )
        return notification

    def reconcile_account_balances(self) -> dict[str, int]:
        account_ids = self.session.scalars(select(Account.id)).all()
        discrepancies = 0
        for account_id in account_ids:
            stored = self.get_account_balance(account_id)
            computed = self.computed_account_balance(account_id)
            if stored == computed:
                continue
            discrepancies += 1
            self.recalculate_account_balance(account_id)
            logger.warning(
                f"balance_discrepancy_fixed: account={account_id} "
                f"stored={stored} computed={computed}"
            )
        return {"total": len(account_ids), "fixed": discrepancies}

    def reset_budget_periods(self) -> int:
        period = self.period()
        budgets = self.session.scalars(
            select(Budget).where(Budget.last_reset_date < period.start)
        ).all()
        for budget in budgets:
            self.recalculate_budget_balance(budget.id, budget.created_by)
        return len(budgets)
