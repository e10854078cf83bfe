import datetime as dt
import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class EntityType(str, Enum):
    account = "Account"
    category = "Category"
    payee = "Payee"
    transaction = "Transaction"
    budget = "Budget"


class ConcurrencyMode(str, Enum):
    strict = "strict"
    best_effort = "best_effort"

    @classmethod
    def for_expected_version(cls, expected_version: Optional[int]) -> "ConcurrencyMode":
        return cls.best_effort if expected_version is None else cls.strict


class ConflictStatus(str, Enum):
    open = "open"
    resolved = "resolved"
    dismissed = "dismissed"


class CategoryType(str, Enum):
    income = "Income"
    expense = "Expense"


class AccountType(str, Enum):
    cash = "Cash"
    credit_card = "CreditCard"
    bank = "Bank"
    saving = "Saving"
    loans = "Loans"


class IntervalUnit(str, Enum):
    day = "day"
    week = "week"
    month = "month"
    year = "year"


class SnapshotOperation(str, Enum):
    update = "update"
    delete = "delete"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class VersionedMixin(TimestampMixin):
    """Columns shared by every entity that takes part in optimistic locking.

    Each concrete model declares its own ``version`` column and wires it as
    ``version_id_col`` so the ORM emits ``UPDATE ... WHERE version = :old``
    and bumps the counter by one on every flush of a dirty row.
    """

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    workspace_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    created_by: Mapped[str] = mapped_column(String(36), nullable=False)
    last_edited_by: Mapped[str] = mapped_column(String(36), nullable=False)


class Account(VersionedMixin, Base):
    __tablename__ = "accounts"

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    account_type: Mapped[AccountType] = mapped_column(
        SAEnum(AccountType), nullable=False, default=AccountType.cash
    )
    init_balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="account"
    )

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        UniqueConstraint("workspace_id", "name", name="uq_account_workspace_name"),
    )


class Category(VersionedMixin, Base):
    __tablename__ = "categories"

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    category_type: Mapped[CategoryType] = mapped_column(
        SAEnum(CategoryType), nullable=False, default=CategoryType.expense
    )
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        UniqueConstraint("workspace_id", "name", name="uq_category_workspace_name"),
    )


class Payee(VersionedMixin, Base):
    __tablename__ = "payees"

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        UniqueConstraint("workspace_id", "name", name="uq_payee_workspace_name"),
    )


class Transaction(VersionedMixin, Base):
    __tablename__ = "transactions"

    value_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    account_id: Mapped[str] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    category_id: Mapped[Optional[str]] = mapped_column(ForeignKey("categories.id"))
    payee_id: Mapped[Optional[str]] = mapped_column(ForeignKey("payees.id"))
    note: Mapped[Optional[str]] = mapped_column(Text)
    recurring_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("recurring_transactions.id")
    )
    occurrence_date: Mapped[Optional[dt.date]] = mapped_column(Date)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    account: Mapped["Account"] = relationship("Account", back_populates="transactions")
    category: Mapped[Optional["Category"]] = relationship(
        "Category", back_populates="transactions"
    )
    payee: Mapped[Optional["Payee"]] = relationship("Payee")

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        UniqueConstraint(
            "recurring_id", "occurrence_date", name="uq_txn_recurring_occurrence"
        ),
        Index("ix_transactions_workspace_date", "workspace_id", "date"),
        Index("ix_transactions_account_date", "account_id", "date"),
        CheckConstraint("value_cents >= 0", name="ck_transactions_value_positive"),
    )


class Budget(VersionedMixin, Base):
    __tablename__ = "budgets"

    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    current_spent_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    account_id: Mapped[Optional[str]] = mapped_column(ForeignKey("accounts.id"))
    category_id: Mapped[Optional[str]] = mapped_column(ForeignKey("categories.id"))
    payee_id: Mapped[Optional[str]] = mapped_column(ForeignKey("payees.id"))
    last_reset_date: Mapped[date] = mapped_column(Date, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
        CheckConstraint(
            "(CASE WHEN account_id IS NULL THEN 0 ELSE 1 END)"
            " + (CASE WHEN category_id IS NULL THEN 0 ELSE 1 END)"
            " + (CASE WHEN payee_id IS NULL THEN 0 ELSE 1 END) = 1",
            name="ck_budget_single_scope",
        ),
        UniqueConstraint(
            "workspace_id",
            "account_id",
            "category_id",
            "payee_id",
            name="uq_budget_workspace_scope",
        ),
    )

    @property
    def scope(self) -> tuple[str, str]:
        if self.account_id:
            return ("account_id", self.account_id)
        if self.category_id:
            return ("category_id", self.category_id)
        return ("payee_id", self.payee_id)


class BudgetNotification(Base):
    __tablename__ = "budget_notifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    budget_id: Mapped[str] = mapped_column(
        ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False
    )
    threshold: Mapped[int] = mapped_column(Integer, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_budget_notification_user_budget", "user_id", "budget_id"),
    )


class RecurringTransaction(TimestampMixin, Base):
    __tablename__ = "recurring_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    workspace_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    created_by: Mapped[str] = mapped_column(String(36), nullable=False)
    value_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    account_id: Mapped[str] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    category_id: Mapped[Optional[str]] = mapped_column(ForeignKey("categories.id"))
    payee_id: Mapped[Optional[str]] = mapped_column(ForeignKey("payees.id"))
    note: Mapped[Optional[str]] = mapped_column(Text)
    interval_unit: Mapped[IntervalUnit] = mapped_column(
        SAEnum(IntervalUnit), nullable=False
    )
    interval_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    anchor_date: Mapped[date] = mapped_column(Date, nullable=False)
    next_run_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date)

    __table_args__ = (
        CheckConstraint("interval_count > 0", name="ck_recurring_interval_positive"),
        CheckConstraint("value_cents >= 0", name="ck_recurring_value_positive"),
    )


class EntityVersion(Base):
    __tablename__ = "entity_versions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    entity_type: Mapped[EntityType] = mapped_column(SAEnum(EntityType), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(36), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    operation: Mapped[SnapshotOperation] = mapped_column(
        SAEnum(SnapshotOperation), nullable=False, default=SnapshotOperation.update
    )
    previous_data: Mapped[dict] = mapped_column(JSON, nullable=False)
    new_data: Mapped[Optional[dict]] = mapped_column(JSON)
    changed_by: Mapped[str] = mapped_column(String(36), nullable=False)
    changed_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "entity_type", "entity_id", "version", name="uq_entity_version"
        ),
    )


class EntityConflict(Base):
    __tablename__ = "entity_conflicts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    entity_type: Mapped[EntityType] = mapped_column(SAEnum(EntityType), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(36), nullable=False)
    workspace_id: Mapped[str] = mapped_column(String(36), nullable=False)
    current_version: Mapped[int] = mapped_column(Integer, nullable=False)
    incoming_version: Mapped[int] = mapped_column(Integer, nullable=False)
    current_data: Mapped[dict] = mapped_column(JSON, nullable=False)
    incoming_data: Mapped[dict] = mapped_column(JSON, nullable=False)
    status: Mapped[ConflictStatus] = mapped_column(
        SAEnum(ConflictStatus), nullable=False, default=ConflictStatus.open
    )
    detected_by: Mapped[Optional[str]] = mapped_column(String(36))
    detected_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    resolved_by: Mapped[Optional[str]] = mapped_column(String(36))
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    resolved_version: Mapped[Optional[int]] = mapped_column(Integer)

    __table_args__ = (
        Index("ix_entity_conflict_workspace_status", "workspace_id", "status"),
        Index("ix_entity_conflict_entity", "entity_type", "entity_id"),
    )
