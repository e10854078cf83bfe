from __future__ import annotations

import logging
from datetime import date
from itertools import islice
from typing import Any, ClassVar, NoReturn, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.exc import StaleDataError

from balances import BalanceService, LedgerEffect
from conflicts import ConflictDetector
from database import transactional
from errors import NotFoundError, ValidationError
from events import EventBus, updated_event
from models import (
    Account,
    Budget,
    BudgetNotification,
    Category,
    ConcurrencyMode,
    EntityType,
    EntityVersion,
    Payee,
    RecurringTransaction,
    SnapshotOperation,
    Transaction,
)
from periods import local_today
from recurrence import RecurringEngine
from schemas import (
    AccountIn,
    AccountUpdate,
    BudgetIn,
    BudgetUpdate,
    CategoryIn,
    CategoryUpdate,
    PayeeIn,
    PayeeUpdate,
    RecurringTransactionIn,
    TransactionIn,
    TransactionUpdate,
    UpdateIn,
)
from versioning import VersionService, jsonable_changes, snapshot_of

logger = logging.getLogger(__name__)


class VersionedService:
    """Shared write path for every entity under optimistic locking.

    ``write_update`` is the transaction-scoped part: lock-read the row, run
    the conflict check, append the snapshot, apply the change and its
    derived-balance side effects, flush. It never commits, so the conflict
    resolution engine can reuse it inside its own unit of work.
    """

    entity_type: ClassVar[EntityType]
    model: ClassVar[type]
    update_schema: ClassVar[type[UpdateIn]]
    best_effort_attempts: ClassVar[int] = 3

    def __init__(
        self,
        session: Session,
        workspace_id: str,
        user_id: str,
        events: Optional[EventBus] = None,
        today: Optional[date] = None,
    ) -> None:
        self.session = session
        self.workspace_id = workspace_id
        self.user_id = user_id
        self.events = events or EventBus()
        self.version_service = VersionService(session)
        self.detector = ConflictDetector(session, self.events, user_id)
        self.balances = BalanceService(session, today=today)

    # reads

    def get(self, entity_id: str):
        entity = self.session.scalar(
            select(self.model).where(
                self.model.id == entity_id,
                self.model.workspace_id == self.workspace_id,
            )
        )
        if entity is None:
            raise NotFoundError(self.entity_type.value, entity_id)
        return entity

    def list_all(self) -> list:
        stmt = (
            select(self.model)
            .where(self.model.workspace_id == self.workspace_id)
            .order_by(self.model.created_at, self.model.id)
        )
        return list(self.session.scalars(stmt))

    def versions(self, entity_id: str, limit: Optional[int] = None) -> list[EntityVersion]:
        """History newest first. Survives deletion of the entity itself."""
        history = (
            snapshot
            for snapshot in self.version_service.get_entity_versions(
                self.entity_type, entity_id
            )
            if snapshot.previous_data.get("workspace_id") == self.workspace_id
        )
        return list(islice(history, limit))

    # writes

    def update(self, entity_id: str, data: UpdateIn, mode: ConcurrencyMode):
        with transactional(self.session):
            entity = self.write_update(entity_id, data, mode)
        self.publish(entity.id, entity.version, "update", snapshot_of(entity))
        return entity

    def write_update(self, entity_id: str, data: UpdateIn, mode: ConcurrencyMode):
        if mode == ConcurrencyMode.strict and data.expected_version is None:
            raise ValidationError("expected_version is required in strict mode")
        expected_version = (
            data.expected_version if mode == ConcurrencyMode.strict else None
        )
        changes = self._normalize(data.changes())
        self._validate_changes(entity_id, changes)

        attempts = self.best_effort_attempts if mode == ConcurrencyMode.best_effort else 1
        for attempt in range(1, attempts + 1):
            entity = self._load_for_update(entity_id)
            base_version = entity.version
            current = snapshot_of(entity)
            proposed = {
                **current,
                **jsonable_changes(changes),
                "version": base_version + 1,
                "last_edited_by": self.user_id,
            }
            self.detector.check_for_conflict(
                self.entity_type,
                entity.id,
                base_version,
                expected_version,
                current,
                proposed,
                self.workspace_id,
            )

            try:
                self.version_service.create_version(
                    self.entity_type, entity.id, current, proposed, self.user_id
                )
                before = self._before_apply(entity)
                for key, value in changes.items():
                    setattr(entity, key, value)
                entity.last_edited_by = self.user_id
                flag_modified(entity, "last_edited_by")
                self.session.flush()
                self._after_update(entity, changes, before)
                self.session.flush()
            except (StaleDataError, IntegrityError) as exc:
                if attempt < attempts:
                    # last writer wins: reapply on top of the row that landed
                    self.session.rollback()
                    logger.info(
                        f"update_retry: entity={self.entity_type.value} "
                        f"id={entity_id} attempt={attempt}"
                    )
                    continue
                self._lost_race(entity_id, base_version, proposed, exc)
            return entity

    def delete(self, entity_id: str) -> None:
        for attempt in range(2):
            try:
                with transactional(self.session):
                    entity = self._load_for_update(entity_id)
                    self._check_deletable(entity)
                    previous = snapshot_of(entity)
                    self.version_service.create_version(
                        self.entity_type,
                        entity.id,
                        previous,
                        None,
                        self.user_id,
                        operation=SnapshotOperation.delete,
                    )
                    captured = self._before_delete(entity)
                    self.session.delete(entity)
                    self.session.flush()
                    self._after_delete(entity, captured)
                    self.session.flush()
            except (StaleDataError, IntegrityError):
                if attempt:
                    raise
                logger.info(
                    f"delete_retry: entity={self.entity_type.value} id={entity_id}"
                )
                continue
            break
        self.publish(entity_id, previous["version"], "delete", previous)

    # internals

    def _load_for_update(self, entity_id: str):
        entity = self.session.scalar(
            select(self.model)
            .where(
                self.model.id == entity_id,
                self.model.workspace_id == self.workspace_id,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if entity is None:
            raise NotFoundError(self.entity_type.value, entity_id)
        return entity

    def _lost_race(
        self,
        entity_id: str,
        base_version: int,
        proposed: dict[str, Any],
        exc: Exception,
    ) -> NoReturn:
        """The conditional UPDATE (or the snapshot key) lost to a concurrent
        writer between our read and our flush."""
        self.session.rollback()
        stored = self._load_for_update(entity_id)
        if stored.version == base_version:
            raise ValidationError(
                f"{self.entity_type.value} conflicts with an existing record"
            ) from exc
        self.detector.record_conflict(
            self.entity_type,
            entity_id,
            stored.version,
            base_version,
            snapshot_of(stored),
            proposed,
            self.workspace_id,
        )

    def _insert(self, entity, after=None):
        try:
            with transactional(self.session):
                self.session.add(entity)
                self.session.flush()
                if after is not None:
                    after(entity)
                    self.session.flush()
        except IntegrityError as exc:
            raise ValidationError(
                f"{self.entity_type.value} conflicts with an existing record"
            ) from exc
        self.publish(entity.id, entity.version, "create", snapshot_of(entity))
        return entity

    def publish(
        self, entity_id: str, version: int, operation: str, data: dict[str, Any]
    ) -> None:
        self.events.publish(
            updated_event(self.entity_type.value),
            {
                "workspace_id": self.workspace_id,
                "entity_type": self.entity_type.value,
                "entity_id": entity_id,
                "version": version,
                "operation": operation,
                "data": data,
            },
        )

    def _new(self, **fields):
        return self.model(
            workspace_id=self.workspace_id,
            created_by=self.user_id,
            last_edited_by=self.user_id,
            **fields,
        )

    def _normalize(self, changes: dict[str, Any]) -> dict[str, Any]:
        if "name" in changes:
            changes["name"] = self._clean_name(changes["name"])
        return changes

    @staticmethod
    def _clean_name(name: str) -> str:
        clean_name = name.strip()
        if not clean_name:
            raise ValidationError("Name cannot be empty")
        return clean_name

    def _ensure_unique_name(self, name: str, exclude_id: Optional[str] = None) -> None:
        stmt = select(self.model.id).where(
            self.model.workspace_id == self.workspace_id,
            func.lower(self.model.name) == name.lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(self.model.id != exclude_id)
        if self.session.scalar(stmt):
            raise ValidationError(
                f"{self.entity_type.value} with this name already exists"
            )

    def _require(self, model, entity_id: str, label: str):
        entity = self.session.scalar(
            select(model).where(
                model.id == entity_id, model.workspace_id == self.workspace_id
            )
        )
        if entity is None:
            raise NotFoundError(label, entity_id)
        return entity

    def _ensure_unreferenced(self, column_name: str, entity_id: str) -> None:
        for model in (Transaction, Budget, RecurringTransaction):
            column = getattr(model, column_name)
            if self.session.scalar(select(model.id).where(column == entity_id).limit(1)):
                raise ValidationError(
                    f"{self.entity_type.value} is still referenced by "
                    f"{model.__tablename__}"
                )

    def _validate_changes(self, entity_id: str, changes: dict[str, Any]) -> None:
        if "name" in changes:
            self._ensure_unique_name(changes["name"], exclude_id=entity_id)

    def _before_apply(self, entity) -> Any:
        return None

    def _after_update(self, entity, changes: dict[str, Any], before: Any) -> None:
        pass

    def _check_deletable(self, entity) -> None:
        pass

    def _before_delete(self, entity) -> Any:
        return None

    def _after_delete(self, entity, captured: Any) -> None:
        pass


class AccountService(VersionedService):
    entity_type = EntityType.account
    model = Account
    update_schema = AccountUpdate

    def create(self, data: AccountIn) -> Account:
        name = self._clean_name(data.name)
        self._ensure_unique_name(name)
        account = self._new(
            name=name,
            account_type=data.account_type,
            init_balance_cents=data.init_balance_cents,
            balance_cents=data.init_balance_cents,
            is_default=data.is_default,
        )
        return self._insert(account)

    def recalculate_balance(self, account_id: str) -> int:
        self.get(account_id)
        with transactional(self.session):
            balance = self.balances.recalculate_account_balance(account_id)
        return balance

    def _after_update(self, entity, changes, before) -> None:
        if "init_balance_cents" in changes:
            self.balances.recalculate_account_balance(entity.id)

    def _check_deletable(self, entity) -> None:
        self._ensure_unreferenced("account_id", entity.id)


class CategoryService(VersionedService):
    entity_type = EntityType.category
    model = Category
    update_schema = CategoryUpdate

    def create(self, data: CategoryIn) -> Category:
        name = self._clean_name(data.name)
        self._ensure_unique_name(name)
        category = self._new(
            name=name,
            category_type=data.category_type,
            is_default=data.is_default,
        )
        return self._insert(category)

    def _before_apply(self, entity):
        return entity.category_type

    def _after_update(self, entity, changes, before) -> None:
        if entity.category_type != before:
            self.balances.recalculate_for_category(
                entity.id, self.workspace_id, self.user_id
            )

    def _check_deletable(self, entity) -> None:
        self._ensure_unreferenced("category_id", entity.id)


class PayeeService(VersionedService):
    entity_type = EntityType.payee
    model = Payee
    update_schema = PayeeUpdate

    def create(self, data: PayeeIn) -> Payee:
        name = self._clean_name(data.name)
        self._ensure_unique_name(name)
        payee = self._new(name=name, is_default=data.is_default)
        return self._insert(payee)

    def _check_deletable(self, entity) -> None:
        self._ensure_unreferenced("payee_id", entity.id)


class TransactionService(VersionedService):
    entity_type = EntityType.transaction
    model = Transaction
    update_schema = TransactionUpdate

    def list_for_account(self, account_id: str, limit: int = 50) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.workspace_id == self.workspace_id,
                Transaction.account_id == account_id,
            )
            .order_by(Transaction.date.desc(), Transaction.created_at.desc())
            .limit(limit)
        )
        return list(self.session.scalars(stmt))

    def create(self, data: TransactionIn) -> Transaction:
        self._validate_refs(data.model_dump())
        txn = self._build(data)
        return self._insert(txn, after=self._post_created)

    def write_create(
        self,
        data: TransactionIn,
        recurring_id: Optional[str] = None,
        occurrence_date: Optional[date] = None,
    ) -> Transaction:
        """Insert and book a transaction inside the caller's transaction."""
        self._validate_refs(data.model_dump())
        txn = self._build(data, recurring_id=recurring_id, occurrence_date=occurrence_date)
        self.session.add(txn)
        self.session.flush()
        self._post_created(txn)
        self.session.flush()
        return txn

    def _build(self, data: TransactionIn, **extra) -> Transaction:
        return self._new(
            value_cents=data.value_cents,
            date=data.date or local_today(),
            account_id=data.account_id,
            category_id=data.category_id,
            payee_id=data.payee_id,
            note=data.note.strip() if data.note else None,
            **extra,
        )

    def _post_created(self, txn: Transaction) -> None:
        self.balances.apply_transaction_change(
            None, self.balances.effect_of(txn), self.user_id
        )

    def _validate_refs(self, fields: dict[str, Any]) -> None:
        if fields.get("account_id"):
            self._require(Account, fields["account_id"], "Account")
        if fields.get("category_id"):
            self._require(Category, fields["category_id"], "Category")
        if fields.get("payee_id"):
            self._require(Payee, fields["payee_id"], "Payee")

    def _validate_changes(self, entity_id, changes) -> None:
        self._validate_refs(changes)
        if changes.get("note"):
            changes["note"] = changes["note"].strip()

    def _before_apply(self, entity) -> LedgerEffect:
        return self.balances.effect_of(entity)

    def _after_update(self, entity, changes, before: LedgerEffect) -> None:
        after = self.balances.effect_of(entity)
        if after != before:
            self.balances.apply_transaction_change(before, after, self.user_id)

    def _before_delete(self, entity) -> LedgerEffect:
        return self.balances.effect_of(entity)

    def _after_delete(self, entity, captured: LedgerEffect) -> None:
        # the row is already deleted and flushed
        self.balances.apply_transaction_change(captured, None, self.user_id)


class BudgetService(VersionedService):
    entity_type = EntityType.budget
    model = Budget
    update_schema = BudgetUpdate

    def create(self, data: BudgetIn) -> Budget:
        scopes = {
            "account_id": (Account, data.account_id),
            "category_id": (Category, data.category_id),
            "payee_id": (Payee, data.payee_id),
        }
        chosen = [(field, model, value) for field, (model, value) in scopes.items() if value]
        if len(chosen) != 1:
            raise ValidationError(
                "Budget must be scoped to exactly one of account, category or payee"
            )
        field, model, value = chosen[0]
        self._require(model, value, model.__name__)
        duplicate = self.session.scalar(
            select(Budget.id).where(
                Budget.workspace_id == self.workspace_id,
                getattr(Budget, field) == value,
            )
        )
        if duplicate:
            raise ValidationError("A budget for this scope already exists")

        budget = self._new(
            amount_cents=data.amount_cents,
            current_spent_cents=0,
            last_reset_date=self.balances.period().start,
            **{field: value},
        )
        return self._insert(
            budget,
            after=lambda b: self.balances.recalculate_budget_balance(b.id, self.user_id),
        )

    def recalculate_balance(self, budget_id: str) -> int:
        self.get(budget_id)
        with transactional(self.session):
            spent = self.balances.recalculate_budget_balance(budget_id, self.user_id)
        return spent

    def _after_update(self, entity, changes, before) -> None:
        if "amount_cents" in changes:
            self.balances.check_budget_thresholds(entity, self.user_id)

    def _before_delete(self, entity) -> None:
        self.session.execute(
            delete(BudgetNotification).where(BudgetNotification.budget_id == entity.id)
        )


SERVICES: dict[EntityType, type[VersionedService]] = {
    cls.entity_type: cls
    for cls in (
        AccountService,
        CategoryService,
        PayeeService,
        TransactionService,
        BudgetService,
    )
}


def service_for(entity_type: EntityType) -> type[VersionedService]:
    return SERVICES[EntityType(entity_type)]


class RecurringTransactionService:
    def __init__(
        self,
        session: Session,
        workspace_id: str,
        user_id: str,
        events: Optional[EventBus] = None,
    ) -> None:
        self.session = session
        self.workspace_id = workspace_id
        self.user_id = user_id
        self.events = events or EventBus()

    def get(self, recurring_id: str) -> RecurringTransaction:
        rule = self.session.get(RecurringTransaction, recurring_id)
        if not rule or rule.workspace_id != self.workspace_id:
            raise NotFoundError("Recurring transaction", recurring_id)
        return rule

    def list_all(self) -> list[RecurringTransaction]:
        stmt = (
            select(RecurringTransaction)
            .where(RecurringTransaction.workspace_id == self.workspace_id)
            .order_by(RecurringTransaction.next_run_date, RecurringTransaction.id)
        )
        return list(self.session.scalars(stmt))

    def create(self, data: RecurringTransactionIn) -> RecurringTransaction:
        TransactionService(
            self.session, self.workspace_id, self.user_id
        )._validate_refs(data.model_dump())
        if data.end_date and data.end_date < data.anchor_date:
            raise ValidationError("End date must not be before the anchor date")
        rule = RecurringTransaction(
            workspace_id=self.workspace_id,
            created_by=self.user_id,
            value_cents=data.value_cents,
            account_id=data.account_id,
            category_id=data.category_id,
            payee_id=data.payee_id,
            note=data.note,
            interval_unit=data.interval_unit,
            interval_count=data.interval_count,
            anchor_date=data.anchor_date,
            next_run_date=data.anchor_date,
            end_date=data.end_date,
        )
        with transactional(self.session):
            self.session.add(rule)
        return rule

    def delete(self, recurring_id: str) -> None:
        rule = self.get(recurring_id)
        with transactional(self.session):
            self.session.delete(rule)

    def materialize_due(self, today: Optional[date] = None) -> int:
        engine = RecurringEngine(self.session, self.events)
        return engine.post_due(today, workspace_id=self.workspace_id)


class NotificationService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = user_id

    def list(self, unread_only: bool = False) -> list[BudgetNotification]:
        stmt = (
            select(BudgetNotification)
            .where(BudgetNotification.user_id == self.user_id)
            .order_by(BudgetNotification.created_at.desc())
        )
        if unread_only:
            stmt = stmt.where(BudgetNotification.read.is_(False))
        return list(self.session.scalars(stmt))

    def mark_read(self, notification_id: str) -> BudgetNotification:
        notification = self.session.get(BudgetNotification, notification_id)
        if not notification or notification.user_id != self.user_id:
            raise NotFoundError("Notification", notification_id)
        with transactional(self.session):
            notification.read = True
        return notification
