from datetime import date

import pytest
from sqlalchemy import create_engine, select, update
from sqlalchemy.orm import sessionmaker

from balances import BalanceService
from database import Base
from errors import NotFoundError, ValidationError
from models import Account, CategoryType, ConcurrencyMode, EntityConflict
from schemas import (
    AccountIn,
    AccountUpdate,
    CategoryIn,
    CategoryUpdate,
    TransactionIn,
    TransactionUpdate,
)
from services import AccountService, CategoryService, TransactionService
from versioning import VersionService

WS = "ws-1"
ALICE = "alice"
TODAY = date(2026, 3, 15)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def _ledger(session):
    accounts = AccountService(session, WS, ALICE, today=TODAY)
    categories = CategoryService(session, WS, ALICE, today=TODAY)
    main = accounts.create(AccountIn(name="Main", init_balance_cents=10_000))
    groceries = categories.create(
        CategoryIn(name="Groceries", category_type=CategoryType.expense)
    )
    salary = categories.create(
        CategoryIn(name="Salary", category_type=CategoryType.income)
    )
    return main, groceries, salary


def _assert_consistent(session, account_id: str, expected: int) -> None:
    balances = BalanceService(session, today=TODAY)
    assert balances.get_account_balance(account_id) == expected
    assert balances.computed_account_balance(account_id) == expected


def test_transaction_lifecycle_keeps_balance_exact() -> None:
    session = make_session()
    main, groceries, salary = _ledger(session)
    txns = TransactionService(session, WS, ALICE, today=TODAY)

    spend = txns.create(
        TransactionIn(
            value_cents=2_500,
            date=date(2026, 3, 2),
            account_id=main.id,
            category_id=groceries.id,
        )
    )
    _assert_consistent(session, main.id, 7_500)

    pay = txns.create(
        TransactionIn(
            value_cents=1_000,
            date=date(2026, 3, 3),
            account_id=main.id,
            category_id=salary.id,
        )
    )
    _assert_consistent(session, main.id, 8_500)

    txns.create(
        TransactionIn(value_cents=500, date=date(2026, 3, 4), account_id=main.id)
    )
    _assert_consistent(session, main.id, 8_000)

    txns.update(spend.id, TransactionUpdate(value_cents=3_000), ConcurrencyMode.best_effort)
    _assert_consistent(session, main.id, 7_500)

    txns.update(pay.id, TransactionUpdate(category_id=None), ConcurrencyMode.best_effort)
    _assert_consistent(session, main.id, 5_500)

    txns.delete(spend.id)
    _assert_consistent(session, main.id, 8_500)


def test_moving_a_transaction_between_accounts() -> None:
    session = make_session()
    main, groceries, _ = _ledger(session)
    spare = AccountService(session, WS, ALICE).create(
        AccountIn(name="Spare", init_balance_cents=2_000)
    )
    txns = TransactionService(session, WS, ALICE, today=TODAY)
    txn = txns.create(
        TransactionIn(
            value_cents=700,
            date=date(2026, 3, 2),
            account_id=main.id,
            category_id=groceries.id,
        )
    )

    txns.update(txn.id, TransactionUpdate(account_id=spare.id), ConcurrencyMode.best_effort)

    _assert_consistent(session, main.id, 10_000)
    _assert_consistent(session, spare.id, 1_300)


def test_transaction_with_unknown_reference_is_rejected() -> None:
    session = make_session()
    main, _, _ = _ledger(session)
    txns = TransactionService(session, WS, ALICE, today=TODAY)

    with pytest.raises(NotFoundError):
        txns.create(TransactionIn(value_cents=100, account_id="missing"))
    with pytest.raises(NotFoundError):
        txns.create(
            TransactionIn(value_cents=100, account_id=main.id, category_id="missing")
        )
    _assert_consistent(session, main.id, 10_000)


def test_initial_balance_edit_recomputes_balance() -> None:
    session = make_session()
    main, groceries, _ = _ledger(session)
    TransactionService(session, WS, ALICE, today=TODAY).create(
        TransactionIn(
            value_cents=1_200,
            date=date(2026, 3, 2),
            account_id=main.id,
            category_id=groceries.id,
        )
    )

    AccountService(session, WS, ALICE).update(
        main.id, AccountUpdate(init_balance_cents=20_000), ConcurrencyMode.best_effort
    )

    _assert_consistent(session, main.id, 18_800)


def test_category_type_flip_recomputes_balances() -> None:
    session = make_session()
    main, groceries, _ = _ledger(session)
    TransactionService(session, WS, ALICE, today=TODAY).create(
        TransactionIn(
            value_cents=1_000,
            date=date(2026, 3, 2),
            account_id=main.id,
            category_id=groceries.id,
        )
    )
    _assert_consistent(session, main.id, 9_000)

    CategoryService(session, WS, ALICE, today=TODAY).update(
        groceries.id,
        CategoryUpdate(category_type=CategoryType.income),
        ConcurrencyMode.best_effort,
    )

    _assert_consistent(session, main.id, 11_000)


def test_referenced_account_cannot_be_deleted() -> None:
    session = make_session()
    main, _, _ = _ledger(session)
    TransactionService(session, WS, ALICE, today=TODAY).create(
        TransactionIn(value_cents=100, date=date(2026, 3, 2), account_id=main.id)
    )

    with pytest.raises(ValidationError):
        AccountService(session, WS, ALICE).delete(main.id)


def test_increment_on_unknown_account_raises() -> None:
    session = make_session()

    with pytest.raises(NotFoundError):
        BalanceService(session, today=TODAY).increment_account_balance("missing", 10)


def test_reconcile_repairs_drifted_balances() -> None:
    session = make_session()
    main, groceries, _ = _ledger(session)
    TransactionService(session, WS, ALICE, today=TODAY).create(
        TransactionIn(
            value_cents=400,
            date=date(2026, 3, 2),
            account_id=main.id,
            category_id=groceries.id,
        )
    )
    session.execute(
        update(Account).where(Account.id == main.id).values(balance_cents=1)
    )
    session.commit()

    result = BalanceService(session, today=TODAY).reconcile_account_balances()
    session.commit()

    assert result == {"total": 1, "fixed": 1}
    _assert_consistent(session, main.id, 9_600)


def test_deleting_a_transaction_restores_the_balance_exactly() -> None:
    session = make_session()
    _, groceries, _ = _ledger(session)
    wallet = AccountService(session, WS, ALICE).create(
        AccountIn(name="Wallet", init_balance_cents=10_000)
    )
    txns = TransactionService(session, WS, ALICE, today=TODAY)
    txn = txns.create(
        TransactionIn(
            value_cents=5_000,
            date=date(2026, 3, 2),
            account_id=wallet.id,
            category_id=groceries.id,
        )
    )
    _assert_consistent(session, wallet.id, 5_000)

    txns.delete(txn.id)

    _assert_consistent(session, wallet.id, 10_000)
    assert [v.operation.value for v in txns.versions(txn.id)] == ["delete"]


def test_failed_balance_recompute_leaves_the_account_untouched(monkeypatch) -> None:
    session = make_session()
    main, groceries, _ = _ledger(session)
    TransactionService(session, WS, ALICE, today=TODAY).create(
        TransactionIn(
            value_cents=1_200,
            date=date(2026, 3, 2),
            account_id=main.id,
            category_id=groceries.id,
        )
    )

    def broken_recompute(self, account_id):
        raise RuntimeError("recompute failed")

    monkeypatch.setattr(BalanceService, "recalculate_account_balance", broken_recompute)
    accounts = AccountService(session, WS, ALICE)

    with pytest.raises(RuntimeError):
        accounts.update(
            main.id,
            AccountUpdate(init_balance_cents=20_000, expected_version=1),
            ConcurrencyMode.strict,
        )

    stored = accounts.get(main.id)
    assert stored.version == 1
    assert stored.init_balance_cents == 10_000
    assert accounts.versions(main.id) == []
    assert session.scalars(select(EntityConflict)).all() == []
    _assert_consistent(session, main.id, 8_800)


def test_failed_snapshot_leaves_the_transaction_untouched(monkeypatch) -> None:
    session = make_session()
    main, groceries, _ = _ledger(session)
    txns = TransactionService(session, WS, ALICE, today=TODAY)
    txn = txns.create(
        TransactionIn(
            value_cents=2_000,
            date=date(2026, 3, 2),
            account_id=main.id,
            category_id=groceries.id,
        )
    )

    def broken_snapshot(self, *args, **kwargs):
        raise RuntimeError("snapshot failed")

    monkeypatch.setattr(VersionService, "create_version", broken_snapshot)

    with pytest.raises(RuntimeError):
        txns.update(
            txn.id,
            TransactionUpdate(value_cents=5_000, expected_version=1),
            ConcurrencyMode.strict,
        )

    stored = txns.get(txn.id)
    assert stored.version == 1
    assert stored.value_cents == 2_000
    assert txns.versions(txn.id) == []
    assert session.scalars(select(EntityConflict)).all() == []
    _assert_consistent(session, main.id, 8_000)
