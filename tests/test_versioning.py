from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import NotFoundError, ValidationError
from models import ConcurrencyMode, EntityType, EntityVersion, SnapshotOperation
from schemas import AccountIn, AccountUpdate, PayeeIn, PayeeUpdate, TransactionIn
from services import AccountService, PayeeService, TransactionService, service_for
from versioning import FieldChange, VersionService, changed_fields

WS = "ws-1"
ALICE = "alice"
BOB = "bob"


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def test_update_appends_snapshot_and_bumps_version() -> None:
    session = make_session()
    accounts = AccountService(session, WS, ALICE)
    account = accounts.create(AccountIn(name="Main", init_balance_cents=10_000))
    assert account.version == 1

    updated = AccountService(session, WS, BOB).update(
        account.id, AccountUpdate(name="Checking"), ConcurrencyMode.best_effort
    )

    assert updated.version == 2
    assert updated.name == "Checking"
    assert updated.last_edited_by == BOB
    history = accounts.versions(account.id)
    assert [v.version for v in history] == [1]
    assert history[0].previous_data["name"] == "Main"
    assert history[0].new_data["name"] == "Checking"
    assert history[0].new_data["version"] == 2
    assert history[0].changed_by == BOB


def test_versions_are_monotonic_and_listed_newest_first() -> None:
    session = make_session()
    payees = PayeeService(session, WS, ALICE)
    payee = payees.create(PayeeIn(name="Bakery"))

    for name in ("Bakery North", "Bakery South", "Bakery East"):
        payees.update(payee.id, PayeeUpdate(name=name), ConcurrencyMode.best_effort)

    assert payees.get(payee.id).version == 4
    assert [v.version for v in payees.versions(payee.id)] == [3, 2, 1]
    assert [v.version for v in payees.versions(payee.id, limit=2)] == [3, 2]


def test_strict_update_requires_expected_version() -> None:
    session = make_session()
    accounts = AccountService(session, WS, ALICE)
    account = accounts.create(AccountIn(name="Main"))

    with pytest.raises(ValidationError):
        accounts.update(account.id, AccountUpdate(name="Other"), ConcurrencyMode.strict)

    assert accounts.get(account.id).version == 1
    assert accounts.versions(account.id) == []


def test_strict_update_with_matching_version_succeeds() -> None:
    session = make_session()
    accounts = AccountService(session, WS, ALICE)
    account = accounts.create(AccountIn(name="Main"))

    updated = accounts.update(
        account.id,
        AccountUpdate(name="Main EUR", expected_version=1),
        ConcurrencyMode.strict,
    )

    assert updated.version == 2


def test_delete_records_final_snapshot() -> None:
    session = make_session()
    payees = PayeeService(session, WS, ALICE)
    payee = payees.create(PayeeIn(name="Landlord"))
    payees.update(payee.id, PayeeUpdate(name="Landlady"), ConcurrencyMode.best_effort)

    payees.delete(payee.id)

    with pytest.raises(NotFoundError):
        payees.get(payee.id)
    history = payees.versions(payee.id)
    assert [v.version for v in history] == [2, 1]
    assert history[0].operation == SnapshotOperation.delete
    assert history[0].previous_data["name"] == "Landlady"
    assert history[0].new_data is None


def test_history_is_scoped_to_the_workspace() -> None:
    session = make_session()
    payees = PayeeService(session, WS, ALICE)
    payee = payees.create(PayeeIn(name="Shop"))
    payees.update(payee.id, PayeeUpdate(name="Shop 2"), ConcurrencyMode.best_effort)

    assert PayeeService(session, "ws-other", ALICE).versions(payee.id) == []


def test_derived_balance_changes_do_not_version_the_account() -> None:
    session = make_session()
    account = AccountService(session, WS, ALICE).create(
        AccountIn(name="Main", init_balance_cents=1_000)
    )

    TransactionService(session, WS, ALICE).create(
        TransactionIn(value_cents=250, date=date(2026, 3, 2), account_id=account.id)
    )

    session.refresh(account)
    assert account.balance_cents == 750
    assert account.version == 1
    assert session.scalars(select(EntityVersion)).all() == []


def test_get_entity_version_by_number() -> None:
    session = make_session()
    accounts = AccountService(session, WS, ALICE)
    account = accounts.create(AccountIn(name="Main"))
    accounts.update(account.id, AccountUpdate(name="Spare"), ConcurrencyMode.best_effort)

    versions = VersionService(session)
    snapshot = versions.get_entity_version(EntityType.account, account.id, 1)
    assert VersionService.changes(snapshot) == [FieldChange("name", "Main", "Spare")]
    with pytest.raises(NotFoundError):
        versions.get_entity_version(EntityType.account, account.id, 9)


def test_changed_fields_skips_bookkeeping_and_derived_fields() -> None:
    current = {
        "id": "a",
        "name": "Main",
        "version": 1,
        "balance_cents": 500,
        "updated_at": "2026-01-01T00:00:00",
        "account_type": "Cash",
    }
    incoming = {
        "id": "a",
        "name": "Main",
        "version": 2,
        "balance_cents": 900,
        "updated_at": "2026-01-02T00:00:00",
        "account_type": "Bank",
    }

    assert changed_fields(current, incoming) == [
        FieldChange(field="account_type", current="Cash", incoming="Bank")
    ]


def test_service_lookup_by_entity_type() -> None:
    assert service_for(EntityType.account) is AccountService
    assert service_for("Payee") is PayeeService
    with pytest.raises(ValueError):
        service_for("Invoice")
