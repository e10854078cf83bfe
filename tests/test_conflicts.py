import pytest
from sqlalchemy import create_engine, event, select
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import ConflictError, ValidationError
from events import ENTITY_CONFLICT_DETECTED, EventBus
from models import ConcurrencyMode, ConflictStatus, EntityConflict, EntityType
from schemas import AccountIn, AccountUpdate, CategoryIn, CategoryUpdate
from services import AccountService, CategoryService

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


def _edit_from_both_sides(session, bus=None):
    """Alice and Bob both loaded version 1; Alice saves first."""
    account = AccountService(session, WS, ALICE, bus).create(AccountIn(name="Main"))
    AccountService(session, WS, ALICE, bus).update(
        account.id,
        AccountUpdate(name="Alice's", expected_version=1),
        ConcurrencyMode.strict,
    )
    return account.id


def test_stale_write_is_rejected_and_recorded() -> None:
    session = make_session()
    account_id = _edit_from_both_sides(session)
    bob = AccountService(session, WS, BOB)

    with pytest.raises(ConflictError) as excinfo:
        bob.update(
            account_id,
            AccountUpdate(name="Bob's", expected_version=1),
            ConcurrencyMode.strict,
        )

    error = excinfo.value
    assert error.current_version == 2
    assert error.incoming_version == 1
    assert error.current_data["name"] == "Alice's"
    assert error.incoming_data["name"] == "Bob's"

    stored = bob.get(account_id)
    assert stored.name == "Alice's"
    assert stored.version == 2
    assert [v.version for v in bob.versions(account_id)] == [1]

    conflicts = session.scalars(select(EntityConflict)).all()
    assert len(conflicts) == 1
    conflict = conflicts[0]
    assert conflict.id == error.conflict_id
    assert conflict.entity_type == EntityType.account
    assert conflict.status == ConflictStatus.open
    assert conflict.detected_by == BOB
    assert (conflict.current_version, conflict.incoming_version) == (2, 1)


def test_conflict_detection_publishes_event() -> None:
    session = make_session()
    bus = EventBus()
    received = []
    bus.subscribe(ENTITY_CONFLICT_DETECTED, received.append)
    account_id = _edit_from_both_sides(session, bus)

    with pytest.raises(ConflictError) as excinfo:
        AccountService(session, WS, BOB, bus).update(
            account_id,
            AccountUpdate(name="Bob's", expected_version=1),
            ConcurrencyMode.strict,
        )

    assert len(received) == 1
    assert received[0].payload["conflict_id"] == excinfo.value.conflict_id
    assert received[0].payload["current_version"] == 2


def test_failing_subscriber_does_not_block_writes() -> None:
    session = make_session()
    bus = EventBus()

    def broken(_event):
        raise RuntimeError("subscriber down")

    bus.subscribe("accountUpdated", broken)
    accounts = AccountService(session, WS, ALICE, bus)
    account = accounts.create(AccountIn(name="Main"))

    updated = accounts.update(
        account.id, AccountUpdate(name="Renamed"), ConcurrencyMode.best_effort
    )

    assert updated.version == 2


def test_best_effort_mode_skips_detection() -> None:
    session = make_session()
    account_id = _edit_from_both_sides(session)

    updated = AccountService(session, WS, BOB).update(
        account_id,
        AccountUpdate(name="Bob's", expected_version=1),
        ConcurrencyMode.best_effort,
    )

    assert updated.name == "Bob's"
    assert updated.version == 3
    assert session.scalars(select(EntityConflict)).all() == []


def test_rejected_write_leaves_no_side_effects() -> None:
    session = make_session()
    categories = CategoryService(session, WS, ALICE)
    category = categories.create(CategoryIn(name="Food"))
    categories.update(
        category.id, CategoryUpdate(name="Groceries"), ConcurrencyMode.best_effort
    )

    with pytest.raises(ConflictError):
        CategoryService(session, WS, BOB).update(
            category.id,
            CategoryUpdate(category_type="Income", expected_version=1),
            ConcurrencyMode.strict,
        )

    stored = categories.get(category.id)
    assert stored.category_type.value == "Expense"
    assert stored.version == 2


def test_duplicate_name_is_a_validation_error() -> None:
    session = make_session()
    accounts = AccountService(session, WS, ALICE)
    accounts.create(AccountIn(name="Main"))
    other = accounts.create(AccountIn(name="Spare"))

    with pytest.raises(ValidationError):
        accounts.create(AccountIn(name="main"))
    with pytest.raises(ValidationError):
        accounts.update(other.id, AccountUpdate(name="Main"), ConcurrencyMode.best_effort)

    assert session.scalars(select(EntityConflict)).all() == []


def test_write_that_loses_the_race_at_flush_records_one_conflict(tmp_path) -> None:
    engine = create_engine(f"sqlite:///{tmp_path / 'race.db'}")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    with SessionLocal() as setup:
        account_id = AccountService(setup, WS, ALICE).create(AccountIn(name="Main")).id

    writer = SessionLocal()
    interleaved = []

    def bob_saves_first(session, flush_context, instances):
        if interleaved:
            return
        interleaved.append(True)
        with SessionLocal() as other:
            AccountService(other, WS, BOB).update(
                account_id, AccountUpdate(name="Bob's"), ConcurrencyMode.best_effort
            )

    event.listen(writer, "before_flush", bob_saves_first)

    with pytest.raises(ConflictError) as excinfo:
        AccountService(writer, WS, ALICE).update(
            account_id,
            AccountUpdate(name="Alice's", expected_version=1),
            ConcurrencyMode.strict,
        )
    event.remove(writer, "before_flush", bob_saves_first)
    writer.close()

    assert excinfo.value.current_version == 2
    assert excinfo.value.incoming_version == 1
    with SessionLocal() as check:
        stored = AccountService(check, WS, ALICE).get(account_id)
        assert stored.name == "Bob's"
        assert stored.version == 2
        conflicts = check.scalars(select(EntityConflict)).all()
        assert len(conflicts) == 1
        assert conflicts[0].incoming_data["name"] == "Alice's"


def test_best_effort_write_that_loses_the_race_at_flush_still_lands(tmp_path) -> None:
    engine = create_engine(f"sqlite:///{tmp_path / 'race.db'}")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    with SessionLocal() as setup:
        account_id = AccountService(setup, WS, ALICE).create(AccountIn(name="Main")).id

    writer = SessionLocal()
    interleaved = []

    def bob_saves_first(session, flush_context, instances):
        if interleaved:
            return
        interleaved.append(True)
        with SessionLocal() as other:
            AccountService(other, WS, BOB).update(
                account_id, AccountUpdate(name="Bob's"), ConcurrencyMode.best_effort
            )

    event.listen(writer, "before_flush", bob_saves_first)

    updated = AccountService(writer, WS, ALICE).update(
        account_id, AccountUpdate(name="Alice's"), ConcurrencyMode.best_effort
    )
    event.remove(writer, "before_flush", bob_saves_first)
    writer.close()

    assert updated.name == "Alice's"
    assert updated.version == 3
    with SessionLocal() as check:
        accounts = AccountService(check, WS, ALICE)
        stored = accounts.get(account_id)
        assert stored.name == "Alice's"
        assert stored.version == 3
        assert [v.version for v in accounts.versions(account_id)] == [2, 1]
        assert check.scalars(select(EntityConflict)).all() == []
