import logging
from datetime import date
from typing import Any, NamedTuple, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal
from errors import LedgerError
from events import EventBus
from models import BudgetNotification, ConcurrencyMode, EntityConflict, EntityVersion
from resolution import ConflictResolutionEngine
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    BudgetIn,
    CategoryIn,
    PayeeIn,
    RecurringTransactionIn,
    ResolveConflictIn,
    TransactionIn,
)
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    NotificationService,
    PayeeService,
    RecurringTransactionService,
    TransactionService,
)
from versioning import VersionService, snapshot_of

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Shared Ledger")
events = EventBus()


class Caller(NamedTuple):
    workspace_id: str
    user_id: str


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_events() -> EventBus:
    return events


def get_caller(
    x_workspace_id: str = Header(..., min_length=1),
    x_user_id: str = Header(..., min_length=1),
) -> Caller:
    return Caller(workspace_id=x_workspace_id, user_id=x_user_id)


scheduler_manager = SchedulerManager(events)


@app.on_event("startup")
def startup_event():
    if settings.scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(LedgerError)
def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"request_failed: path={request.url.path} error={exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


def version_payload(snapshot: EntityVersion) -> dict[str, Any]:
    return {
        "entity_type": snapshot.entity_type.value,
        "entity_id": snapshot.entity_id,
        "version": snapshot.version,
        "operation": snapshot.operation.value,
        "previous_data": snapshot.previous_data,
        "new_data": snapshot.new_data,
        "changed_by": snapshot.changed_by,
        "changed_at": snapshot.changed_at.isoformat(),
        "changes": [
            {"field": c.field, "from": c.current, "to": c.incoming}
            for c in VersionService.changes(snapshot)
        ],
    }


def conflict_payload(conflict: EntityConflict) -> dict[str, Any]:
    return {
        "id": conflict.id,
        "entity_type": conflict.entity_type.value,
        "entity_id": conflict.entity_id,
        "status": conflict.status.value,
        "current_version": conflict.current_version,
        "incoming_version": conflict.incoming_version,
        "current_data": conflict.current_data,
        "incoming_data": conflict.incoming_data,
        "detected_by": conflict.detected_by,
        "detected_at": conflict.detected_at.isoformat(),
        "resolved_by": conflict.resolved_by,
        "resolved_at": conflict.resolved_at.isoformat() if conflict.resolved_at else None,
        "resolved_version": conflict.resolved_version,
    }


def notification_payload(notification: BudgetNotification) -> dict[str, Any]:
    return {
        "id": notification.id,
        "budget_id": notification.budget_id,
        "threshold": notification.threshold,
        "message": notification.message,
        "read": notification.read,
        "created_at": notification.created_at.isoformat(),
    }


def entity_router(prefix: str, service_cls, create_schema) -> APIRouter:
    """CRUD plus history routes for one versioned entity type."""
    router = APIRouter(prefix=prefix)
    update_schema = service_cls.update_schema

    def service(
        db: Session = Depends(get_db),
        caller: Caller = Depends(get_caller),
        bus: EventBus = Depends(get_events),
    ):
        return service_cls(db, caller.workspace_id, caller.user_id, bus)

    @router.get("")
    def list_entities(svc=Depends(service)):
        return {"items": [snapshot_of(entity) for entity in svc.list_all()]}

    @router.post("", status_code=201)
    def create_entity(data: create_schema, svc=Depends(service)):
        return snapshot_of(svc.create(data))

    @router.get("/{entity_id}")
    def get_entity(entity_id: str, svc=Depends(service)):
        return snapshot_of(svc.get(entity_id))

    @router.patch("/{entity_id}")
    def update_entity(
        entity_id: str,
        data: update_schema,
        mode: Optional[ConcurrencyMode] = None,
        svc=Depends(service),
    ):
        mode = mode or ConcurrencyMode.for_expected_version(data.expected_version)
        return snapshot_of(svc.update(entity_id, data, mode))

    @router.delete("/{entity_id}")
    def delete_entity(entity_id: str, svc=Depends(service)):
        svc.delete(entity_id)
        return {"deleted": entity_id}

    @router.get("/{entity_id}/versions")
    def entity_versions(
        entity_id: str,
        limit: int = Query(default=settings.version_history_limit, ge=1, le=500),
        svc=Depends(service),
    ):
        return {
            "items": [version_payload(v) for v in svc.versions(entity_id, limit=limit)]
        }

    if hasattr(service_cls, "recalculate_balance"):

        @router.post("/{entity_id}/recalculate")
        def recalculate(entity_id: str, svc=Depends(service)):
            return {"id": entity_id, "balance_cents": svc.recalculate_balance(entity_id)}

    return router


app.include_router(entity_router("/accounts", AccountService, AccountIn))
app.include_router(entity_router("/categories", CategoryService, CategoryIn))
app.include_router(entity_router("/payees", PayeeService, PayeeIn))
app.include_router(entity_router("/transactions", TransactionService, TransactionIn))
app.include_router(entity_router("/budgets", BudgetService, BudgetIn))


def resolution_engine(
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
    bus: EventBus = Depends(get_events),
) -> ConflictResolutionEngine:
    return ConflictResolutionEngine(db, caller.workspace_id, caller.user_id, bus)


@app.get("/conflicts")
def list_conflicts(engine: ConflictResolutionEngine = Depends(resolution_engine)):
    return {"items": [conflict_payload(c) for c in engine.list_open()]}


@app.get("/conflicts/{conflict_id}")
def get_conflict(
    conflict_id: str, engine: ConflictResolutionEngine = Depends(resolution_engine)
):
    payload = conflict_payload(engine.get(conflict_id))
    payload["diff"] = [
        {"field": c.field, "current": c.current, "incoming": c.incoming}
        for c in engine.field_diff(conflict_id)
    ]
    return payload


@app.post("/conflicts/{conflict_id}/resolve")
def resolve_conflict(
    conflict_id: str,
    data: ResolveConflictIn,
    engine: ConflictResolutionEngine = Depends(resolution_engine),
):
    conflict = engine.resolve(conflict_id, data.chosen_version, data.merge_data)
    return conflict_payload(conflict)


@app.post("/conflicts/{conflict_id}/dismiss")
def dismiss_conflict(
    conflict_id: str, engine: ConflictResolutionEngine = Depends(resolution_engine)
):
    return conflict_payload(engine.dismiss(conflict_id))


def recurring_service(
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
    bus: EventBus = Depends(get_events),
) -> RecurringTransactionService:
    return RecurringTransactionService(db, caller.workspace_id, caller.user_id, bus)


@app.get("/recurring")
def list_recurring(svc: RecurringTransactionService = Depends(recurring_service)):
    return {"items": [snapshot_of(rule) for rule in svc.list_all()]}


@app.post("/recurring", status_code=201)
def create_recurring(
    data: RecurringTransactionIn,
    svc: RecurringTransactionService = Depends(recurring_service),
):
    return snapshot_of(svc.create(data))


@app.delete("/recurring/{recurring_id}")
def delete_recurring(
    recurring_id: str, svc: RecurringTransactionService = Depends(recurring_service)
):
    svc.delete(recurring_id)
    return {"deleted": recurring_id}


@app.post("/recurring/run")
def run_recurring(
    today: Optional[date] = None,
    svc: RecurringTransactionService = Depends(recurring_service),
):
    return {"posted": svc.materialize_due(today)}


@app.get("/notifications")
def list_notifications(
    unread_only: bool = False,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    items = NotificationService(db, caller.user_id).list(unread_only=unread_only)
    return {"items": [notification_payload(n) for n in items]}


@app.post("/notifications/{notification_id}/read")
def read_notification(
    notification_id: str,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    notification = NotificationService(db, caller.user_id).mark_read(notification_id)
    return notification_payload(notification)
