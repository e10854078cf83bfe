from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Iterator, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from errors import NotFoundError
from models import EntityType, EntityVersion, SnapshotOperation

BOOKKEEPING_FIELDS = frozenset(
    {
        "id",
        "version",
        "created_at",
        "updated_at",
        "created_by",
        "last_edited_by",
        "workspace_id",
    }
)
DERIVED_FIELDS = frozenset({"balance_cents", "current_spent_cents", "last_reset_date"})


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def jsonable_changes(changes: dict[str, Any]) -> dict[str, Any]:
    return {key: _jsonable(value) for key, value in changes.items()}


def snapshot_of(entity: Any) -> dict[str, Any]:
    """Full column state of an ORM entity as JSON-safe values."""
    return {
        column.key: _jsonable(getattr(entity, column.key))
        for column in entity.__table__.columns
    }


@dataclass(frozen=True)
class FieldChange:
    field: str
    current: Any
    incoming: Any


def changed_fields(
    current: dict[str, Any], incoming: dict[str, Any]
) -> list[FieldChange]:
    """User-meaningful differences between two serialized states.

    Bookkeeping and derived fields are never reported. Pure function.
    """
    keys = (set(current) | set(incoming)) - BOOKKEEPING_FIELDS - DERIVED_FIELDS
    return [
        FieldChange(field=key, current=current.get(key), incoming=incoming.get(key))
        for key in sorted(keys)
        if current.get(key) != incoming.get(key)
    ]


class VersionService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create_version(
        self,
        entity_type: EntityType,
        entity_id: str,
        previous_data: dict[str, Any],
        new_data: Optional[dict[str, Any]],
        changed_by: str,
        operation: SnapshotOperation = SnapshotOperation.update,
    ) -> EntityVersion:
        """Append a snapshot inside the caller's transaction.

        Must run before the row's version increments: the snapshot is keyed
        by the version being replaced, taken from ``previous_data``.
        """
        snapshot = EntityVersion(
            entity_type=entity_type,
            entity_id=entity_id,
            version=int(previous_data["version"]),
            operation=operation,
            previous_data=previous_data,
            new_data=new_data,
            changed_by=changed_by,
        )
        self.session.add(snapshot)
        return snapshot

    def get_entity_versions(
        self,
        entity_type: EntityType,
        entity_id: str,
        limit: Optional[int] = None,
    ) -> Iterator[EntityVersion]:
        stmt = (
            select(EntityVersion)
            .where(
                EntityVersion.entity_type == entity_type,
                EntityVersion.entity_id == entity_id,
            )
            .order_by(EntityVersion.version.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        yield from self.session.scalars(stmt)

    def get_entity_version(
        self, entity_type: EntityType, entity_id: str, version: int
    ) -> EntityVersion:
        snapshot = self.session.scalar(
            select(EntityVersion).where(
                EntityVersion.entity_type == entity_type,
                EntityVersion.entity_id == entity_id,
                EntityVersion.version == version,
            )
        )
        if snapshot is None:
            raise NotFoundError("Version", f"{entity_id}@{version}")
        return snapshot

    @staticmethod
    def changes(snapshot: EntityVersion) -> list[FieldChange]:
        return changed_fields(snapshot.previous_data, snapshot.new_data or {})
