from __future__ import annotations

import logging
from typing import Any, Optional

import pydantic
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from database import transactional
from errors import ConflictAlreadyHandledError, NotFoundError, ValidationError
from events import ENTITY_CONFLICT_RESOLVED, EventBus
from models import ConcurrencyMode, ConflictStatus, EntityConflict, utcnow
from services import service_for
from versioning import FieldChange, changed_fields, snapshot_of

logger = logging.getLogger(__name__)


class ConflictResolutionEngine:
    """Turns an open Conflict into exactly one terminal outcome.

    The status flip is a compare-and-set inside the same transaction as the
    entity write, so of two concurrent resolvers exactly one lands and the
    other gets ``ConflictAlreadyHandledError`` with nothing applied.
    """

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

    def list_open(self) -> list[EntityConflict]:
        stmt = (
            select(EntityConflict)
            .where(
                EntityConflict.workspace_id == self.workspace_id,
                EntityConflict.status == ConflictStatus.open,
            )
            .order_by(EntityConflict.detected_at.desc(), EntityConflict.id)
        )
        return list(self.session.scalars(stmt))

    def get(self, conflict_id: str) -> EntityConflict:
        conflict = self.session.get(EntityConflict, conflict_id)
        if not conflict or conflict.workspace_id != self.workspace_id:
            raise NotFoundError("Conflict", conflict_id)
        return conflict

    def field_diff(self, conflict_id: str) -> list[FieldChange]:
        conflict = self.get(conflict_id)
        return changed_fields(conflict.current_data, conflict.incoming_data)

    def resolve(
        self,
        conflict_id: str,
        chosen_version: int,
        merge_data: Optional[dict[str, Any]] = None,
    ) -> EntityConflict:
        conflict = self._open_conflict(conflict_id)
        if chosen_version == conflict.current_version:
            chosen_data = conflict.current_data
        elif chosen_version == conflict.incoming_version:
            chosen_data = conflict.incoming_data
        else:
            raise ValidationError(
                "chosen_version must be the conflict's current or incoming version",
                details={
                    "current_version": conflict.current_version,
                    "incoming_version": conflict.incoming_version,
                },
            )

        service = service_for(conflict.entity_type)(
            self.session, self.workspace_id, self.user_id, self.events
        )
        needs_write = bool(merge_data) or chosen_version != conflict.current_version
        payload = None
        if needs_write:
            payload = self._build_update(service, conflict, chosen_data, merge_data or {})

        entity = None
        with transactional(self.session):
            resolved_version = conflict.current_version
            if needs_write:
                entity = service.write_update(
                    conflict.entity_id, payload, ConcurrencyMode.strict
                )
                resolved_version = entity.version
            self._close(conflict_id, ConflictStatus.resolved, resolved_version)

        logger.info(
            f"conflict_resolved: conflict_id={conflict_id} "
            f"chosen={chosen_version} resolved_version={resolved_version} "
            f"user={self.user_id}"
        )
        self.events.publish(
            ENTITY_CONFLICT_RESOLVED,
            {
                "conflict_id": conflict_id,
                "workspace_id": self.workspace_id,
                "entity_type": conflict.entity_type.value,
                "entity_id": conflict.entity_id,
                "resolved_version": resolved_version,
            },
        )
        if entity is not None:
            service.publish(entity.id, entity.version, "update", snapshot_of(entity))
        self.session.refresh(conflict)
        return conflict

    def dismiss(self, conflict_id: str) -> EntityConflict:
        conflict = self._open_conflict(conflict_id)
        with transactional(self.session):
            self._close(conflict_id, ConflictStatus.dismissed, None)
        logger.info(
            f"conflict_dismissed: conflict_id={conflict_id} user={self.user_id}"
        )
        self.session.refresh(conflict)
        return conflict

    def _open_conflict(self, conflict_id: str) -> EntityConflict:
        conflict = self.get(conflict_id)
        if conflict.status != ConflictStatus.open:
            raise ConflictAlreadyHandledError(conflict_id, conflict.status.value)
        return conflict

    def _close(
        self,
        conflict_id: str,
        status: ConflictStatus,
        resolved_version: Optional[int],
    ) -> None:
        result = self.session.execute(
            update(EntityConflict)
            .where(
                EntityConflict.id == conflict_id,
                EntityConflict.status == ConflictStatus.open,
            )
            .values(
                status=status,
                resolved_by=self.user_id,
                resolved_at=utcnow(),
                resolved_version=resolved_version,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            current = self.session.scalar(
                select(EntityConflict.status).where(EntityConflict.id == conflict_id)
            )
            raise ConflictAlreadyHandledError(conflict_id, current.value)

    @staticmethod
    def _build_update(service, conflict: EntityConflict, chosen_data, merge_data):
        schema = service.update_schema
        editable = schema.editable_fields()
        unknown = sorted(set(merge_data) - editable)
        if unknown:
            raise ValidationError(
                "merge_data contains fields that cannot be edited",
                details={"fields": unknown},
            )
        fields = {key: chosen_data[key] for key in editable if key in chosen_data}
        fields.update(merge_data)
        try:
            return schema.model_validate(
                {**fields, "expected_version": conflict.current_version}
            )
        except pydantic.ValidationError as exc:
            raise ValidationError(
                "merge_data is not valid for this entity",
                details={"errors": exc.errors(include_url=False, include_context=False)},
            ) from exc
