from __future__ import annotations

import logging
from typing import Any, NoReturn, Optional

from sqlalchemy.orm import Session

from errors import ConflictError
from events import ENTITY_CONFLICT_DETECTED, EventBus
from models import ConflictStatus, EntityConflict, EntityType

logger = logging.getLogger(__name__)


class ConflictDetector:
    """Compares the version a writer based its edit on with the stored one.

    The check has to run inside the same transaction that later writes the
    row; the row is loaded ``FOR UPDATE`` and the ORM's ``version_id_col``
    makes the UPDATE itself conditional, so a writer that passes the check
    against a stale read still cannot land.
    """

    def __init__(
        self,
        session: Session,
        events: Optional[EventBus] = None,
        user_id: Optional[str] = None,
    ) -> None:
        self.session = session
        self.events = events or EventBus()
        self.user_id = user_id

    def check_for_conflict(
        self,
        entity_type: EntityType,
        entity_id: str,
        stored_version: int,
        expected_version: Optional[int],
        current_data: dict[str, Any],
        proposed_new_data: dict[str, Any],
        workspace_id: str,
    ) -> None:
        if expected_version is None:
            return
        if expected_version == stored_version:
            return
        self.record_conflict(
            entity_type,
            entity_id,
            stored_version,
            expected_version,
            current_data,
            proposed_new_data,
            workspace_id,
        )

    def record_conflict(
        self,
        entity_type: EntityType,
        entity_id: str,
        stored_version: int,
        expected_version: int,
        current_data: dict[str, Any],
        proposed_new_data: dict[str, Any],
        workspace_id: str,
    ) -> NoReturn:
        """Discard the rejected attempt, persist the Conflict, raise.

        The Conflict is committed on its own so it outlives the rejected
        write; nothing the attempt had pending is kept.
        """
        self.session.rollback()
        conflict = EntityConflict(
            entity_type=entity_type,
            entity_id=entity_id,
            workspace_id=workspace_id,
            current_version=stored_version,
            incoming_version=expected_version,
            current_data=current_data,
            incoming_data=proposed_new_data,
            status=ConflictStatus.open,
            detected_by=self.user_id,
        )
        self.session.add(conflict)
        self.session.commit()

        logger.warning(
            f"conflict_detected: entity={entity_type.value} id={entity_id} "
            f"current={stored_version} incoming={expected_version} "
            f"conflict_id={conflict.id}"
        )
        self.events.publish(
            ENTITY_CONFLICT_DETECTED,
            {
                "conflict_id": conflict.id,
                "workspace_id": workspace_id,
                "entity_type": entity_type.value,
                "entity_id": entity_id,
                "current_version": stored_version,
                "incoming_version": expected_version,
            },
        )
        raise ConflictError(
            conflict_id=conflict.id,
            entity_type=entity_type.value,
            entity_id=entity_id,
            current_version=stored_version,
            incoming_version=expected_version,
            current_data=current_data,
            incoming_data=proposed_new_data,
        )
