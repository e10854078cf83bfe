from typing import Any, Optional


class LedgerError(Exception):
    code = "internal_error"
    status_code = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_payload(self) -> dict[str, Any]:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


class NotFoundError(LedgerError, ValueError):
    code = "not_found"
    status_code = 404

    def __init__(self, resource: str, resource_id: Optional[str] = None) -> None:
        details = {"resource": resource}
        if resource_id is not None:
            details["id"] = resource_id
        super().__init__(f"{resource} not found", details)


class ValidationError(LedgerError, ValueError):
    code = "validation_error"
    status_code = 400


class ConflictError(LedgerError):
    """A write was rejected because the entity moved past the expected version.

    Carries both competing states so the client can render a resolution view.
    Never retried by the server.
    """

    code = "conflict"
    status_code = 409

    def __init__(
        self,
        *,
        conflict_id: str,
        entity_type: str,
        entity_id: str,
        current_version: int,
        incoming_version: int,
        current_data: dict[str, Any],
        incoming_data: dict[str, Any],
    ) -> None:
        self.conflict_id = conflict_id
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.current_version = current_version
        self.incoming_version = incoming_version
        self.current_data = current_data
        self.incoming_data = incoming_data
        super().__init__(
            f"{entity_type} has been modified by another user",
            {
                "conflict_id": conflict_id,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "current_version": current_version,
                "incoming_version": incoming_version,
                "current_data": current_data,
                "incoming_data": incoming_data,
            },
        )


class ConflictAlreadyHandledError(LedgerError):
    code = "conflict_already_handled"
    status_code = 409

    def __init__(self, conflict_id: str, status: str) -> None:
        super().__init__(
            f"Conflict already {status}",
            {"conflict_id": conflict_id, "status": status},
        )
