"""Error taxonomy for the medication scheduling engine.

Every rejected action maps to one of these kinds. Each error carries a stable
``code`` so API layers can translate it without string matching.
"""

from __future__ import annotations

from typing import Any


class MedicationEngineError(Exception):
    code = "engine_error"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


class ValidationError(MedicationEngineError):
    """Malformed schedule, grace configuration or action argument."""

    code = "validation_error"

    def __init__(self, message: str, *, errors: list[str] | None = None) -> None:
        self.errors = list(errors or [message])
        super().__init__(message, details={"errors": self.errors})


class ConflictError(MedicationEngineError):
    """Stale command version or a precondition that no longer holds."""

    code = "conflict"


class NotFoundError(MedicationEngineError):
    code = "not_found"

    def __init__(self, entity: str, entity_id: str) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(
            f"{entity} {entity_id} not found",
            details={"entity": entity, "id": entity_id},
        )


class UndoExpiredError(MedicationEngineError):
    code = "undo_expired"


class TransactionAbortedError(MedicationEngineError):
    """Contention retries were exhausted."""

    code = "transaction_aborted"


class AccessDeniedError(MedicationEngineError):
    code = "access_denied"
