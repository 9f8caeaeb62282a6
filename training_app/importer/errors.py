"""
Error kinds raised by the import preview workflow.

Every error carries a stable ``code`` and the HTTP status the blueprint maps it
to, so views translate them without per-endpoint branching.
"""

from __future__ import annotations

from http import HTTPStatus
from typing import Any, Iterable, Mapping


class ImportPreviewError(Exception):
    """Base class for preview workflow failures."""

    code = "import_error"
    http_status = HTTPStatus.INTERNAL_SERVER_ERROR

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message, "code": self.code}
        payload.update(self.details)
        return payload


class InvalidInput(ImportPreviewError):
    """Malformed row batch or resolution payload; nothing was written."""

    code = "invalid_input"
    http_status = HTTPStatus.BAD_REQUEST

    def __init__(self, message: str, *, errors: Iterable[str] = ()) -> None:
        errors = list(errors)
        super().__init__(message, details={"errors": errors} if errors else None)
        self.errors = errors


class SessionNotFound(ImportPreviewError):
    code = "session_not_found"
    http_status = HTTPStatus.NOT_FOUND

    def __init__(self, preview_id: str) -> None:
        super().__init__(f"Preview session {preview_id} not found.", details={"previewId": preview_id})
        self.preview_id = preview_id


class SessionClosed(ImportPreviewError):
    """The session reached a terminal state (confirmed, cancelled, expired)."""

    code = "session_closed"
    http_status = HTTPStatus.CONFLICT

    def __init__(self, preview_id: str, status: str) -> None:
        super().__init__(
            f"Preview session {preview_id} is {status.lower()} and can no longer be used.",
            details={"previewId": preview_id, "status": status},
        )
        self.preview_id = preview_id
        self.status = status


class ConflictsUnresolved(ImportPreviewError):
    code = "conflicts_unresolved"
    http_status = HTTPStatus.CONFLICT

    def __init__(self, preview_id: str, remaining_keys: Iterable[Mapping[str, str]]) -> None:
        remaining = [dict(key) for key in remaining_keys]
        super().__init__(
            f"{len(remaining)} conflict(s) must be resolved before confirming preview {preview_id}.",
            details={"previewId": preview_id, "remainingKeys": remaining},
        )
        self.preview_id = preview_id
        self.remaining_keys = remaining


class TargetMissing(ImportPreviewError):
    """A MAP decision was submitted for persistence without a target entity."""

    code = "target_missing"
    http_status = HTTPStatus.BAD_REQUEST

    def __init__(self, entity_type: str, raw_value: str | None = None) -> None:
        label = f"{entity_type} '{raw_value}'" if raw_value is not None else entity_type
        super().__init__(
            f"MAP action for {label} requires a targetEntityId.",
            details={"entityType": entity_type, "rawValue": raw_value},
        )


class ReferentialRace(ImportPreviewError):
    """An entity referenced by a decision vanished between resolve and confirm."""

    code = "referential_race"
    http_status = HTTPStatus.CONFLICT

    def __init__(self, entity_type: str, entity_id: int | None, message: str) -> None:
        super().__init__(message, details={"entityType": entity_type, "entityId": entity_id})
        self.entity_type = entity_type
        self.entity_id = entity_id


class ImportCancelled(ImportPreviewError):
    """Confirm exceeded its deadline or was cancelled; the transaction was rolled back."""

    code = "import_cancelled"
    http_status = HTTPStatus.GATEWAY_TIMEOUT


class RuleNotFound(ImportPreviewError):
    code = "rule_not_found"
    http_status = HTTPStatus.NOT_FOUND

    def __init__(self, rule_id: int) -> None:
        super().__init__(f"Import rule {rule_id} not found.", details={"ruleId": rule_id})
        self.rule_id = rule_id


class SessionBusy(ImportPreviewError):
    """Concurrent writers kept winning the optimistic version check."""

    code = "session_busy"
    http_status = HTTPStatus.CONFLICT

    def __init__(self, preview_id: str, attempts: int) -> None:
        super().__init__(
            f"Preview session {preview_id} is being modified concurrently; retry the request.",
            details={"previewId": preview_id, "attempts": attempts},
        )
        self.preview_id = preview_id
