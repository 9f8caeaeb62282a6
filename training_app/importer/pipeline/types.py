"""
Dataclasses exchanged between the preview engine components.

Each type knows how to render itself as the camelCase JSON the API returns and,
for the types persisted inside a preview session, how to be rebuilt from it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from training_app.importer.contracts import ImportRow
from training_app.models.importer import (
    EntityType,
    ImportRowFailureType,
    PreviewSessionStatus,
    ResolutionAction,
)

from .keys import ConflictKey, ConflictType


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass(frozen=True)
class EntityReference:
    """Existing (usually soft-deleted) entity a conflict points at."""

    id: int
    name: str
    deactivated_at: datetime | None = None


@dataclass(frozen=True)
class Suggestion:
    """Active entity offered as a MAP target for a conflict."""

    id: int
    name: str
    score: float

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "score": round(self.score, 1)}


@dataclass(frozen=True)
class ConflictItem:
    type: ConflictType
    raw_value: str
    entity_type: EntityType | None = None
    occurrence_count: int = 0
    row_indices: tuple[int, ...] = ()
    existing: EntityReference | None = None
    suggestions: tuple[Suggestion, ...] = ()

    @property
    def key(self) -> ConflictKey:
        if self.entity_type is None:
            raise ValueError("Collaborator conflicts have no resolution key.")
        return ConflictKey.of(self.entity_type, self.raw_value)

    def key_dict(self) -> dict[str, str]:
        return {"entityType": self.entity_type.value if self.entity_type else None, "rawValue": self.raw_value}

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "entityType": self.entity_type.value if self.entity_type else None,
            "rawValue": self.raw_value,
            "existingEntityId": self.existing.id if self.existing else None,
            "existingEntityName": self.existing.name if self.existing else None,
            "deactivatedAt": _iso(self.existing.deactivated_at) if self.existing else None,
            "occurrenceCount": self.occurrence_count,
            "rows": list(self.row_indices),
            "suggestions": [suggestion.to_dict() for suggestion in self.suggestions],
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ConflictItem":
        existing = None
        if payload.get("existingEntityId") is not None:
            existing = EntityReference(
                id=int(payload["existingEntityId"]),
                name=payload.get("existingEntityName") or "",
                deactivated_at=_parse_iso(payload.get("deactivatedAt")),
            )
        entity_type = payload.get("entityType")
        return cls(
            type=ConflictType(payload["type"]),
            raw_value=payload["rawValue"],
            entity_type=EntityType(entity_type) if entity_type else None,
            occurrence_count=int(payload.get("occurrenceCount") or 0),
            row_indices=tuple(payload.get("rows") or ()),
            existing=existing,
            suggestions=tuple(
                Suggestion(id=item["id"], name=item["name"], score=float(item["score"]))
                for item in payload.get("suggestions") or ()
            ),
        )


@dataclass(frozen=True)
class Resolution:
    """Operator decision for one ENTITY_DELETED conflict."""

    entity_type: EntityType
    raw_value: str
    action: ResolutionAction
    target_entity_id: int | None = None
    memorize: bool = False

    @property
    def key(self) -> ConflictKey:
        return ConflictKey.of(self.entity_type, self.raw_value)

    @property
    def is_complete(self) -> bool:
        return self.action is not ResolutionAction.MAP or self.target_entity_id is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "entityType": self.entity_type.value,
            "rawValue": self.raw_value,
            "action": self.action.value,
            "targetEntityId": self.target_entity_id,
            "memorize": self.memorize,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Resolution":
        target = payload.get("targetEntityId")
        return cls(
            entity_type=EntityType(payload["entityType"]),
            raw_value=payload["rawValue"],
            action=ResolutionAction(payload["action"]),
            target_entity_id=int(target) if target is not None else None,
            memorize=bool(payload.get("memorize", False)),
        )


@dataclass(frozen=True)
class AppliedRule:
    """Memorized rule decision frozen into a session at generation time."""

    rule_id: int
    entity_type: EntityType
    raw_value: str
    action: ResolutionAction
    target_entity_id: int | None = None
    existing: EntityReference | None = None
    row_indices: tuple[int, ...] = ()

    @property
    def key(self) -> ConflictKey:
        return ConflictKey.of(self.entity_type, self.raw_value)

    def as_resolution(self) -> Resolution:
        return Resolution(
            entity_type=self.entity_type,
            raw_value=self.raw_value,
            action=self.action,
            target_entity_id=self.target_entity_id,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "ruleId": self.rule_id,
            "entityType": self.entity_type.value,
            "rawValue": self.raw_value,
            "action": self.action.value,
            "targetEntityId": self.target_entity_id,
            "existingEntityId": self.existing.id if self.existing else None,
            "existingEntityName": self.existing.name if self.existing else None,
            "rows": list(self.row_indices),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "AppliedRule":
        existing = None
        if payload.get("existingEntityId") is not None:
            existing = EntityReference(
                id=int(payload["existingEntityId"]),
                name=payload.get("existingEntityName") or "",
            )
        target = payload.get("targetEntityId")
        return cls(
            rule_id=int(payload["ruleId"]),
            entity_type=EntityType(payload["entityType"]),
            raw_value=payload["rawValue"],
            action=ResolutionAction(payload["action"]),
            target_entity_id=int(target) if target is not None else None,
            existing=existing,
            row_indices=tuple(payload.get("rows") or ()),
        )


@dataclass(frozen=True)
class CollaboratorNotFound:
    external_id: str
    rows: tuple[int, ...]

    def to_dict(self) -> dict[str, Any]:
        return {"externalId": self.external_id, "rows": list(self.rows)}


@dataclass(frozen=True)
class InactiveCollaborator:
    """Soft-deleted collaborator found by external id; informational only."""

    external_id: str
    collaborator_id: int
    full_name: str | None
    sessions_affected: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "externalId": self.external_id,
            "collaboratorId": self.collaborator_id,
            "fullName": self.full_name,
            "sessionsAffected": self.sessions_affected,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "InactiveCollaborator":
        return cls(
            external_id=payload["externalId"],
            collaborator_id=int(payload["collaboratorId"]),
            full_name=payload.get("fullName"),
            sessions_affected=int(payload.get("sessionsAffected") or 0),
        )


@dataclass(frozen=True)
class PreviewStats:
    total_rows: int = 0
    sessions_to_create: int = 0
    sessions_to_update: int = 0
    sessions_skipped_total: int = 0
    new_organizations: tuple[str, ...] = ()
    new_categories: tuple[str, ...] = ()
    new_departments: tuple[str, ...] = ()
    collaborators_found: int = 0
    collaborators_not_found: tuple[CollaboratorNotFound, ...] = ()
    formations_new: int = 0
    formations_existing: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalRows": self.total_rows,
            "sessionsToCreate": self.sessions_to_create,
            "sessionsToUpdate": self.sessions_to_update,
            "sessionsSkippedTotal": self.sessions_skipped_total,
            "newOrganizations": list(self.new_organizations),
            "newCategories": list(self.new_categories),
            "newDepartments": list(self.new_departments),
            "collaboratorsFound": self.collaborators_found,
            "collaboratorsNotFound": [item.to_dict() for item in self.collaborators_not_found],
            "formationsNew": self.formations_new,
            "formationsExisting": self.formations_existing,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "PreviewStats":
        return cls(
            total_rows=payload.get("totalRows", 0),
            sessions_to_create=payload.get("sessionsToCreate", 0),
            sessions_to_update=payload.get("sessionsToUpdate", 0),
            sessions_skipped_total=payload.get("sessionsSkippedTotal", 0),
            new_organizations=tuple(payload.get("newOrganizations") or ()),
            new_categories=tuple(payload.get("newCategories") or ()),
            new_departments=tuple(payload.get("newDepartments") or ()),
            collaborators_found=payload.get("collaboratorsFound", 0),
            collaborators_not_found=tuple(
                CollaboratorNotFound(external_id=item["externalId"], rows=tuple(item.get("rows") or ()))
                for item in payload.get("collaboratorsNotFound") or ()
            ),
            formations_new=payload.get("formationsNew", 0),
            formations_existing=payload.get("formationsExisting", 0),
        )


@dataclass
class PreviewSession:
    """
    Detached snapshot of a stored preview session.

    Instances handed out by the store are private copies; mutating one only
    has an effect when it happens inside ``PreviewSessionStore.mutate``.
    """

    preview_id: str
    status: PreviewSessionStatus
    created_at: datetime
    expires_at: datetime
    stats: PreviewStats
    conflicts: tuple[ConflictItem, ...]
    file_name: str | None = None
    source: str = "json"
    row_count: int = 0
    collaborator_conflicts: tuple[ConflictItem, ...] = ()
    inactive_collaborators: tuple[InactiveCollaborator, ...] = ()
    applied_rules: tuple[AppliedRule, ...] = ()
    resolutions: dict[ConflictKey, Resolution] = field(default_factory=dict)
    rows: list[ImportRow] | None = None
    created_by_user_id: int | None = None
    closed_at: datetime | None = None
    version: int = 0

    @property
    def rules_applied(self) -> int:
        return len(self.applied_rules)

    @property
    def can_import_directly(self) -> bool:
        return not self.conflicts

    def remaining_conflicts(self) -> list[ConflictItem]:
        """Conflicts without a decision, or with a MAP decision lacking its target."""

        remaining = []
        for conflict in self.conflicts:
            resolution = self.resolutions.get(conflict.key)
            if resolution is None or not resolution.is_complete:
                remaining.append(conflict)
        return remaining

    @property
    def can_import(self) -> bool:
        return not self.remaining_conflicts()


@dataclass(frozen=True)
class PreviewResult:
    session: PreviewSession

    def to_dict(self) -> dict[str, Any]:
        session = self.session
        return {
            "previewId": session.preview_id,
            "fileName": session.file_name,
            "stats": session.stats.to_dict(),
            "conflicts": [conflict.to_dict() for conflict in session.conflicts],
            "canImportDirectly": session.can_import_directly,
            "rulesApplied": session.rules_applied,
            "appliedRules": [rule.to_dict() for rule in session.applied_rules],
            "collaboratorConflicts": [conflict.to_dict() for conflict in session.collaborator_conflicts],
            "inactiveCollaborators": [item.to_dict() for item in session.inactive_collaborators],
            "sessionsSkippedTotal": session.stats.sessions_skipped_total,
            "expiresAt": _iso(session.expires_at),
        }


@dataclass(frozen=True)
class ResolutionOutcome:
    preview_id: str
    remaining: tuple[ConflictItem, ...]
    rules_memorized: int = 0

    @property
    def can_import(self) -> bool:
        return not self.remaining

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "previewId": self.preview_id,
            "remainingConflicts": len(self.remaining),
            "canImport": self.can_import,
            "remainingKeys": [conflict.key_dict() for conflict in self.remaining],
            "rulesMemorized": self.rules_memorized,
        }


@dataclass(frozen=True)
class PartialRowFailure:
    """A row that was not written; recorded on the result, never raised."""

    row_index: int
    failure_type: ImportRowFailureType
    reason: str
    entity_type: str | None = None
    raw_value: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "row": self.row_index,
            "type": self.failure_type.value,
            "reason": self.reason,
            "entityType": self.entity_type,
            "rawValue": self.raw_value,
        }


@dataclass
class ImportResult:
    preview_id: str
    total: int = 0
    created: int = 0
    updated: int = 0
    reactivated: int = 0
    skipped: int = 0
    errors: list[PartialRowFailure] = field(default_factory=list)
    processing_time_ms: int = 0
    history_id: int | None = None

    @property
    def failed(self) -> int:
        return len(self.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "previewId": self.preview_id,
            "stats": {
                "total": self.total,
                "created": self.created,
                "updated": self.updated,
                "failed": self.failed,
                "reactivated": self.reactivated,
                "skipped": self.skipped,
            },
            "errors": [error.to_dict() for error in self.errors],
            "processingTimeMs": self.processing_time_ms,
            "historyId": self.history_id,
        }
