"""
Preview generation: diff normalized rows against the entity graph.

``PreviewBuilder.build`` groups rows per reference dimension, resolves each
distinct natural key against active entities, then soft-deleted ones, applies
memorized rules from a single snapshot, and persists the outcome as an OPEN
preview session.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Sequence

from flask import current_app, has_app_context
from sqlalchemy.orm import Session

from config.monitoring import ImporterMonitoring
from training_app.importer.contracts import ImportRow
from training_app.models import db
from training_app.models.importer import EntityType, PreviewSessionStatus, ResolutionAction
from training_app.utils.importer import get_importer_setting

from ..errors import InvalidInput
from .directory import EntityDirectory, SessionRecordKey, reference_for
from .keys import ConflictType, normalize_natural_key
from .rules import RuleEngine, RuleSnapshot
from .session_store import PreviewSessionStore
from .types import (
    AppliedRule,
    CollaboratorNotFound,
    ConflictItem,
    InactiveCollaborator,
    PreviewResult,
    PreviewSession,
    PreviewStats,
)

DIMENSIONS: tuple[tuple[EntityType, str], ...] = (
    (EntityType.DEPARTMENT, "department_name"),
    (EntityType.ORGANIZATION, "organization_name"),
    (EntityType.CATEGORY, "category_name"),
)

DEFAULT_SUGGESTION_LIMIT = 3
DEFAULT_SUGGESTION_MIN_SCORE = 70


@dataclass
class ValueGroup:
    """Rows sharing one natural key within a dimension."""

    raw_value: str
    rows: list[int] = field(default_factory=list)


@dataclass
class DimensionOutcome:
    conflicts: list[ConflictItem] = field(default_factory=list)
    applied_rules: list[AppliedRule] = field(default_factory=list)
    new_values: list[str] = field(default_factory=list)
    ignored_rows: set[int] = field(default_factory=set)


def group_by_natural_key(rows: Sequence[ImportRow], attribute: str) -> "OrderedDict[str, ValueGroup]":
    """Collapse rows by natural key, keeping the first spelling seen for display."""

    groups: OrderedDict[str, ValueGroup] = OrderedDict()
    for row in rows:
        raw_value = getattr(row, attribute)
        if not raw_value:
            continue
        natural_key = normalize_natural_key(raw_value)
        group = groups.get(natural_key)
        if group is None:
            group = groups[natural_key] = ValueGroup(raw_value=raw_value.strip())
        group.rows.append(row.row_index)
    return groups


class PreviewBuilder:
    """Builds and stores preview sessions."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        rules: RuleEngine | None = None,
        store: PreviewSessionStore | None = None,
        directory: EntityDirectory | None = None,
        suggestion_limit: int | None = None,
        suggestion_min_score: float | None = None,
    ):
        self.session: Session = session or db.session
        self.directory = directory or EntityDirectory(self.session)
        self.rules = rules or RuleEngine(self.session, directory=self.directory)
        self.store = store or PreviewSessionStore(self.session)
        self.suggestion_limit = int(
            suggestion_limit
            if suggestion_limit is not None
            else get_importer_setting("IMPORT_PREVIEW_SUGGESTION_LIMIT", DEFAULT_SUGGESTION_LIMIT)
        )
        self.suggestion_min_score = float(
            suggestion_min_score
            if suggestion_min_score is not None
            else get_importer_setting("IMPORT_PREVIEW_SUGGESTION_MIN_SCORE", DEFAULT_SUGGESTION_MIN_SCORE)
        )

    def build(
        self,
        rows: Sequence[ImportRow],
        *,
        file_name: str | None = None,
        source: str = "json",
        user_id: int | None = None,
    ) -> PreviewResult:
        started = time.perf_counter()
        rows = list(rows)
        if not rows:
            raise InvalidInput("The import contains no rows.")
        indices = [row.row_index for row in rows]
        if len(set(indices)) != len(indices):
            raise InvalidInput("Row indices must be unique within one import.")

        snapshot = self.rules.snapshot()

        conflicts: list[ConflictItem] = []
        applied_rules: list[AppliedRule] = []
        new_values: dict[EntityType, list[str]] = {}
        ignored_rows: set[int] = set()
        for entity_type, attribute in DIMENSIONS:
            outcome = self._diff_dimension(entity_type, group_by_natural_key(rows, attribute), snapshot)
            conflicts.extend(outcome.conflicts)
            applied_rules.extend(outcome.applied_rules)
            new_values[entity_type] = outcome.new_values
            ignored_rows |= outcome.ignored_rows

        collaborators = self.directory.find_collaborators(row.external_collaborator_id for row in rows)
        collaborator_conflicts, not_found, inactive_collaborators = self._diff_collaborators(rows, collaborators)
        skipped_rows = {index for item in not_found for index in item.rows}

        formations = self.directory.find_formations(row.formation_code for row in rows)
        codes = {row.formation_code for row in rows}
        formations_existing = len(codes & set(formations))

        importable = [
            row
            for row in rows
            if row.row_index not in skipped_rows and row.row_index not in ignored_rows
        ]
        to_create, to_update = self._count_record_actions(importable, collaborators, formations)

        stats = PreviewStats(
            total_rows=len(rows),
            sessions_to_create=to_create,
            sessions_to_update=to_update,
            sessions_skipped_total=len(skipped_rows),
            new_organizations=tuple(new_values[EntityType.ORGANIZATION]),
            new_categories=tuple(new_values[EntityType.CATEGORY]),
            new_departments=tuple(new_values[EntityType.DEPARTMENT]),
            collaborators_found=len(collaborators),
            collaborators_not_found=tuple(not_found),
            formations_new=len(codes) - formations_existing,
            formations_existing=formations_existing,
        )
        draft = PreviewSession(
            preview_id="",
            status=PreviewSessionStatus.OPEN,
            created_at=snapshot.taken_at,
            expires_at=snapshot.taken_at,
            stats=stats,
            conflicts=tuple(conflicts),
            file_name=file_name,
            source=source,
            row_count=len(rows),
            collaborator_conflicts=tuple(collaborator_conflicts),
            inactive_collaborators=tuple(inactive_collaborators),
            applied_rules=tuple(applied_rules),
            rows=rows,
            created_by_user_id=user_id,
        )
        preview_id = self.store.create(draft)
        stored = self.store.get(preview_id)

        duration = time.perf_counter() - started
        ImporterMonitoring.record_preview(
            duration_seconds=duration,
            status="success",
            row_count=len(rows),
            conflict_count=len(conflicts),
            rules_applied=len(applied_rules),
        )
        if has_app_context():
            current_app.logger.info(
                "Import preview %s built: %s row(s), %s conflict(s), %s rule(s) applied",
                preview_id[:8],
                len(rows),
                len(conflicts),
                len(applied_rules),
                extra={
                    "import_preview_id": preview_id,
                    "import_preview_rows": len(rows),
                    "import_preview_conflicts": len(conflicts),
                    "import_preview_rules_applied": len(applied_rules),
                    "import_preview_collaborators_not_found": len(not_found),
                },
            )
        return PreviewResult(session=stored)

    def _diff_dimension(
        self,
        entity_type: EntityType,
        groups: "OrderedDict[str, ValueGroup]",
        snapshot: RuleSnapshot,
    ) -> DimensionOutcome:
        outcome = DimensionOutcome()
        if not groups:
            return outcome

        matches = self.directory.match_natural_keys(entity_type, groups.keys())
        candidates = None
        for natural_key, group in groups.items():
            match = matches.get(natural_key)
            if match is None:
                outcome.new_values.append(group.raw_value)
                continue
            if match.active is not None:
                continue

            deleted = match.inactive
            rule = snapshot.lookup(entity_type, group.raw_value)
            if rule is not None and self._rule_still_applicable(entity_type, rule.action, rule.target_entity_id):
                outcome.applied_rules.append(
                    AppliedRule(
                        rule_id=rule.id,
                        entity_type=entity_type,
                        raw_value=group.raw_value,
                        action=rule.action,
                        target_entity_id=rule.target_entity_id,
                        existing=reference_for(deleted),
                        row_indices=tuple(group.rows),
                    )
                )
                if rule.action is ResolutionAction.IGNORE:
                    outcome.ignored_rows.update(group.rows)
                continue

            if candidates is None:
                candidates = self.directory.list_active(entity_type)
            outcome.conflicts.append(
                ConflictItem(
                    type=ConflictType.ENTITY_DELETED,
                    entity_type=entity_type,
                    raw_value=group.raw_value,
                    occurrence_count=len(group.rows),
                    row_indices=tuple(group.rows),
                    existing=reference_for(deleted),
                    suggestions=self.directory.suggest(
                        entity_type,
                        group.raw_value,
                        limit=self.suggestion_limit,
                        min_score=self.suggestion_min_score,
                        candidates=candidates,
                    ),
                )
            )
        return outcome

    def _rule_still_applicable(self, entity_type: EntityType, action: ResolutionAction, target_id: int | None) -> bool:
        if action is not ResolutionAction.MAP:
            return True
        if self.directory.get_active_entity(entity_type, target_id) is not None:
            return True
        if has_app_context():
            current_app.logger.warning(
                "Memorized MAP rule for %s targets inactive entity %s; surfacing conflict instead",
                entity_type.value,
                target_id,
                extra={"import_rule_entity_type": entity_type.value, "import_rule_target_id": target_id},
            )
        return False

    def _diff_collaborators(self, rows: Sequence[ImportRow], collaborators):
        missing: OrderedDict[str, list[int]] = OrderedDict()
        inactive: OrderedDict[str, list[int]] = OrderedDict()
        for row in rows:
            external_id = row.external_collaborator_id
            collaborator = collaborators.get(external_id)
            if collaborator is None:
                missing.setdefault(external_id, []).append(row.row_index)
            elif not collaborator.is_active:
                inactive.setdefault(external_id, []).append(row.row_index)

        conflicts = [
            ConflictItem(
                type=ConflictType.COLLABORATOR_NOT_FOUND,
                raw_value=external_id,
                occurrence_count=len(row_indices),
                row_indices=tuple(row_indices),
            )
            for external_id, row_indices in missing.items()
        ]
        not_found = [
            CollaboratorNotFound(external_id=external_id, rows=tuple(row_indices))
            for external_id, row_indices in missing.items()
        ]
        inactive_items = [
            InactiveCollaborator(
                external_id=external_id,
                collaborator_id=collaborators[external_id].id,
                full_name=collaborators[external_id].full_name,
                sessions_affected=len(row_indices),
            )
            for external_id, row_indices in inactive.items()
        ]
        return conflicts, not_found, inactive_items

    def _count_record_actions(self, rows: Sequence[ImportRow], collaborators, formations) -> tuple[int, int]:
        """
        Split importable rows into creates and updates by idempotency key.

        A key repeated within the same file counts once as a create and then
        as updates, matching what confirm will do.
        """

        keys = []
        for row in rows:
            formation = formations.get(row.formation_code)
            keys.append(
                SessionRecordKey(
                    external_source_id=row.external_source_id,
                    collaborator_id=collaborators[row.external_collaborator_id].id,
                    formation_id=formation.id if formation is not None else None,
                    start_date=row.start_date,
                )
            )
        existing = self.directory.existing_record_identities(keys)

        created = updated = 0
        seen: set[tuple] = set()
        for row, key in zip(rows, keys):
            natural_identity = ("natural", key.collaborator_id, row.formation_code, row.start_date)
            lookup_identity = key.identity if key.external_source_id else natural_identity
            if key.identity in existing or lookup_identity in seen:
                updated += 1
            else:
                created += 1
            # a record written for a source-id row is also found by its natural triple
            seen.update((lookup_identity, natural_identity))
        return created, updated
