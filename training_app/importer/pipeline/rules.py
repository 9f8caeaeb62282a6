"""
Memorized resolution rules.

``RuleEngine`` is constructed per request with a SQLAlchemy session. Preview
generation never reads rules row by row: it takes one ``RuleSnapshot`` at the
start and consults only that frozen mapping, so a rule written while a preview
is being built cannot change the outcome of rows already processed.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Mapping, Sequence

from flask import current_app, has_app_context
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from training_app.models import db
from training_app.models.importer import EntityType, ImportRule, ResolutionAction

from ..errors import InvalidInput, RuleNotFound, TargetMissing
from .directory import EntityDirectory
from .keys import ConflictKey, normalize_natural_key, parse_entity_type

_UNSET = object()


@dataclass(frozen=True)
class RuleView:
    """Immutable copy of a rule row taken by a snapshot."""

    id: int
    entity_type: EntityType
    raw_value: str
    action: ResolutionAction
    target_entity_id: int | None
    created_at: datetime | None

    @classmethod
    def from_model(cls, rule: ImportRule) -> "RuleView":
        return cls(
            id=rule.id,
            entity_type=rule.entity_type,
            raw_value=rule.raw_value,
            action=rule.action,
            target_entity_id=rule.target_entity_id,
            created_at=rule.created_at,
        )


@dataclass(frozen=True)
class RuleSnapshot:
    """Read-only view of the active rules at one point in time."""

    rules: Mapping[ConflictKey, RuleView]
    taken_at: datetime

    def lookup(self, entity_type: EntityType, raw_value: str) -> RuleView | None:
        return self.rules.get(ConflictKey.of(entity_type, raw_value))

    def __len__(self) -> int:
        return len(self.rules)


@dataclass(frozen=True)
class RuleStat:
    entity_type: EntityType
    count: int

    def to_dict(self) -> dict:
        return {"entityType": self.entity_type.value, "count": self.count}


class RuleEngine:
    """Facade for reading and writing memorized import rules."""

    def __init__(self, session: Session | None = None, *, directory: EntityDirectory | None = None):
        self.session: Session = session or db.session
        self.directory = directory or EntityDirectory(self.session)

    # reads

    def snapshot(self) -> RuleSnapshot:
        rules = self.session.query(ImportRule).filter(ImportRule.is_active.is_(True)).all()
        mapping = {ConflictKey(rule.entity_type, rule.natural_key): RuleView.from_model(rule) for rule in rules}
        return RuleSnapshot(rules=MappingProxyType(mapping), taken_at=datetime.now(timezone.utc))

    def lookup(self, entity_type: EntityType | str, raw_value: str) -> ImportRule | None:
        rule = self._find(parse_entity_type(entity_type), normalize_natural_key(raw_value))
        if rule is None or not rule.is_active:
            return None
        return rule

    def list_active(self, entity_type: EntityType | str) -> Sequence[ImportRule]:
        return self.list_rules(entity_type=entity_type, active=True)

    def list_rules(
        self,
        *,
        entity_type: EntityType | str | None = None,
        active: bool | None = None,
    ) -> Sequence[ImportRule]:
        query = self.session.query(ImportRule)
        if entity_type is not None:
            query = query.filter(ImportRule.entity_type == parse_entity_type(entity_type))
        if active is not None:
            query = query.filter(ImportRule.is_active.is_(active))
        return list(query.order_by(ImportRule.entity_type, ImportRule.natural_key).all())

    def get(self, rule_id: int) -> ImportRule:
        rule = self.session.get(ImportRule, rule_id)
        if rule is None:
            raise RuleNotFound(rule_id)
        return rule

    def stats(self) -> list[RuleStat]:
        """Active rule counts per entity type, zero-filled."""

        rows = (
            self.session.query(ImportRule.entity_type, func.count(ImportRule.id))
            .filter(ImportRule.is_active.is_(True))
            .group_by(ImportRule.entity_type)
            .all()
        )
        counts = {entity_type: count for entity_type, count in rows}
        return [RuleStat(entity_type=entity_type, count=counts.get(entity_type, 0)) for entity_type in EntityType]

    def target_name(self, rule: ImportRule) -> str | None:
        if rule.target_entity_id is None:
            return None
        entity = self.directory.get_entity(rule.entity_type, rule.target_entity_id)
        return entity.name if entity is not None else None

    # writes

    def upsert(
        self,
        entity_type: EntityType | str,
        raw_value: str,
        action: ResolutionAction,
        target_entity_id: int | None = None,
        *,
        user_id: int | None = None,
        commit: bool = True,
    ) -> ImportRule:
        """
        Create or update the rule for ``(entity_type, raw_value)``.

        Re-applying an identical decision leaves the row untouched; an inactive
        rule for the same key is reactivated. A concurrent insert of the same
        key surfaces as ``IntegrityError`` inside the savepoint and is retried
        as an update.
        """

        entity_type = parse_entity_type(entity_type)
        raw_value = (raw_value or "").strip()
        if not raw_value:
            raise InvalidInput("rawValue is required for an import rule.")
        target_entity_id = self._validate_target(entity_type, raw_value, action, target_entity_id)
        natural_key = normalize_natural_key(raw_value)

        try:
            with self.session.begin_nested():
                rule = self._find(entity_type, natural_key)
                if rule is None:
                    rule = ImportRule(
                        entity_type=entity_type,
                        raw_value=raw_value,
                        natural_key=natural_key,
                        action=action,
                        target_entity_id=target_entity_id,
                        is_active=True,
                        created_by_user_id=user_id,
                    )
                    self.session.add(rule)
                else:
                    self._apply(rule, action, target_entity_id)
        except IntegrityError:
            rule = self._find(entity_type, natural_key)
            if rule is None:
                raise
            self._apply(rule, action, target_entity_id)
            self.session.flush()

        if commit:
            self.session.commit()
        self._log("Import rule upserted", rule)
        return rule

    def update(
        self,
        rule_id: int,
        *,
        action: ResolutionAction | None = None,
        target_entity_id=_UNSET,
        active: bool | None = None,
    ) -> ImportRule:
        rule = self.get(rule_id)
        new_action = action or rule.action
        if target_entity_id is _UNSET:
            new_target = rule.target_entity_id if new_action is ResolutionAction.MAP else None
        else:
            new_target = target_entity_id
        new_target = self._validate_target(rule.entity_type, rule.raw_value, new_action, new_target)

        rule.action = new_action
        rule.target_entity_id = new_target
        if active is not None:
            rule.is_active = bool(active)
        self.session.commit()
        self._log("Import rule updated", rule)
        return rule

    def deactivate(self, rule_id: int) -> ImportRule:
        rule = self.get(rule_id)
        if rule.is_active:
            rule.is_active = False
            self.session.commit()
        self._log("Import rule deactivated", rule)
        return rule

    def purge(self, rule_id: int) -> None:
        rule = self.get(rule_id)
        self._log("Import rule purged", rule)
        self.session.delete(rule)
        self.session.commit()

    # helpers

    def _find(self, entity_type: EntityType, natural_key: str) -> ImportRule | None:
        return (
            self.session.query(ImportRule)
            .filter(ImportRule.entity_type == entity_type)
            .filter(ImportRule.natural_key == natural_key)
            .one_or_none()
        )

    def _apply(self, rule: ImportRule, action: ResolutionAction, target_entity_id: int | None) -> None:
        if rule.action is not action:
            rule.action = action
        if rule.target_entity_id != target_entity_id:
            rule.target_entity_id = target_entity_id
        if not rule.is_active:
            rule.is_active = True

    def _validate_target(
        self,
        entity_type: EntityType,
        raw_value: str,
        action: ResolutionAction,
        target_entity_id: int | None,
    ) -> int | None:
        if action is not ResolutionAction.MAP:
            return None
        if target_entity_id is None:
            raise TargetMissing(entity_type.value, raw_value)
        if self.directory.get_active_entity(entity_type, target_entity_id) is None:
            raise InvalidInput(
                f"targetEntityId {target_entity_id} is not an active {entity_type.value.lower()}.",
            )
        return int(target_entity_id)

    def _log(self, message: str, rule: ImportRule) -> None:
        if not has_app_context():
            return
        current_app.logger.info(
            "%s: %s %r -> %s",
            message,
            rule.entity_type.value,
            rule.raw_value,
            rule.action.value,
            extra={
                "import_rule_id": rule.id,
                "import_rule_entity_type": rule.entity_type.value,
                "import_rule_action": rule.action.value,
                "import_rule_active": rule.is_active,
            },
        )
