"""
Entity directory: the persistence boundary the preview engine reads and writes
reference entities, collaborators, formations and session records through.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any, Iterable, Mapping, Sequence, Tuple

from rapidfuzz import fuzz, process, utils
from sqlalchemy.orm import Session

from training_app.models import (
    Category,
    Collaborator,
    Department,
    Formation,
    TrainingOrganization,
    TrainingSession,
    db,
)
from training_app.models.importer import EntityType

from ..errors import ReferentialRace
from .keys import normalize_natural_key
from .types import EntityReference, Suggestion

ENTITY_MODELS = {
    EntityType.DEPARTMENT: Department,
    EntityType.ORGANIZATION: TrainingOrganization,
    EntityType.CATEGORY: Category,
}


def model_for(entity_type: EntityType):
    return ENTITY_MODELS[entity_type]


def reference_for(entity) -> EntityReference:
    return EntityReference(id=entity.id, name=entity.name, deactivated_at=entity.deactivated_at)


def _deactivated_later(candidate, current) -> bool:
    if current is None:
        return True
    if candidate.deactivated_at is None:
        return False
    if current.deactivated_at is None:
        return True
    return candidate.deactivated_at >= current.deactivated_at


@dataclass(frozen=True)
class NaturalKeyMatch:
    """Active and soft-deleted entities sharing one natural key."""

    active: Any | None = None
    inactive: Any | None = None


@dataclass(frozen=True)
class SessionRecordKey:
    """
    Idempotency key of a training session record.

    The source system id wins when the export carries one; otherwise the record
    is identified by (collaborator, formation, start date).
    """

    external_source_id: str | None
    collaborator_id: int | None
    formation_id: int | None
    start_date: date

    @property
    def identity(self) -> Tuple:
        if self.external_source_id:
            return ("source", self.external_source_id)
        return ("natural", self.collaborator_id, self.formation_id, self.start_date)


class EntityDirectory:
    """Facade over the training entity graph used by preview and confirm."""

    def __init__(self, session: Session | None = None):
        self.session: Session = session or db.session

    # reference entities

    def _natural_key_column(self, model):
        return model.natural_key

    def find_active_by_natural_key(self, entity_type: EntityType, raw_value: str):
        model = model_for(entity_type)
        return (
            self.session.query(model)
            .filter(self._natural_key_column(model) == normalize_natural_key(raw_value))
            .filter(model.is_active.is_(True))
            .order_by(model.id.asc())
            .first()
        )

    def find_any_by_natural_key(self, entity_type: EntityType, raw_value: str):
        """Return the active match when present, else the most recently deactivated one."""

        model = model_for(entity_type)
        return (
            self.session.query(model)
            .filter(self._natural_key_column(model) == normalize_natural_key(raw_value))
            .order_by(model.is_active.desc(), model.deactivated_at.desc(), model.id.desc())
            .first()
        )

    def match_natural_keys(self, entity_type: EntityType, natural_keys: Iterable[str]) -> dict[str, NaturalKeyMatch]:
        """Bulk variant of the two lookups above, one query per dimension."""

        keys = sorted(set(natural_keys))
        if not keys:
            return {}
        model = model_for(entity_type)
        key_column = self._natural_key_column(model)
        rows = (
            self.session.query(model, key_column)
            .filter(key_column.in_(keys))
            .order_by(model.id.asc())
            .all()
        )
        active: dict[str, Any] = {}
        inactive: dict[str, Any] = {}
        for entity, natural_key in rows:
            if entity.is_active:
                active.setdefault(natural_key, entity)
            elif _deactivated_later(entity, inactive.get(natural_key)):
                inactive[natural_key] = entity
        return {
            key: NaturalKeyMatch(active=active.get(key), inactive=inactive.get(key))
            for key in keys
            if key in active or key in inactive
        }

    def get_entity(self, entity_type: EntityType, entity_id: int):
        return self.session.get(model_for(entity_type), entity_id)

    def get_active_entity(self, entity_type: EntityType, entity_id: int | None):
        if entity_id is None:
            return None
        entity = self.get_entity(entity_type, entity_id)
        if entity is None or not entity.is_active:
            return None
        return entity

    def list_active(self, entity_type: EntityType) -> list:
        model = model_for(entity_type)
        return list(
            self.session.query(model).filter(model.is_active.is_(True)).order_by(model.natural_key, model.id).all()
        )

    def suggest(
        self,
        entity_type: EntityType,
        raw_value: str,
        *,
        limit: int = 3,
        min_score: float = 70,
        candidates: Sequence | None = None,
    ) -> tuple[Suggestion, ...]:
        """Rank active entities of the same type by name similarity to ``raw_value``."""

        if limit <= 0:
            return ()
        entities = list(candidates) if candidates is not None else self.list_active(entity_type)
        if not entities:
            return ()
        choices = {entity.id: entity.name for entity in entities}
        matches = process.extract(
            raw_value,
            choices,
            scorer=fuzz.WRatio,
            processor=utils.default_process,
            limit=limit,
            score_cutoff=min_score,
        )
        return tuple(Suggestion(id=entity_id, name=name, score=float(score)) for name, score, entity_id in matches)

    def reactivate(self, entity_type: EntityType, entity_id: int):
        entity = self.get_entity(entity_type, entity_id)
        if entity is None:
            raise ReferentialRace(
                entity_type.value,
                entity_id,
                f"{entity_type.value.title()} {entity_id} no longer exists and cannot be reactivated.",
            )
        if not entity.is_active:
            entity.reactivate()
        return entity

    def create_entity(self, entity_type: EntityType, name: str):
        model = model_for(entity_type)
        entity = model(name=name.strip())
        self.session.add(entity)
        self.session.flush()
        return entity

    # collaborators and formations

    def find_collaborators(self, external_ids: Iterable[str]) -> dict[str, Collaborator]:
        """Collaborators by external id, active or soft-deleted."""

        ids = sorted({external_id.strip() for external_id in external_ids})
        if not ids:
            return {}
        rows = self.session.query(Collaborator).filter(Collaborator.external_id.in_(ids)).all()
        return {collaborator.external_id: collaborator for collaborator in rows}

    def find_formations(self, codes: Iterable[str]) -> dict[str, Formation]:
        code_list = sorted(set(codes))
        if not code_list:
            return {}
        rows = self.session.query(Formation).filter(Formation.code.in_(code_list)).all()
        return {formation.code: formation for formation in rows}

    def create_formation(self, code: str, *, title: str | None = None, category_id: int | None = None) -> Formation:
        formation = Formation(code=code, title=title or code, category_id=category_id)
        self.session.add(formation)
        self.session.flush()
        return formation

    # session records

    def existing_record_identities(self, keys: Sequence[SessionRecordKey]) -> set[Tuple]:
        """Identities of ``keys`` that already have a stored session record."""

        source_ids = sorted({key.external_source_id for key in keys if key.external_source_id})
        natural = [key for key in keys if not key.external_source_id and key.collaborator_id and key.formation_id]
        found: set[Tuple] = set()

        if source_ids:
            rows = (
                self.session.query(TrainingSession.external_source_id)
                .filter(TrainingSession.external_source_id.in_(source_ids))
                .all()
            )
            found.update(("source", source_id) for (source_id,) in rows)

        if natural:
            collaborator_ids = sorted({key.collaborator_id for key in natural})
            formation_ids = sorted({key.formation_id for key in natural})
            rows = (
                self.session.query(
                    TrainingSession.collaborator_id,
                    TrainingSession.formation_id,
                    TrainingSession.start_date,
                )
                .filter(TrainingSession.collaborator_id.in_(collaborator_ids))
                .filter(TrainingSession.formation_id.in_(formation_ids))
                .all()
            )
            found.update(("natural", *row) for row in rows)
        return found

    def find_session_record(self, key: SessionRecordKey) -> TrainingSession | None:
        query = self.session.query(TrainingSession)
        if key.external_source_id:
            return query.filter(TrainingSession.external_source_id == key.external_source_id).first()
        return (
            query.filter(TrainingSession.collaborator_id == key.collaborator_id)
            .filter(TrainingSession.formation_id == key.formation_id)
            .filter(TrainingSession.start_date == key.start_date)
            .order_by(TrainingSession.id.asc())
            .first()
        )

    def create_session_record(self, fields: Mapping[str, Any]) -> TrainingSession:
        record = TrainingSession(**fields)
        self.session.add(record)
        self.session.flush()
        return record

    def update_session_record(self, record: TrainingSession, fields: Mapping[str, Any]) -> TrainingSession:
        for name, value in fields.items():
            setattr(record, name, value)
        self.session.flush()
        return record
