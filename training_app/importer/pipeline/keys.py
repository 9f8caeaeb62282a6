"""
Value types shared by the preview engine.

``ConflictKey`` identifies a reference-entity value across rows, rules and
resolutions. It is compared structurally on ``(entity_type, natural_key)`` so a
raw value containing any separator character cannot collide with another.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Mapping

from training_app.models.importer import EntityType
from training_app.models.training import normalize_natural_key

from ..errors import InvalidInput


class ConflictType(str, enum.Enum):
    ENTITY_DELETED = "ENTITY_DELETED"
    COLLABORATOR_NOT_FOUND = "COLLABORATOR_NOT_FOUND"


def parse_entity_type(value: Any) -> EntityType:
    if isinstance(value, EntityType):
        return value
    if isinstance(value, str):
        try:
            return EntityType(value.strip().upper())
        except ValueError:
            pass
    allowed = ", ".join(member.value for member in EntityType)
    raise InvalidInput(f"Unknown entityType {value!r}; expected one of {allowed}.")


@dataclass(frozen=True)
class ConflictKey:
    entity_type: EntityType
    natural_key: str

    @classmethod
    def of(cls, entity_type: EntityType | str, raw_value: str) -> "ConflictKey":
        return cls(parse_entity_type(entity_type), normalize_natural_key(raw_value))

    def as_dict(self) -> dict[str, str]:
        return {"entityType": self.entity_type.value, "naturalKey": self.natural_key}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ConflictKey":
        return cls(parse_entity_type(payload["entityType"]), str(payload["naturalKey"]))
