"""Canonical OLU import row contract.

Rows reach the preview engine already normalized by the upstream spreadsheet
tooling. This module is the single source of truth for the field names the row
sources accept (canonical camelCase plus snake_case aliases) and performs the
shape checks the engine relies on: required keys present, dates in ISO form,
numeric fields numeric. It never interprets business meaning of the values.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Iterable, Mapping, Sequence, Tuple

from ..errors import InvalidInput

Normalizer = Callable[[object | None], object | None]


class RowShapeError(ValueError):
    """Raised when a single row does not satisfy the contract."""

    def __init__(self, row_index: int, message: str) -> None:
        super().__init__(f"Row {row_index}: {message}")
        self.row_index = row_index


def _strip_string(value: object | None) -> object | None:
    if isinstance(value, str):
        token = value.strip()
        return token or None
    return value


@dataclass(frozen=True)
class FieldSpec:
    """Metadata describing a canonical import row field."""

    name: str
    attribute: str
    description: str
    required: bool = False
    aliases: Tuple[str, ...] = ()
    normalizer: Normalizer | None = _strip_string

    def headers(self) -> Tuple[str, ...]:
        return (self.name, self.attribute, *self.aliases)


IMPORT_ROW_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec(
        name="externalCollaboratorId",
        attribute="external_collaborator_id",
        description="HR identifier of the collaborator attending the session.",
        required=True,
        aliases=("collaborator_id", "matricule"),
    ),
    FieldSpec(
        name="formationCode",
        attribute="formation_code",
        description="Catalogue code of the formation.",
        required=True,
        aliases=("code_formation",),
    ),
    FieldSpec(
        name="formationTitle",
        attribute="formation_title",
        description="Human readable formation title, used when the formation is created.",
        aliases=("intitule",),
    ),
    FieldSpec(
        name="organizationName",
        attribute="organization_name",
        description="Training organization natural key.",
        aliases=("organisme",),
    ),
    FieldSpec(
        name="categoryName",
        attribute="category_name",
        description="Formation category natural key.",
        aliases=("categorie",),
    ),
    FieldSpec(
        name="departmentName",
        attribute="department_name",
        description="Collaborator department natural key.",
        aliases=("departement",),
    ),
    FieldSpec(
        name="startDate",
        attribute="start_date",
        description="Session start date (ISO 8601).",
        required=True,
        aliases=("date_debut",),
    ),
    FieldSpec(
        name="endDate",
        attribute="end_date",
        description="Session end date (ISO 8601).",
        aliases=("date_fin",),
    ),
    FieldSpec(
        name="durationHours",
        attribute="duration_hours",
        description="Session duration in hours.",
        aliases=("duree_heures",),
    ),
    FieldSpec(
        name="priceHT",
        attribute="price_ht",
        description="Session price excluding tax.",
        aliases=("prix_ht",),
    ),
    FieldSpec(
        name="externalSourceId",
        attribute="external_source_id",
        description="Stable id of the session in the source system, when exported.",
        aliases=("source_id",),
    ),
)


def normalize_header(header: str) -> str:
    """Normalize a header/key for comparison (case/space/dash agnostic)."""

    token = header.strip().lstrip("\ufeff").lower()
    for char in (" ", "-", "."):
        token = token.replace(char, "_")
    return token


def get_import_row_alias_map() -> Mapping[str, FieldSpec]:
    """Map normalized header tokens to their field spec (includes aliases)."""

    mapping: dict[str, FieldSpec] = {}
    for spec in IMPORT_ROW_FIELDS:
        for header in spec.headers():
            mapping[normalize_header(header)] = spec
    return mapping


def get_import_row_required_fields() -> Tuple[str, ...]:
    return tuple(spec.name for spec in IMPORT_ROW_FIELDS if spec.required)


@dataclass(frozen=True)
class ImportRow:
    """One normalized training-session row of an OLU export."""

    row_index: int
    external_collaborator_id: str
    formation_code: str
    start_date: date
    formation_title: str | None = None
    organization_name: str | None = None
    category_name: str | None = None
    department_name: str | None = None
    end_date: date | None = None
    duration_hours: Decimal | None = None
    price_ht: Decimal | None = None
    external_source_id: str | None = None

    def to_payload(self) -> dict[str, Any]:
        """Serialize for JSON storage inside a preview session."""

        return {
            "rowIndex": self.row_index,
            "externalCollaboratorId": self.external_collaborator_id,
            "formationCode": self.formation_code,
            "formationTitle": self.formation_title,
            "organizationName": self.organization_name,
            "categoryName": self.category_name,
            "departmentName": self.department_name,
            "startDate": self.start_date.isoformat(),
            "endDate": self.end_date.isoformat() if self.end_date else None,
            "durationHours": str(self.duration_hours) if self.duration_hours is not None else None,
            "priceHT": str(self.price_ht) if self.price_ht is not None else None,
            "externalSourceId": self.external_source_id,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ImportRow":
        return build_import_row(int(payload["rowIndex"]), payload)


def _coerce_date(value: object, *, row_index: int, field: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            pass
    raise RowShapeError(row_index, f"{field} must be an ISO date (YYYY-MM-DD), got {value!r}.")


def _coerce_decimal(value: object, *, row_index: int, field: str) -> Decimal:
    if isinstance(value, bool):
        raise RowShapeError(row_index, f"{field} must be numeric, got {value!r}.")
    try:
        if isinstance(value, float):
            return Decimal(str(value))
        return Decimal(str(value).replace(",", ".").strip())
    except (InvalidOperation, ValueError):
        raise RowShapeError(row_index, f"{field} must be numeric, got {value!r}.") from None


def build_import_row(row_index: int, payload: Mapping[str, Any]) -> ImportRow:
    """
    Build an ``ImportRow`` from a mapping keyed by canonical names or aliases.

    Unknown keys are ignored; they belong to the upstream export and carry no
    meaning for the engine.
    """

    alias_map = get_import_row_alias_map()
    values: dict[str, object | None] = {}
    for raw_key, raw_value in payload.items():
        if not isinstance(raw_key, str):
            continue
        spec = alias_map.get(normalize_header(raw_key))
        if spec is None:
            continue
        value = spec.normalizer(raw_value) if spec.normalizer else raw_value
        if value is not None:
            values[spec.attribute] = value

    missing = [spec.name for spec in IMPORT_ROW_FIELDS if spec.required and values.get(spec.attribute) is None]
    if missing:
        raise RowShapeError(row_index, "missing required field(s): " + ", ".join(missing) + ".")

    for text_field in ("external_collaborator_id", "formation_code", "external_source_id"):
        if text_field in values and not isinstance(values[text_field], str):
            values[text_field] = str(values[text_field])

    start_date = _coerce_date(values.pop("start_date"), row_index=row_index, field="startDate")
    end_date = values.pop("end_date", None)
    if end_date is not None:
        end_date = _coerce_date(end_date, row_index=row_index, field="endDate")
        if end_date < start_date:
            raise RowShapeError(row_index, "endDate is before startDate.")

    for numeric_field, label in (("duration_hours", "durationHours"), ("price_ht", "priceHT")):
        if numeric_field in values:
            values[numeric_field] = _coerce_decimal(values[numeric_field], row_index=row_index, field=label)

    for name_field in ("formation_title", "organization_name", "category_name", "department_name"):
        if name_field in values and not isinstance(values[name_field], str):
            raise RowShapeError(row_index, f"{name_field} must be a string.")

    return ImportRow(row_index=row_index, start_date=start_date, end_date=end_date, **values)  # type: ignore[arg-type]


def build_import_rows(payloads: Iterable[Mapping[str, Any]], *, start_index: int = 1) -> list[ImportRow]:
    """
    Validate a whole batch, collecting every shape error before failing.

    Raises:
        InvalidInput: when the batch is empty or any row breaks the contract.
    """

    rows: list[ImportRow] = []
    errors: list[str] = []
    for offset, payload in enumerate(payloads):
        row_index = start_index + offset
        if not isinstance(payload, Mapping):
            errors.append(f"Row {row_index}: expected an object, got {type(payload).__name__}.")
            continue
        try:
            rows.append(build_import_row(row_index, payload))
        except RowShapeError as exc:
            errors.append(str(exc))

    if errors:
        raise InvalidInput(f"{len(errors)} row(s) do not match the import contract.", errors=errors)
    if not rows:
        raise InvalidInput("The import contains no rows.")
    return rows


def rows_to_payload(rows: Sequence[ImportRow]) -> list[dict[str, Any]]:
    return [row.to_payload() for row in rows]


def rows_from_payload(payload: Iterable[Mapping[str, Any]]) -> list[ImportRow]:
    return [ImportRow.from_payload(item) for item in payload]
