"""Canonical row contract shared by every importer row source."""

from __future__ import annotations

from .import_row import (
    IMPORT_ROW_FIELDS,
    FieldSpec,
    ImportRow,
    RowShapeError,
    build_import_row,
    build_import_rows,
    get_import_row_alias_map,
    get_import_row_required_fields,
    normalize_header,
    rows_from_payload,
    rows_to_payload,
)

__all__ = [
    "FieldSpec",
    "IMPORT_ROW_FIELDS",
    "ImportRow",
    "RowShapeError",
    "build_import_row",
    "build_import_rows",
    "get_import_row_alias_map",
    "get_import_row_required_fields",
    "normalize_header",
    "rows_from_payload",
    "rows_to_payload",
]
