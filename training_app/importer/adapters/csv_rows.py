"""CSV row source for OLU training-session exports.

Validates the header row against the import row contract, streams data rows,
and hands each row to the contract builder so shape errors are reported with
their data-row number.
"""

from __future__ import annotations

import csv
from dataclasses import dataclass
from typing import IO, Iterator, Sequence

from training_app.importer.contracts import (
    ImportRow,
    RowShapeError,
    build_import_row,
    get_import_row_alias_map,
    get_import_row_required_fields,
    normalize_header,
)


class CSVAdapterError(Exception):
    """Base exception for CSV adapter failures."""


class CSVHeaderError(CSVAdapterError):
    """Raised when the CSV header row does not meet contract requirements."""

    def __init__(
        self,
        *,
        missing: Sequence[str] | None = None,
        duplicates: Sequence[str] | None = None,
    ) -> None:
        details: list[str] = []
        if missing:
            details.append(f"Missing required columns: {', '.join(sorted(missing))}.")
        if duplicates:
            details.append(
                "Columns mapping to the same field: " + ", ".join(sorted(duplicates)) + ". Keep only one of each."
            )
        message = "CSV header validation failed. " + " ".join(details) if details else "CSV header validation failed."
        super().__init__(message)
        self.missing = tuple(missing or ())
        self.duplicates = tuple(duplicates or ())


class CSVRowError(CSVAdapterError):
    """Raised when one or more data rows cannot be turned into import rows."""

    def __init__(self, errors: Sequence[str]) -> None:
        super().__init__(f"{len(errors)} CSV row(s) do not match the import contract.")
        self.errors = list(errors)


@dataclass
class CSVStatistics:
    rows_processed: int = 0
    rows_skipped_blank: int = 0


def _validate_headers(raw_headers: Sequence[str]) -> tuple[str | None, ...]:
    alias_map = get_import_row_alias_map()
    seen: set[str] = set()
    duplicates: list[str] = []
    canonical: list[str | None] = []

    for header in raw_headers:
        spec = alias_map.get(normalize_header(header or ""))
        if spec is None:
            # extra export columns are carried along and ignored by the contract
            canonical.append(None)
            continue
        if spec.name in seen:
            duplicates.append(spec.name)
        seen.add(spec.name)
        canonical.append(spec.name)

    missing = sorted(set(get_import_row_required_fields()) - seen)
    if missing or duplicates:
        raise CSVHeaderError(missing=missing, duplicates=duplicates)
    return tuple(canonical)


def _row_is_blank(row: Sequence[str]) -> bool:
    return all(not (value or "").strip() for value in row)


class TrainingSessionCSVAdapter:
    """CSV reader producing contract-checked ``ImportRow`` objects."""

    def __init__(self, file_obj: IO[str], *, skip_blank_rows: bool = True) -> None:
        self._file_obj = file_obj
        self.skip_blank_rows = skip_blank_rows
        self.statistics = CSVStatistics()

    def iter_payloads(self) -> Iterator[tuple[int, dict[str, str]]]:
        """Yield ``(row_index, payload)`` pairs keyed by canonical field names."""

        self._file_obj.seek(0)
        reader = csv.reader(self._file_obj)
        try:
            raw_headers = next(reader)
        except StopIteration:
            raise CSVHeaderError(missing=get_import_row_required_fields()) from None

        headers = _validate_headers(raw_headers)
        row_index = 0
        for values in reader:
            if self.skip_blank_rows and _row_is_blank(values):
                self.statistics.rows_skipped_blank += 1
                continue
            row_index += 1
            self.statistics.rows_processed += 1
            yield row_index, {header: value for header, value in zip(headers, values) if header is not None}

    def read_all(self) -> list[ImportRow]:
        """Materialize every row, collecting shape errors instead of stopping at the first."""

        rows: list[ImportRow] = []
        errors: list[str] = []
        for row_index, payload in self.iter_payloads():
            try:
                rows.append(build_import_row(row_index, payload))
            except RowShapeError as exc:
                errors.append(str(exc))
        if errors:
            raise CSVRowError(errors)
        return rows
