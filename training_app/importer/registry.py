"""
Row source registry.

Row sources register metadata here so configuration validation can occur at
startup, before any upload is processed.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence, Tuple


@dataclass(frozen=True)
class RowSourceDescriptor:
    """Metadata describing how an export reaches the preview engine."""

    name: str
    title: str
    content_types: Tuple[str, ...] = ()
    summary: str | None = None


def get_row_source_registry() -> Mapping[str, RowSourceDescriptor]:
    """Return the registry of supported row sources."""
    return OrderedDict(
        (
            (
                "json",
                RowSourceDescriptor(
                    name="json",
                    title="Normalized JSON rows",
                    content_types=("application/json",),
                    summary="Rows already normalized by the spreadsheet tooling, posted as JSON.",
                ),
            ),
            (
                "csv",
                RowSourceDescriptor(
                    name="csv",
                    title="CSV Flat File",
                    content_types=("multipart/form-data",),
                    summary="CSV upload whose header row uses the import row field names.",
                ),
            ),
        )
    )


def resolve_row_sources(
    configured: Sequence[str],
    registry: Mapping[str, RowSourceDescriptor] | None = None,
) -> Iterable[RowSourceDescriptor]:
    """
    Map configured row source names to registry descriptors, raising on unknowns.
    """
    registry = registry or get_row_source_registry()
    unknown = sorted({source for source in configured if source not in registry})
    if unknown:
        raise ValueError(
            "Unknown importer row sources configured: "
            + ", ".join(unknown)
            + ". Update IMPORTER_ROW_SOURCES or register these sources first."
        )
    return tuple(registry[source] for source in configured)
