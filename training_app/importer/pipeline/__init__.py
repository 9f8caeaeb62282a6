"""Import preview pipeline: diff, resolve, confirm."""

from __future__ import annotations

from .directory import EntityDirectory, SessionRecordKey
from .executor import ImportExecutor
from .history_service import ImportHistoryService, serialize_history
from .keys import ConflictKey, ConflictType, normalize_natural_key
from .preview import PreviewBuilder
from .resolution import ResolutionCoordinator, merge_resolutions, parse_resolutions
from .rules import RuleEngine, RuleSnapshot
from .session_store import PreviewSessionStore, SweepSummary
from .types import (
    AppliedRule,
    ConflictItem,
    ImportResult,
    PartialRowFailure,
    PreviewResult,
    PreviewSession,
    PreviewStats,
    Resolution,
    ResolutionOutcome,
)

__all__ = [
    "AppliedRule",
    "ConflictItem",
    "ConflictKey",
    "ConflictType",
    "EntityDirectory",
    "ImportExecutor",
    "ImportHistoryService",
    "ImportResult",
    "PartialRowFailure",
    "PreviewBuilder",
    "PreviewResult",
    "PreviewSession",
    "PreviewSessionStore",
    "PreviewStats",
    "Resolution",
    "ResolutionCoordinator",
    "ResolutionOutcome",
    "RuleEngine",
    "RuleSnapshot",
    "SessionRecordKey",
    "SweepSummary",
    "merge_resolutions",
    "normalize_natural_key",
    "parse_resolutions",
    "serialize_history",
]
