"""
Importer-specific SQLAlchemy models.

These models back the preview workflow: preview sessions, memorized rules,
import history and per-row failures.
"""

from .schema import (
    EntityType,
    ImportHistory,
    ImportHistoryStatus,
    ImportPreviewSession,
    ImportRowFailure,
    ImportRowFailureType,
    ImportRule,
    PreviewSessionStatus,
    ResolutionAction,
)

__all__ = [
    "EntityType",
    "ImportHistory",
    "ImportHistoryStatus",
    "ImportPreviewSession",
    "ImportRowFailure",
    "ImportRowFailureType",
    "ImportRule",
    "PreviewSessionStatus",
    "ResolutionAction",
]
