# training_app/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, db
from .importer import (
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
from .training import Category, Collaborator, Department, Formation, TrainingOrganization, TrainingSession
from .user import User

__all__ = [
    "db",
    "BaseModel",
    "User",
    # Training entity graph
    "Department",
    "TrainingOrganization",
    "Category",
    "Collaborator",
    "Formation",
    "TrainingSession",
    # Importer models
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
