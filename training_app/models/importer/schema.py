"""
SQLAlchemy models backing the import preview workflow.

Preview sessions, memorized resolution rules, import history and the per-row
failure ledger live here so every worker process shares the same state.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db


class EntityType(str, enum.Enum):
    """Reference entity dimensions an import row points at by natural key."""

    DEPARTMENT = "DEPARTMENT"
    ORGANIZATION = "ORGANIZATION"
    CATEGORY = "CATEGORY"


class ResolutionAction(str, enum.Enum):
    """Operator decisions for a soft-deleted entity reappearing in an import."""

    MAP = "MAP"
    IGNORE = "IGNORE"
    REACTIVATE = "REACTIVATE"


class PreviewSessionStatus(str, enum.Enum):
    """Lifecycle states for a preview session."""

    OPEN = "OPEN"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self is not PreviewSessionStatus.OPEN


class ImportHistoryStatus(str, enum.Enum):
    """Outcome of one confirm attempt."""

    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    ERROR = "ERROR"


class ImportRowFailureType(str, enum.Enum):
    """Reasons a row was not written during confirm."""

    IGNORED = "IGNORED"
    COLLABORATOR_NOT_FOUND = "COLLABORATOR_NOT_FOUND"
    REFERENTIAL_RACE = "REFERENTIAL_RACE"
    ROW_ERROR = "ROW_ERROR"


class ImportRule(BaseModel):
    """Memorized operator decision auto-applied to future previews."""

    __tablename__ = "import_rules"

    id: Mapped[int] = mapped_column(primary_key=True)
    entity_type: Mapped[EntityType] = mapped_column(
        Enum(EntityType, name="import_rule_entity_type_enum"),
        nullable=False,
        index=True,
    )
    raw_value: Mapped[str] = mapped_column(db.String(255), nullable=False)
    natural_key: Mapped[str] = mapped_column(db.String(255), nullable=False)
    action: Mapped[ResolutionAction] = mapped_column(
        Enum(ResolutionAction, name="import_rule_action_enum"),
        nullable=False,
    )
    target_entity_id: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True, index=True)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)

    created_by = relationship("User", foreign_keys=[created_by_user_id])

    __table_args__ = (
        UniqueConstraint("entity_type", "natural_key", name="uq_import_rules_entity_key"),
    )

    def __repr__(self) -> str:
        return f"<ImportRule {self.entity_type.value}:{self.raw_value!r} -> {self.action.value}>"


class ImportPreviewSession(BaseModel):
    """
    Persisted state of one pending import awaiting conflict resolution.

    ``version`` is the optimistic-concurrency counter: every flush of a changed
    row checks and bumps it, so concurrent writers to the same session lose
    with ``StaleDataError`` instead of overwriting each other.
    """

    __tablename__ = "import_preview_sessions"

    preview_id: Mapped[str] = mapped_column(db.String(64), primary_key=True)
    file_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    source: Mapped[str] = mapped_column(db.String(50), nullable=False, default="json")
    row_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    status: Mapped[PreviewSessionStatus] = mapped_column(
        Enum(PreviewSessionStatus, name="import_preview_status_enum"),
        nullable=False,
        default=PreviewSessionStatus.OPEN,
        index=True,
    )
    expires_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, index=True)
    closed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    stats_json: Mapped[dict] = mapped_column(db.JSON, nullable=False)
    conflicts_json: Mapped[list] = mapped_column(db.JSON, nullable=False)
    collaborator_conflicts_json: Mapped[list] = mapped_column(db.JSON, nullable=False)
    inactive_collaborators_json: Mapped[list] = mapped_column(db.JSON, nullable=False)
    applied_rules_json: Mapped[list] = mapped_column(db.JSON, nullable=False)
    resolutions_json: Mapped[list] = mapped_column(db.JSON, nullable=False)
    rows_json: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    version: Mapped[int] = mapped_column(db.Integer, nullable=False)

    created_by = relationship("User", foreign_keys=[created_by_user_id])

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (Index("idx_import_preview_status_expiry", "status", "expires_at"),)

    def __repr__(self) -> str:
        return f"<ImportPreviewSession {self.preview_id[:8]} {self.status.value}>"


class ImportHistory(BaseModel):
    """Audit entry written for every confirm attempt."""

    __tablename__ = "import_history"

    id: Mapped[int] = mapped_column(primary_key=True)
    import_type: Mapped[str] = mapped_column(db.String(50), nullable=False, default="OLU", index=True)
    file_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    preview_id: Mapped[str | None] = mapped_column(db.String(64), nullable=True, index=True)
    status: Mapped[ImportHistoryStatus] = mapped_column(
        Enum(ImportHistoryStatus, name="import_history_status_enum"),
        nullable=False,
        index=True,
    )
    records_processed: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    records_created: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    records_updated: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    records_failed: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    records_reactivated: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    error_summary: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    error_details_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    processing_time_ms: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    triggered_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)

    triggered_by = relationship("User", foreign_keys=[triggered_by_user_id])
    row_failures = relationship(
        "ImportRowFailure",
        back_populates="history",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ImportRowFailure.row_index",
    )

    def __repr__(self) -> str:
        return f"<ImportHistory {self.id} {self.status.value}>"


class ImportRowFailure(BaseModel):
    """A row that was skipped or failed during a confirm attempt."""

    __tablename__ = "import_row_failures"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    history_id: Mapped[int] = mapped_column(
        ForeignKey("import_history.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    row_index: Mapped[int] = mapped_column(db.Integer, nullable=False)
    failure_type: Mapped[ImportRowFailureType] = mapped_column(
        Enum(ImportRowFailureType, name="import_row_failure_type_enum"),
        nullable=False,
        index=True,
    )
    reason: Mapped[str] = mapped_column(db.Text, nullable=False)
    entity_type: Mapped[str | None] = mapped_column(db.String(50), nullable=True)
    raw_value: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    details_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    history = relationship("ImportHistory", back_populates="row_failures")
