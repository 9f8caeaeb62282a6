# training_app/models/training.py

"""
Training entity graph: the reference entities an OLU export points at by name
(departments, training organizations, categories), the collaborators it
points at by external id, and the training session records it produces.
"""

from datetime import datetime, timezone

from sqlalchemy import Index, UniqueConstraint
from sqlalchemy.orm import validates

from .base import BaseModel, db


def normalize_natural_key(raw_value: str) -> str:
    """Case and surrounding-whitespace insensitive form of a natural key."""

    return raw_value.strip().lower()


class NaturalKeyMixin:
    """Lowercased, trimmed copy of ``name`` kept in step by a validator; imports match on it."""

    natural_key = db.Column(db.String(200), nullable=False, index=True)

    @validates("name")
    def _sync_natural_key(self, key, value):
        self.natural_key = normalize_natural_key(value or "")
        return value


class SoftDeleteMixin:
    """Soft-delete flag shared by entities that may be deactivated and reactivated."""

    is_active = db.Column(db.Boolean, default=True, nullable=False, index=True)
    deactivated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def deactivate(self):
        self.is_active = False
        self.deactivated_at = datetime.now(timezone.utc)

    def reactivate(self):
        self.is_active = True
        self.deactivated_at = None


class Department(NaturalKeyMixin, SoftDeleteMixin, BaseModel):
    """Company department collaborators belong to."""

    __tablename__ = "departments"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False, index=True)
    code = db.Column(db.String(50), nullable=True)

    collaborators = db.relationship("Collaborator", back_populates="department")

    def __repr__(self):
        return f"<Department {self.name}>"


class TrainingOrganization(NaturalKeyMixin, SoftDeleteMixin, BaseModel):
    """External training provider (organisme de formation)."""

    __tablename__ = "training_organizations"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False, index=True)
    contact_email = db.Column(db.String(255), nullable=True)

    def __repr__(self):
        return f"<TrainingOrganization {self.name}>"


class Category(NaturalKeyMixin, SoftDeleteMixin, BaseModel):
    """Training category a formation is filed under."""

    __tablename__ = "categories"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False, index=True)

    formations = db.relationship("Formation", back_populates="category")

    def __repr__(self):
        return f"<Category {self.name}>"


class Collaborator(SoftDeleteMixin, BaseModel):
    """Employee attending trainings, matched by the HR external identifier."""

    __tablename__ = "collaborators"

    id = db.Column(db.Integer, primary_key=True)
    external_id = db.Column(db.String(100), unique=True, nullable=False, index=True)
    first_name = db.Column(db.String(100), nullable=True)
    last_name = db.Column(db.String(100), nullable=True)
    department_id = db.Column(db.Integer, db.ForeignKey("departments.id"), nullable=True)

    department = db.relationship("Department", back_populates="collaborators")
    sessions = db.relationship("TrainingSession", back_populates="collaborator")

    def __repr__(self):
        return f"<Collaborator {self.external_id}>"

    @property
    def full_name(self):
        parts = [part for part in (self.first_name, self.last_name) if part]
        return " ".join(parts) or None


class Formation(BaseModel):
    """Training course identified by its catalogue code."""

    __tablename__ = "formations"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(100), unique=True, nullable=False, index=True)
    title = db.Column(db.String(255), nullable=True)
    category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    category = db.relationship("Category", back_populates="formations")
    sessions = db.relationship("TrainingSession", back_populates="formation")

    def __repr__(self):
        return f"<Formation {self.code}>"


class TrainingSession(BaseModel):
    """
    One collaborator's attendance of a formation.

    Imports upsert these records by idempotency key: the source system id when
    the export carries one, otherwise (collaborator, formation, start date).
    """

    __tablename__ = "training_sessions"

    id = db.Column(db.Integer, primary_key=True)
    collaborator_id = db.Column(db.Integer, db.ForeignKey("collaborators.id"), nullable=False)
    formation_id = db.Column(db.Integer, db.ForeignKey("formations.id"), nullable=False)
    organization_id = db.Column(db.Integer, db.ForeignKey("training_organizations.id"), nullable=True)
    department_id = db.Column(db.Integer, db.ForeignKey("departments.id"), nullable=True)
    category_id = db.Column(db.Integer, db.ForeignKey("categories.id"), nullable=True)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=True)
    duration_hours = db.Column(db.Numeric(8, 2), nullable=True)
    price_ht = db.Column(db.Numeric(12, 2), nullable=True)
    external_source_id = db.Column(db.String(255), nullable=True)
    import_history_id = db.Column(db.Integer, db.ForeignKey("import_history.id"), nullable=True)

    collaborator = db.relationship("Collaborator", back_populates="sessions")
    formation = db.relationship("Formation", back_populates="sessions")
    organization = db.relationship("TrainingOrganization")
    department = db.relationship("Department")
    category = db.relationship("Category")

    __table_args__ = (
        UniqueConstraint("external_source_id", name="uq_training_sessions_external_source_id"),
        Index("idx_training_sessions_idempotency", "collaborator_id", "formation_id", "start_date"),
    )

    def __repr__(self):
        return f"<TrainingSession collaborator={self.collaborator_id} formation={self.formation_id}>"
