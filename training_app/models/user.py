# training_app/models/user.py

from flask_login import UserMixin

from .base import BaseModel, db

ROLE_ADMIN = "admin"
ROLE_MANAGER = "manager"
ROLE_VIEWER = "viewer"

ROLE_PERMISSIONS = {
    ROLE_ADMIN: frozenset({"manage_imports", "view_imports"}),
    ROLE_MANAGER: frozenset({"manage_imports", "view_imports"}),
    ROLE_VIEWER: frozenset({"view_imports"}),
}


class User(UserMixin, BaseModel):
    """Operator account used to attribute previews, rules and import history."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False, index=True)
    email = db.Column(db.String(120), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    first_name = db.Column(db.String(100), nullable=True)
    last_name = db.Column(db.String(100), nullable=True)
    role = db.Column(db.String(20), nullable=False, default=ROLE_VIEWER)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    is_super_admin = db.Column(db.Boolean, default=False, nullable=False)

    def __repr__(self):
        return f"<User {self.username}>"

    @property
    def permissions(self):
        if self.is_super_admin:
            return ROLE_PERMISSIONS[ROLE_ADMIN]
        return ROLE_PERMISSIONS.get(self.role, frozenset())
