# training_app/utils/permissions.py

from flask_login import current_user


def has_permission(user, permission_name):
    """Check if user holds a permission through their role (super admins hold all)."""
    if not user or not user.is_authenticated:
        return False

    if not getattr(user, "is_active", True):
        return False

    if user.is_super_admin:
        return True

    return permission_name in user.permissions


def has_any_permission(user, *permission_names):
    return any(has_permission(user, name) for name in permission_names)


def current_user_id():
    """Return the authenticated user's id, or None outside an authenticated request."""
    if current_user and current_user.is_authenticated:
        return current_user.id
    return None
