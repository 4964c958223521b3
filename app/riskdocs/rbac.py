from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import abort, g, jsonify

from app.riskdocs.models import User

# Permission keys seeded by scripts/init_db.py
DOCUMENTS_VIEW = "documents.view"
DOCUMENTS_CREATE = "documents.create"
DOCUMENTS_EDIT = "documents.edit"
DOCUMENTS_ISSUE = "documents.issue"
DOCUMENTS_APPROVE = "documents.approve"
DOCUMENTS_ADMIN = "documents.admin"
DOCUMENTS_DELETE = "documents.delete"
ACCESS_LINKS_MANAGE = "access_links.manage"


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    for role in user.roles:
        for perm in role.permissions:
            if perm.key == permission_key:
                return True
    return False


def can_edit(user: User | None, organisation_id: int | None) -> bool:
    """
    Permission resolver consulted by the issue gate: an active member of the
    owning organisation holding the edit permission.
    """
    if not user or not user.is_active:
        return False
    if organisation_id is None or user.organisation_id != organisation_id:
        return False
    return user_has_permission(user, DOCUMENTS_EDIT)


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            # Unauthenticated → 401 (JSON API; the client handles the login redirect).
            if not user or not user.is_active:
                return jsonify({"success": False, "error": "Authentication required", "code": "UNAUTHENTICATED"}), 401
            # Authenticated but unauthorized → 403
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                abort(403)
            return fn(*args, **kwargs)

        return wrapped

    return decorator
