import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.riskdocs.models import Organisation, Permission, Role, User  # noqa: E402
from app.riskdocs.rbac import (  # noqa: E402
    ACCESS_LINKS_MANAGE,
    DOCUMENTS_ADMIN,
    DOCUMENTS_APPROVE,
    DOCUMENTS_CREATE,
    DOCUMENTS_DELETE,
    DOCUMENTS_EDIT,
    DOCUMENTS_ISSUE,
    DOCUMENTS_VIEW,
)
from scripts._db_utils import script_session  # noqa: E402

PERMISSIONS = {
    DOCUMENTS_VIEW: "Documents: view",
    DOCUMENTS_CREATE: "Documents: create",
    DOCUMENTS_EDIT: "Documents: edit drafts",
    DOCUMENTS_ISSUE: "Documents: issue",
    DOCUMENTS_APPROVE: "Documents: approve / reject",
    DOCUMENTS_DELETE: "Documents: delete drafts",
    DOCUMENTS_ADMIN: "Documents: administer (clear approval, reopen actions, integrity)",
    ACCESS_LINKS_MANAGE: "Access links: manage",
}

ROLES = {
    "admin": ("Administrator", tuple(PERMISSIONS)),
    "assessor": (
        "Assessor",
        (DOCUMENTS_VIEW, DOCUMENTS_CREATE, DOCUMENTS_EDIT, DOCUMENTS_ISSUE, DOCUMENTS_DELETE, ACCESS_LINKS_MANAGE),
    ),
    "approver": ("Approver", (DOCUMENTS_VIEW, DOCUMENTS_APPROVE)),
    "viewer": ("Viewer", (DOCUMENTS_VIEW,)),
}


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed permissions/roles/default organisation/admin user in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@riskdocs.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"
    org_name = (os.environ.get("DEFAULT_ORGANISATION") or "Default Organisation").strip()

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///riskdocs.db").strip()

    # Direct engine/session so this can run in release without importing app.wsgi.
    with script_session(db_url) as s:

        def ensure_perm(key: str, name: str) -> Permission:
            p = s.query(Permission).filter(Permission.key == key).one_or_none()
            if not p:
                p = Permission(key=key, name=name)
                s.add(p)
            return p

        perms = {key: ensure_perm(key, name) for key, name in PERMISSIONS.items()}

        roles: dict[str, Role] = {}
        for key, (name, keys) in ROLES.items():
            role = s.query(Role).filter(Role.key == key).one_or_none()
            if not role:
                role = Role(key=key, name=name)
                s.add(role)
            for perm_key in keys:
                if perms[perm_key] not in role.permissions:
                    role.permissions.append(perms[perm_key])
            roles[key] = role

        org = s.query(Organisation).filter(Organisation.name == org_name).one_or_none()
        if not org:
            org = Organisation(name=org_name, approval_required=False)
            s.add(org)
            s.flush()

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(
                email=admin_email,
                password_hash=generate_password_hash(admin_password),
                is_active=True,
                organisation_id=org.id,
            )
            s.add(user)
        if roles["admin"] not in user.roles:
            user.roles.append(roles["admin"])

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")
    print(f"Organisation: {org_name}")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
