from types import SimpleNamespace

import pytest
from werkzeug.security import generate_password_hash

from app.riskdocs import auth, create_app
from app.riskdocs.db import session_scope
from app.riskdocs.models import Base, Organisation, Permission, Role, User
from app.riskdocs.modules.documents import service
from app.riskdocs.modules.documents.artifacts import CanonicalJsonArtifactBuilder
from app.riskdocs.modules.documents.events import publish_document_issued
from app.riskdocs.modules.documents.issuance import IssuanceOrchestrator
from app.riskdocs.modules.documents.validation import REQUIRED_MODULES
from app.riskdocs.rbac import (
    ACCESS_LINKS_MANAGE,
    DOCUMENTS_ADMIN,
    DOCUMENTS_APPROVE,
    DOCUMENTS_CREATE,
    DOCUMENTS_DELETE,
    DOCUMENTS_EDIT,
    DOCUMENTS_ISSUE,
    DOCUMENTS_VIEW,
)
from app.riskdocs.storage import storage_from_config

ALL_PERMISSIONS = (
    DOCUMENTS_VIEW,
    DOCUMENTS_CREATE,
    DOCUMENTS_EDIT,
    DOCUMENTS_ISSUE,
    DOCUMENTS_APPROVE,
    DOCUMENTS_ADMIN,
    DOCUMENTS_DELETE,
    ACCESS_LINKS_MANAGE,
)


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "storage"))
    monkeypatch.setenv("PUBLIC_BASE_URL", "https://docs.example.com")
    for k in ("S3_ENDPOINT", "S3_REGION", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY", "CSRF_ENABLED"):
        monkeypatch.delenv(k, raising=False)
    auth._login_attempts.clear()

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)
    return app


@pytest.fixture()
def seed(app):
    """Two organisations, one role per permission profile, one user per role."""
    with session_scope(app) as s:
        perms = {key: Permission(key=key, name=key) for key in ALL_PERMISSIONS}
        roles = {
            "admin": Role(key="admin", name="Administrator"),
            "assessor": Role(key="assessor", name="Assessor"),
            "approver": Role(key="approver", name="Approver"),
            "viewer": Role(key="viewer", name="Viewer"),
        }
        roles["admin"].permissions.extend(perms.values())
        roles["assessor"].permissions.extend(
            perms[k]
            for k in (DOCUMENTS_VIEW, DOCUMENTS_CREATE, DOCUMENTS_EDIT, DOCUMENTS_ISSUE, DOCUMENTS_DELETE, ACCESS_LINKS_MANAGE)
        )
        roles["approver"].permissions.extend([perms[DOCUMENTS_VIEW], perms[DOCUMENTS_APPROVE]])
        roles["viewer"].permissions.append(perms[DOCUMENTS_VIEW])

        org = Organisation(name="Acme Fire Consulting", approval_required=False)
        other = Organisation(name="Other Consultancy", approval_required=False)
        s.add_all(list(perms.values()) + list(roles.values()) + [org, other])
        s.flush()

        def user(email: str, role: str, org_id: int) -> User:
            u = User(email=email, password_hash=generate_password_hash("pw"), is_active=True, organisation_id=org_id)
            u.roles.append(roles[role])
            s.add(u)
            return u

        admin = user("admin@example.com", "admin", org.id)
        assessor = user("assessor@example.com", "assessor", org.id)
        approver = user("approver@example.com", "approver", org.id)
        viewer = user("viewer@example.com", "viewer", org.id)
        outsider = user("outsider@example.com", "admin", other.id)
        s.flush()
        return SimpleNamespace(
            org_id=org.id,
            other_org_id=other.id,
            admin_id=admin.id,
            assessor_id=assessor.id,
            approver_id=approver.id,
            viewer_id=viewer.id,
            outsider_id=outsider.id,
        )


@pytest.fixture()
def client(app, seed):
    return app.test_client()


@pytest.fixture()
def login():
    """Log a test client in and return the CSRF header for its session."""

    def _login(client, email: str, password: str = "pw") -> dict:
        r = client.post("/auth/login", json={"email": email, "password": password})
        assert r.status_code == 200, r.json
        return {"X-CSRF-Token": r.json["csrf_token"]}

    return _login


@pytest.fixture()
def make_fra(app, seed):
    """Create an FRA draft whose required modules are filled in; returns (version_id, base_document_id)."""

    def _make(*, actions: tuple[str, ...] = ("open",), **content):
        with session_scope(app) as s:
            actor = s.get(User, seed.assessor_id)
            v = service.create_document(
                s,
                organisation_id=seed.org_id,
                document_type="FRA",
                actor=actor,
                title="Warehouse fire risk assessment",
                content={"site_name": "Unit 4, Riverside Estate", "executive_summary": "Low risk overall.", **content},
            )
            for key in REQUIRED_MODULES["FRA"]:
                service.update_module(
                    s, v.id, key, organisation_id=seed.org_id, actor=actor, payload={"reviewed": True}
                )
            for i, status in enumerate(actions, start=1):
                service.add_action(
                    s,
                    v.id,
                    organisation_id=seed.org_id,
                    actor=actor,
                    recommended_action=f"Recommendation {i}",
                    priority_band="P2",
                    status=status,
                )
            return v.id, v.base_document_id

    return _make


@pytest.fixture()
def orchestrator(app):
    def _orchestrator(**overrides) -> IssuanceOrchestrator:
        kwargs = {
            "storage": storage_from_config(app.config),
            "builder": CanonicalJsonArtifactBuilder(),
            "timeout_seconds": 5.0,
            "publisher": lambda event: publish_document_issued(app, event),
        }
        kwargs.update(overrides)
        return IssuanceOrchestrator(**kwargs)

    return _orchestrator


@pytest.fixture()
def issue_as(app, seed, orchestrator):
    """Issue a version as the assessor with the default orchestrator."""

    def _issue(version_id: int, *, user_id: int | None = None, orch: IssuanceOrchestrator | None = None):
        with session_scope(app) as s:
            actor = s.get(User, user_id or seed.assessor_id)
            return (orch or orchestrator()).issue(s, version_id, actor=actor, organisation_id=seed.org_id)

    return _issue
