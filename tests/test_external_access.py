from datetime import datetime, timedelta

import pytest
from sqlalchemy import update

from app.riskdocs.db import session_scope
from app.riskdocs.errors import AccessDenied, DocumentNotFound, ValidationFailed
from app.riskdocs.models import User
from app.riskdocs.modules.documents.derivation import derive_new_version
from app.riskdocs.modules.documents.models import DocumentVersion
from app.riskdocs.modules.external_access import service
from app.riskdocs.modules.external_access.models import AccessLink, AccessLogEntry


def _create_link(app, seed, base, **kw):
    with session_scope(app) as s:
        link = service.create_access_link(
            s, base, organisation_id=seed.org_id, actor=s.get(User, seed.assessor_id), **kw
        )
        s.flush()
        return link.id, link.token


def _resolve(app, token, **kw):
    with session_scope(app) as s:
        resolved = service.resolve_external_token(s, token, client_ip="203.0.113.9", **kw)
        return resolved.version.id, resolved.version.version_number


def _next_issue(app, seed, base, issue_as):
    with session_scope(app) as s:
        derived = derive_new_version(s, base, actor=s.get(User, seed.assessor_id), organisation_id=seed.org_id)
    issue_as(derived.new_version_id)
    return derived.new_version_id


def test_token_follows_the_chain_across_reissues(app, seed, make_fra, issue_as):
    v1, base = make_fra()
    issue_as(v1)
    link_id, token = _create_link(app, seed, base, label="Landlord copy")

    assert _resolve(app, token) == (v1, 1)

    v2 = _next_issue(app, seed, base, issue_as)
    assert _resolve(app, token) == (v2, 2)

    v3 = _next_issue(app, seed, base, issue_as)
    assert _resolve(app, token) == (v3, 3)

    with session_scope(app) as s:
        link = s.get(AccessLink, link_id)
        assert link.access_count == 3
        assert link.last_accessed_at is not None
        granted = s.query(AccessLogEntry).filter_by(link_id=link_id, granted=True).order_by(AccessLogEntry.id).all()
        assert [e.version_id for e in granted] == [v1, v2, v3]
        assert all(e.client_ip == "203.0.113.9" for e in granted)


def test_draft_in_progress_does_not_change_what_clients_see(app, seed, make_fra, issue_as):
    v1, base = make_fra()
    issue_as(v1)
    _, token = _create_link(app, seed, base)
    with session_scope(app) as s:
        derive_new_version(s, base, actor=None, organisation_id=seed.org_id)
    assert _resolve(app, token) == (v1, 1)


def test_denials_carry_a_reason_and_are_logged(app, seed, make_fra, issue_as):
    v1, base = make_fra()
    issue_as(v1)
    revoked_id, revoked = _create_link(app, seed, base)
    expiring_id, expiring = _create_link(app, seed, base, expires_in_days=1)
    with session_scope(app) as s:
        service.revoke_access_link(s, revoked_id, organisation_id=seed.org_id, actor=None)

    cases = [
        (revoked, {}, service.DENY_REVOKED),
        (expiring, {"now": datetime.utcnow() + timedelta(days=2)}, service.DENY_EXPIRED),
        ("not-a-real-token", {}, service.DENY_UNKNOWN),
    ]
    for token, kw, reason in cases:
        with pytest.raises(AccessDenied) as exc:
            _resolve(app, token, **kw)
        assert exc.value.reason == reason
        assert exc.value.http_status == 403

    # Still valid today.
    assert _resolve(app, expiring) == (v1, 1)

    with session_scope(app) as s:
        denied = s.query(AccessLogEntry).filter_by(granted=False).order_by(AccessLogEntry.id).all()
        assert [(e.link_id, e.reason) for e in denied] == [
            (revoked_id, "revoked"),
            (expiring_id, "expired"),
            (None, "unknown_token"),
        ]
        assert s.get(AccessLink, revoked_id).access_count == 0


def test_link_without_an_issued_version_is_denied(app, seed, make_fra, issue_as):
    v1, base = make_fra()
    issue_as(v1)
    link_id, token = _create_link(app, seed, base)
    # Simulate a chain whose issued version was withdrawn by an administrator.
    with session_scope(app) as s:
        s.execute(update(DocumentVersion).where(DocumentVersion.id == v1).values(deleted_at=datetime.utcnow()))

    with pytest.raises(AccessDenied) as exc:
        _resolve(app, token)
    assert exc.value.reason == service.DENY_NO_ISSUED


def test_create_link_validation(app, seed, make_fra, issue_as):
    vid, base = make_fra()
    with pytest.raises(ValidationFailed) as exc:
        _create_link(app, seed, base)
    assert exc.value.code == "NO_ISSUED_VERSION"

    issue_as(vid)
    for days in (0, 366, -5):
        with pytest.raises(ValidationFailed) as exc:
            _create_link(app, seed, base, expires_in_days=days)
        assert exc.value.code == "INVALID_EXPIRY"

    with session_scope(app) as s:
        with pytest.raises(DocumentNotFound):
            service.create_access_link(s, base, organisation_id=seed.other_org_id, actor=None)

    link_id, token = _create_link(app, seed, base, expires_in_days=365)
    with session_scope(app) as s:
        link = s.get(AccessLink, link_id)
        assert service.link_status(link) == "active"
        assert service.link_url(link, "https://docs.example.com/") == f"https://docs.example.com/client/documents/{token}"
        assert service.link_status(link, now=link.expires_at) == "expired"


def test_access_links_over_http(client, login, make_fra, issue_as):
    vid, base = make_fra()
    issue_as(vid)
    headers = login(client, "assessor@example.com")

    r = client.post(f"/api/access-links/chains/{base}", json={"expires_in_days": "soon"}, headers=headers)
    assert r.status_code == 400
    assert r.json["code"] == "INVALID_EXPIRY"

    r = client.post(f"/api/access-links/chains/{base}", json={"expires_in_days": 30, "label": "Insurer"}, headers=headers)
    assert r.status_code == 201
    link = r.json["link"]
    assert link["status"] == "active"
    assert link["url"] == f"https://docs.example.com/client/documents/{link['token']}"

    r = client.get(f"/api/access-links/chains/{base}")
    assert [entry["label"] for entry in r.json["links"]] == ["Insurer"]

    client.post("/auth/logout", headers=headers)

    # The client portal needs neither a session nor a CSRF token.
    r = client.get(f"/client/documents/{link['token']}")
    assert r.status_code == 200
    assert r.json["document"]["id"] == vid
    assert r.json["document"]["issue_status"] == "issued"

    r = client.get(f"/client/documents/{link['token']}/artifact")
    assert r.status_code == 200
    assert r.data.startswith(b"{")

    r = client.get("/client/documents/bogus")
    assert r.status_code == 403
    assert r.json["reason"] == "unknown_token"

    headers = login(client, "assessor@example.com")
    r = client.post(f"/api/access-links/{link['id']}/revoke", json={}, headers=headers)
    assert r.status_code == 200
    assert r.json["link"]["status"] == "revoked"
    assert r.json["link"]["access_count"] == 2

    r = client.get(f"/client/documents/{link['token']}")
    assert r.status_code == 403
    assert r.json["reason"] == "revoked"

    r = client.delete(f"/api/access-links/{link['id']}", headers=headers)
    assert r.status_code == 200
    r = client.get(f"/api/access-links/chains/{base}")
    assert r.json["links"] == []


def test_viewer_cannot_manage_links(client, login, make_fra, issue_as):
    vid, base = make_fra()
    issue_as(vid)
    headers = login(client, "viewer@example.com")
    r = client.post(f"/api/access-links/chains/{base}", json={}, headers=headers)
    assert r.status_code == 403
    assert r.json["missing_permission"] == "access_links.manage"
