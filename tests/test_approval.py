import pytest

from app.riskdocs.db import session_scope
from app.riskdocs.errors import ApprovalRejected, ApprovalRequired, ApprovalTransitionError, ValidationFailed
from app.riskdocs.models import AuditEvent, Organisation, User
from app.riskdocs.modules.documents import approval
from app.riskdocs.modules.documents.approval import check_issue_clearance
from app.riskdocs.modules.documents.models import DocumentVersion


@pytest.fixture()
def approval_org(app, seed):
    with session_scope(app) as s:
        s.get(Organisation, seed.org_id).approval_required = True


def _as(app, user_id, fn):
    with session_scope(app) as s:
        return fn(s, s.get(User, user_id))


def test_clearance_table():
    assert check_issue_clearance("not_required", False) is None
    assert check_issue_clearance("approved", False) is None
    assert check_issue_clearance("pending", False) == "APPROVAL_PENDING"
    assert check_issue_clearance("rejected", False) == "APPROVAL_REJECTED"
    assert check_issue_clearance("not_required", True) == "APPROVAL_REQUIRED"
    assert check_issue_clearance("pending", True) == "APPROVAL_PENDING"
    assert check_issue_clearance("rejected", True) == "APPROVAL_REJECTED"
    assert check_issue_clearance("approved", True) is None


def test_org_requiring_approval_blocks_issue_until_approved(app, seed, approval_org, make_fra, issue_as):
    vid, _ = make_fra()

    with pytest.raises(ApprovalRequired) as exc:
        issue_as(vid)
    assert exc.value.code == "APPROVAL_REQUIRED"

    _as(app, seed.assessor_id, lambda s, u: approval.request_approval(s, vid, actor=u, notes="Ready for QA"))
    with pytest.raises(ApprovalRequired) as exc:
        issue_as(vid)
    assert exc.value.code == "APPROVAL_PENDING"

    _as(app, seed.approver_id, lambda s, u: approval.approve(s, vid, actor=u))
    result = issue_as(vid)
    assert result.version_id == vid

    with session_scope(app) as s:
        v = s.get(DocumentVersion, vid)
        assert v.issue_status == "issued"
        assert v.approval_status == "approved"
        assert v.approved_by_user_id == seed.approver_id
        actions = [e.action for e in s.query(AuditEvent).filter(AuditEvent.entity_id == str(vid)).all()]
        assert "document.approval_requested" in actions
        assert "document.approved" in actions


def test_rejection_blocks_issue_even_without_org_requirement(app, seed, make_fra, issue_as):
    vid, _ = make_fra()
    _as(app, seed.assessor_id, lambda s, u: approval.request_approval(s, vid, actor=u))

    with pytest.raises(ValidationFailed) as exc:
        _as(app, seed.approver_id, lambda s, u: approval.reject(s, vid, actor=u, reason="   "))
    assert exc.value.code == "REASON_REQUIRED"

    _as(app, seed.approver_id, lambda s, u: approval.reject(s, vid, actor=u, reason="Escape route plan missing"))
    with pytest.raises(ApprovalRejected):
        issue_as(vid)

    with session_scope(app) as s:
        v = s.get(DocumentVersion, vid)
        assert v.issue_status == "draft"
        assert v.approval_notes == "Escape route plan missing"

    # Admin clears the rejection; the org does not require approval, so issue proceeds.
    _as(app, seed.admin_id, lambda s, u: approval.clear_approval(s, vid, actor=u, reason="Plan attached"))
    assert issue_as(vid).version_id == vid


def test_illegal_approval_moves(app, seed, make_fra):
    vid, _ = make_fra()
    with pytest.raises(ApprovalTransitionError):
        _as(app, seed.approver_id, lambda s, u: approval.approve(s, vid, actor=u))
    with pytest.raises(ApprovalTransitionError):
        _as(app, seed.admin_id, lambda s, u: approval.clear_approval(s, vid, actor=u))

    _as(app, seed.assessor_id, lambda s, u: approval.request_approval(s, vid, actor=u))
    with pytest.raises(ApprovalTransitionError):
        _as(app, seed.assessor_id, lambda s, u: approval.request_approval(s, vid, actor=u))
    with pytest.raises(ApprovalTransitionError):
        _as(app, seed.admin_id, lambda s, u: approval.clear_approval(s, vid, actor=u))

    _as(app, seed.approver_id, lambda s, u: approval.approve(s, vid, actor=u))
    with pytest.raises(ApprovalTransitionError):
        _as(app, seed.approver_id, lambda s, u: approval.reject(s, vid, actor=u, reason="Changed my mind"))


def test_approval_endpoints_enforce_permissions(client, login, make_fra):
    vid, _ = make_fra()

    headers = login(client, "viewer@example.com")
    r = client.post(f"/api/documents/{vid}/approval/request", json={}, headers=headers)
    assert r.status_code == 403
    assert r.json["missing_permission"] == "documents.edit"
    client.post("/auth/logout", headers=headers)

    headers = login(client, "assessor@example.com")
    r = client.post(f"/api/documents/{vid}/approval/request", json={"notes": "Please review"}, headers=headers)
    assert r.status_code == 200
    assert r.json["document"]["approval_status"] == "pending"
    r = client.post(f"/api/documents/{vid}/approval/approve", json={}, headers=headers)
    assert r.status_code == 403
    client.post("/auth/logout", headers=headers)

    headers = login(client, "approver@example.com")
    r = client.post(f"/api/documents/{vid}/approval/reject", json={"reason": ""}, headers=headers)
    assert r.status_code == 422
    assert r.json["code"] == "REASON_REQUIRED"
    r = client.post(f"/api/documents/{vid}/approval/approve", json={"notes": "Looks good"}, headers=headers)
    assert r.status_code == 200
    assert r.json["document"]["approval_status"] == "approved"
    r = client.post(f"/api/documents/{vid}/approval/approve", json={}, headers=headers)
    assert r.status_code == 409
    assert r.json["code"] == "APPROVAL_TRANSITION_INVALID"
