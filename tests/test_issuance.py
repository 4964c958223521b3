import io
import json
import threading
from dataclasses import dataclass
from datetime import datetime

import pytest
from botocore.exceptions import ClientError

from app.riskdocs.db import session_scope
from app.riskdocs.errors import (
    ArtifactGenerationFailed,
    ArtifactGenerationTimedOut,
    ArtifactPersistenceUnverified,
    ConflictError,
    DocumentNotFound,
    ValidationFailed,
)
from app.riskdocs.models import AuditEvent, User
from app.riskdocs.modules.documents import service
from app.riskdocs.modules.documents.artifacts import REFERENCE_NUMBER_NOTE
from app.riskdocs.modules.documents.derivation import derive_new_version
from app.riskdocs.modules.documents.events import DocumentIssuedEvent, document_issued, publish_document_issued
from app.riskdocs.modules.documents.models import Action, ChangeSummary, DocumentVersion
from app.riskdocs.storage import LocalStorage, S3Storage, StorageError, sha256_hex, storage_from_config


class ExplodingBuilder:
    content_type = "application/json"
    extension = "json"

    def build(self, content, *, cancel_event):
        raise RuntimeError("renderer crashed")


class HangingBuilder:
    content_type = "application/json"
    extension = "json"

    def __init__(self):
        self.cancelled = threading.Event()

    def build(self, content, *, cancel_event):
        if cancel_event.wait(10):
            self.cancelled.set()
        raise ArtifactGenerationFailed("cancelled")


class FakeS3Client:
    """In-memory S3 client; operations named in ``failing`` answer with a ClientError."""

    def __init__(self, *failing):
        self.failing = set(failing)
        self.objects = {}

    def _maybe_fail(self, operation):
        if operation in self.failing:
            raise ClientError({"Error": {"Code": "SlowDown", "Message": "Please reduce your request rate."}}, operation)

    def put_object(self, Bucket, Key, Body, **extra):
        self._maybe_fail("PutObject")
        self.objects[Key] = Body

    def get_object(self, Bucket, Key):
        self._maybe_fail("GetObject")
        if Key not in self.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey", "Message": "Not found"}}, "GetObject")
        return {"Body": io.BytesIO(self.objects[Key])}

    def head_object(self, Bucket, Key):
        self._maybe_fail("HeadObject")
        if Key not in self.objects:
            raise ClientError({"Error": {"Code": "404", "Message": "Not Found"}}, "HeadObject")
        return {"ContentLength": len(self.objects[Key])}

    def delete_object(self, Bucket, Key):
        self._maybe_fail("DeleteObject")
        self.objects.pop(Key, None)


@dataclass(frozen=True)
class FakeS3Storage(S3Storage):
    client: object = None

    def _client(self):
        return self.client


def _s3(*failing):
    return FakeS3Storage(
        endpoint="",
        region="nyc3",
        bucket="riskdocs",
        access_key_id="key",
        secret_access_key="secret",
        client=FakeS3Client(*failing),
    )


class VanishingStorage(LocalStorage):
    """Accepts writes but never finds them again."""

    def exists(self, key):
        return False


def _stored_artifacts(app):
    root = storage_from_config(app.config).root / "documents"
    return [p for p in root.rglob("*") if p.is_file()] if root.exists() else []


def _assert_untouched_draft(app, vid):
    with session_scope(app) as s:
        v = s.get(DocumentVersion, vid)
        assert v.issue_status == "draft"
        assert v.issue_date is None
        assert v.locked_pdf_path is None
        assert v.locked_pdf_sha256 is None
        return v


def test_issue_success_stores_verified_artifact(app, seed, make_fra, issue_as):
    vid, base = make_fra()
    result = issue_as(vid)

    assert result.version_id == vid
    assert result.base_document_id == base
    assert result.version_number == 1
    assert result.superseded_version_id is None
    body = result.to_dict()
    assert body["success"] is True
    assert body["locked_pdf_path"].startswith(f"documents/{base}/v1/locked-")
    # Non-required skeleton modules are still empty: advisory only.
    assert any("has no data" in w for w in body["warnings"])

    with session_scope(app) as s:
        v = s.get(DocumentVersion, vid)
        assert v.issue_status == "issued"
        assert v.issue_date is not None
        assert v.issued_by_user_id == seed.assessor_id
        assert v.locked_pdf_size_bytes == result.artifact.size_bytes
        stored = storage_from_config(app.config).get_bytes(v.locked_pdf_path)
        assert sha256_hex(stored) == v.locked_pdf_sha256
        snapshot = json.loads(stored)
        assert snapshot["content"]["title"] == "Warehouse fire risk assessment"
        assert [a["recommended_action"] for a in snapshot["actions"]] == ["Recommendation 1"]
        audit = [e.action for e in s.query(AuditEvent).filter(AuditEvent.entity_id == str(vid)).all()]
        assert "document.issue" in audit
        assert "document.issue_notification" in audit


def test_issue_runs_post_commit_handlers(app, make_fra, issue_as):
    vid, _ = make_fra(actions=("open", "in_progress"))
    issue_as(vid)

    with session_scope(app) as s:
        refs = [a.reference_number for a in s.query(Action).filter(Action.version_id == vid).order_by(Action.id)]
        assert refs == ["R-01", "R-02"]
        summary = s.query(ChangeSummary).filter(ChangeSummary.version_id == vid).one()
        assert summary.previous_version_id is None
        assert summary.new_actions_count == 2
        assert summary.outstanding_actions_count == 2
        assert summary.has_material_changes is True
        assert "Initial issue." in summary.summary_text
        assert "- R-01 [P2] Recommendation 1" in summary.summary_text.splitlines()


def test_artifact_flags_reference_numbers_assigned_after_issue(app, seed, make_fra, issue_as):
    v1, base = make_fra()
    first = issue_as(v1)
    storage = storage_from_config(app.config)
    snapshot = json.loads(storage.get_bytes(first.artifact.path))
    assert [a["reference_number"] for a in snapshot["actions"]] == [None]
    assert snapshot["notes"] == [REFERENCE_NUMBER_NOTE]

    with session_scope(app) as s:
        derived = derive_new_version(s, base, actor=s.get(User, seed.assessor_id), organisation_id=seed.org_id)
    second = issue_as(derived.new_version_id)
    # Carried actions already hold their number, so v2 renders it and needs no note.
    snapshot = json.loads(storage.get_bytes(second.artifact.path))
    assert [a["reference_number"] for a in snapshot["actions"]] == ["R-01"]
    assert snapshot["notes"] == []


def test_builder_failure_leaves_draft_and_records_error(app, make_fra, issue_as, orchestrator):
    vid, _ = make_fra()
    with pytest.raises(ArtifactGenerationFailed) as exc:
        issue_as(vid, orch=orchestrator(builder=ExplodingBuilder()))
    assert exc.value.retryable is True

    v = _assert_untouched_draft(app, vid)
    assert "renderer crashed" in v.artifact_generation_error
    assert _stored_artifacts(app) == []


def test_builder_timeout_is_bounded_and_cancels(app, make_fra, issue_as, orchestrator):
    vid, _ = make_fra()
    builder = HangingBuilder()
    with pytest.raises(ArtifactGenerationTimedOut) as exc:
        issue_as(vid, orch=orchestrator(builder=builder, timeout_seconds=0.2))
    assert exc.value.http_status == 504
    assert builder.cancelled.wait(5)

    v = _assert_untouched_draft(app, vid)
    assert "timed out" in v.artifact_generation_error


def test_unverifiable_storage_never_flips_status(app, make_fra, issue_as, orchestrator):
    vid, _ = make_fra()
    root = storage_from_config(app.config).root
    with pytest.raises(ArtifactPersistenceUnverified):
        issue_as(vid, orch=orchestrator(storage=VanishingStorage(root=root)))

    _assert_untouched_draft(app, vid)
    # The unverifiable blob is discarded.
    assert _stored_artifacts(app) == []


def test_object_store_upload_failure_is_a_retryable_generation_failure(app, make_fra, issue_as, orchestrator):
    vid, _ = make_fra()
    storage = _s3("PutObject")
    with pytest.raises(ArtifactGenerationFailed) as exc:
        issue_as(vid, orch=orchestrator(storage=storage))
    assert exc.value.code == "ARTIFACT_GENERATION_FAILED"
    assert exc.value.http_status == 502
    assert exc.value.retryable is True
    assert isinstance(exc.value.__cause__, StorageError)

    v = _assert_untouched_draft(app, vid)
    assert "Could not store artifact" in v.artifact_generation_error
    assert "SlowDown" in v.artifact_generation_error
    assert storage.client.objects == {}

    # Once the store recovers the same draft issues normally.
    storage.client.failing.clear()
    result = issue_as(vid, orch=orchestrator(storage=storage))
    assert result.artifact.path in storage.client.objects


def test_object_store_errors_are_storage_errors():
    storage = _s3("GetObject", "DeleteObject")
    storage.put_bytes("documents/a.json", b"{}")
    assert storage.exists("documents/a.json")
    assert not storage.exists("documents/missing.json")
    with pytest.raises(StorageError):
        storage.get_bytes("documents/a.json")
    with pytest.raises(StorageError):
        storage.delete("documents/a.json")

    storage.client.failing.clear()
    assert storage.get_bytes("documents/a.json") == b"{}"
    storage.delete("documents/a.json")
    assert not storage.exists("documents/a.json")


def test_edit_during_render_loses_the_race(app, seed, make_fra, issue_as, orchestrator):
    vid, _ = make_fra()

    class EditingBuilder:
        content_type = "application/json"
        extension = "json"

        def build(self, content, *, cancel_event):
            with session_scope(app) as s:
                actor = s.get(User, seed.assessor_id)
                service.update_content(
                    s, vid, {"executive_summary": "Edited mid-issue"}, organisation_id=seed.org_id, actor=actor
                )
            return json.dumps(content).encode()

    with pytest.raises(ConflictError):
        issue_as(vid, orch=orchestrator(builder=EditingBuilder()))

    v = _assert_untouched_draft(app, vid)
    assert v.executive_summary == "Edited mid-issue"
    assert _stored_artifacts(app) == []


def test_issue_supersedes_previous_issued_version(app, seed, make_fra, issue_as):
    v1, base = make_fra()
    first = issue_as(v1)
    with session_scope(app) as s:
        derived = derive_new_version(s, base, actor=s.get(User, seed.assessor_id), organisation_id=seed.org_id)
    second = issue_as(derived.new_version_id)

    assert second.superseded_version_id == v1
    with session_scope(app) as s:
        old = s.get(DocumentVersion, v1)
        new = s.get(DocumentVersion, derived.new_version_id)
        assert old.issue_status == "superseded"
        assert old.superseded_by_document_id == new.id
        assert old.superseded_date == new.issue_date
        # The superseded version keeps its own frozen artifact.
        assert old.locked_pdf_path == first.artifact.path
        assert new.locked_pdf_path == second.artifact.path
        issued = s.query(DocumentVersion).filter_by(base_document_id=base, issue_status="issued").all()
        assert [v.id for v in issued] == [new.id]


def test_issue_rejects_non_drafts_and_invalid_content(app, seed, make_fra, issue_as):
    vid, _ = make_fra()
    issue_as(vid)
    with pytest.raises(ValidationFailed) as exc:
        issue_as(vid)
    assert exc.value.code == "NOT_DRAFT"

    bare, _ = make_fra(actions=())
    with pytest.raises(ValidationFailed) as exc:
        issue_as(bare)
    assert "NO_RECOMMENDATIONS" in exc.value.codes
    _assert_untouched_draft(app, bare)

    with pytest.raises(ValidationFailed) as exc:
        issue_as(bare, user_id=seed.viewer_id)
    assert "NO_PERMISSION" in exc.value.codes


def test_issue_is_scoped_to_the_organisation(app, seed, make_fra, orchestrator):
    vid, _ = make_fra()
    with session_scope(app) as s:
        outsider = s.get(User, seed.outsider_id)
        with pytest.raises(DocumentNotFound):
            orchestrator().issue(s, vid, actor=outsider, organisation_id=seed.other_org_id)
    _assert_untouched_draft(app, vid)


def test_failing_side_channel_does_not_undo_issue(app, make_fra, issue_as):
    calls = []

    def _boom(sender, *, event):
        calls.append(event.version_id)
        raise RuntimeError("mail relay down")

    document_issued.connect(_boom, sender=app)
    try:
        vid, _ = make_fra()
        result = issue_as(vid)
    finally:
        document_issued.disconnect(_boom, sender=app)

    assert calls == [vid]
    assert result.version_id == vid
    with session_scope(app) as s:
        v = s.get(DocumentVersion, vid)
        assert v.issue_status == "issued"
        assert v.live_actions[0].reference_number == "R-01"


def test_publish_reports_failed_receivers(app):
    def _broken(sender, *, event):
        raise ValueError("nope")

    document_issued.connect(_broken, sender=app)
    try:
        event = DocumentIssuedEvent(
            version_id=999,
            base_document_id="missing-chain",
            version_number=1,
            organisation_id=1,
            superseded_version_id=None,
            issued_by_user_id=None,
            issued_at=datetime(2026, 1, 1),
            artifact_path="documents/x.json",
            artifact_sha256="0" * 64,
        )
        failed = publish_document_issued(app, event)
    finally:
        document_issued.disconnect(_broken, sender=app)
    assert "_broken" in failed


def test_issue_readiness_and_issue_over_http(client, login, make_fra):
    vid, base = make_fra()
    headers = login(client, "assessor@example.com")

    r = client.get(f"/api/documents/{vid}/issue-readiness")
    assert r.status_code == 200
    assert r.json["valid"] is True
    assert r.json["errors"] == []

    r = client.post(f"/api/documents/{vid}/issue", json={}, headers=headers)
    assert r.status_code == 200, r.json
    assert r.json["document_id"] == vid
    assert r.json["base_document_id"] == base

    r = client.get(f"/api/documents/{vid}/artifact")
    assert r.status_code == 200
    assert json.loads(r.data)["content"]["site_name"] == "Unit 4, Riverside Estate"

    r = client.post(f"/api/documents/{vid}/issue", json={}, headers=headers)
    assert r.status_code == 422
    assert r.json["code"] == "NOT_DRAFT"

    r = client.get(f"/api/documents/{vid}/issue-readiness")
    assert r.json["valid"] is False
    assert r.json["codes"] == ["NOT_DRAFT"]
