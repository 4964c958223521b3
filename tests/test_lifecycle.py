from datetime import datetime
from types import SimpleNamespace

import pytest
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from app.riskdocs.db import session_scope
from app.riskdocs.errors import ConflictError, IllegalTransition
from app.riskdocs.models import User
from app.riskdocs.modules.documents import service
from app.riskdocs.modules.documents.lifecycle import (
    Draft,
    Issued,
    Superseded,
    can_transition,
    check_chain,
    issue,
    lock_message,
    state_of,
    supersede,
    write_transition,
)
from app.riskdocs.modules.documents.models import DocumentVersion


def _draft(**kw) -> Draft:
    values = {"version_id": 1, "base_document_id": "chain-1", "version_number": 1, "lock_version": 3}
    values.update(kw)
    return Draft(**values)


def test_transition_table():
    assert can_transition("draft", "issued")
    assert can_transition("issued", "superseded")
    assert not can_transition("issued", "draft")
    assert not can_transition("superseded", "issued")
    assert not can_transition("superseded", "draft")
    assert not can_transition("draft", "superseded")


def test_issue_and_supersede_produce_next_state():
    at = datetime(2026, 3, 1, 9, 30)
    issued = issue(_draft(), issued_at=at, issued_by_user_id=7)
    assert isinstance(issued, Issued)
    assert issued.status == "issued"
    assert issued.issue_date == at
    assert issued.lock_version == 4

    later = datetime(2026, 6, 1, 12, 0)
    gone = supersede(issued, successor_id=2, superseded_at=later)
    assert isinstance(gone, Superseded)
    assert gone.superseded_by_document_id == 2
    assert gone.issue_date == at
    assert gone.lock_version == 5


def test_illegal_transitions_raise():
    at = datetime(2026, 3, 1)
    issued = issue(_draft(), issued_at=at, issued_by_user_id=None)
    with pytest.raises(IllegalTransition):
        issue(issued, issued_at=at, issued_by_user_id=None)
    with pytest.raises(IllegalTransition):
        supersede(_draft(), successor_id=2, superseded_at=at)
    with pytest.raises(IllegalTransition):
        supersede(issued, successor_id=issued.version_id, superseded_at=at)
    gone = supersede(issued, successor_id=2, superseded_at=at)
    with pytest.raises(IllegalTransition):
        supersede(gone, successor_id=3, superseded_at=at)


def test_issue_status_cannot_be_assigned_directly(app, make_fra):
    vid, _ = make_fra()
    with session_scope(app) as s:
        v = s.get(DocumentVersion, vid)
        with pytest.raises(IllegalTransition):
            v.issue_status = "issued"
        # Even re-asserting draft on a persisted row goes through the transitions.
        with pytest.raises(IllegalTransition):
            v.issue_status = "draft"
    with pytest.raises(IllegalTransition):
        DocumentVersion(issue_status="issued")


def test_state_of_reads_row(app, make_fra):
    vid, base = make_fra()
    with session_scope(app) as s:
        st = state_of(s.get(DocumentVersion, vid))
    assert isinstance(st, Draft)
    assert st.base_document_id == base
    assert st.version_number == 1


def test_stale_transition_loses_compare_and_swap(app, seed, make_fra):
    vid, _ = make_fra()
    with session_scope(app) as s:
        stale = state_of(s.get(DocumentVersion, vid))

    # Someone edits the draft after the state was read.
    with session_scope(app) as s:
        actor = s.get(User, seed.assessor_id)
        service.update_content(s, vid, {"executive_summary": "Revised"}, organisation_id=seed.org_id, actor=actor)

    with session_scope(app) as s:
        with pytest.raises(ConflictError):
            write_transition(s, stale, issue(stale, issued_at=datetime.utcnow(), issued_by_user_id=None))
        s.rollback()

    with session_scope(app) as s:
        assert s.get(DocumentVersion, vid).issue_status == "draft"


def test_write_transition_rejects_mismatched_states():
    with pytest.raises(IllegalTransition):
        write_transition(None, _draft(), _draft(version_id=2))  # type: ignore[arg-type]


def test_storage_rejects_second_draft_in_chain(app, seed, make_fra):
    vid, base = make_fra()
    with pytest.raises(IntegrityError):
        with session_scope(app) as s:
            s.add(
                DocumentVersion(
                    base_document_id=base,
                    version_number=2,
                    organisation_id=seed.org_id,
                    title="Sneaky second draft",
                    document_type="FRA",
                    issue_status="draft",
                )
            )
            s.flush()


def test_storage_rejects_second_issued_in_chain(app, seed, make_fra, issue_as):
    vid, base = make_fra()
    issue_as(vid)
    with session_scope(app) as s:
        s.add(
            DocumentVersion(
                base_document_id=base,
                version_number=2,
                organisation_id=seed.org_id,
                title="v2",
                document_type="FRA",
                issue_status="draft",
            )
        )
        s.flush()
        v2_id = s.query(DocumentVersion).filter_by(base_document_id=base, version_number=2).one().id

    with pytest.raises(IntegrityError):
        with session_scope(app) as s:
            s.execute(update(DocumentVersion).where(DocumentVersion.id == v2_id).values(issue_status="issued"))


def test_check_chain_reports_broken_chains():
    def row(id_, n, status, **kw):
        values = {
            "id": id_,
            "version_number": n,
            "issue_status": status,
            "deleted_at": None,
            "superseded_by_document_id": None,
            "locked_pdf_path": "documents/x.json" if status != "draft" else None,
        }
        values.update(kw)
        return SimpleNamespace(**values)

    healthy = [row(1, 1, "superseded", superseded_by_document_id=2), row(2, 2, "issued"), row(3, 3, "draft")]
    assert check_chain(healthy) == []

    two_issued = [row(1, 1, "issued"), row(2, 2, "issued")]
    assert any("Multiple issued" in p for p in check_chain(two_issued))

    dangling = [row(1, 1, "superseded", superseded_by_document_id=99), row(2, 2, "issued")]
    assert any("without a successor" in p for p in check_chain(dangling))

    backwards = [row(1, 1, "issued"), row(2, 2, "superseded", superseded_by_document_id=1)]
    assert any("older" in p for p in check_chain(backwards))

    no_artifact = [row(1, 1, "issued", locked_pdf_path=None)]
    assert any("without a locked artifact" in p for p in check_chain(no_artifact))


def test_lock_messages():
    assert "issued" in lock_message(SimpleNamespace(issue_status="issued"))
    assert "superseded" in lock_message(SimpleNamespace(issue_status="superseded"))
    assert lock_message(SimpleNamespace(issue_status="draft")) == ""
