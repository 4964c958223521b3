from __future__ import annotations

import io

from flask import Blueprint, abort, current_app, g, jsonify, request, send_file

from app.riskdocs.audit import event_to_dict, events_for, record_event
from app.riskdocs.db import db_session
from app.riskdocs.models import User
from app.riskdocs.modules.documents import approval, service
from app.riskdocs.modules.documents.derivation import derive_new_version
from app.riskdocs.modules.documents.issuance import IssuanceOrchestrator, orchestrator_from_app
from app.riskdocs.rbac import (
    DOCUMENTS_ADMIN,
    DOCUMENTS_APPROVE,
    DOCUMENTS_CREATE,
    DOCUMENTS_DELETE,
    DOCUMENTS_EDIT,
    DOCUMENTS_ISSUE,
    DOCUMENTS_VIEW,
    require_permission,
    user_has_permission,
)
from app.riskdocs.storage import storage_from_config

bp = Blueprint("documents", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _org_id(u: User) -> int:
    if u.organisation_id is None:
        g.missing_permission = "organisation membership"
        abort(403)
    return u.organisation_id


def _payload() -> dict:
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def _orchestrator() -> IssuanceOrchestrator:
    # Tests and alternative deployments may register a preconfigured orchestrator.
    app = current_app._get_current_object()  # type: ignore[attr-defined]
    return app.extensions.get("issuance_orchestrator") or orchestrator_from_app(app)


def _version_response(v, status: int = 200):
    return jsonify({"success": True, "document": service.version_to_dict(v)}), status


@bp.post("/")
@require_permission(DOCUMENTS_CREATE)
def create_document():
    s = db_session()
    u = _current_user()
    data = _payload()
    content = {k: v for k, v in data.items() if k not in ("document_type", "title", "jurisdiction")}
    v = service.create_document(
        s,
        organisation_id=_org_id(u),
        document_type=str(data.get("document_type") or ""),
        actor=u,
        title=data.get("title"),
        jurisdiction=str(data.get("jurisdiction") or "UK"),
        content=content,
    )
    return _version_response(v, 201)


@bp.get("/<int:version_id>")
@require_permission(DOCUMENTS_VIEW)
def get_document(version_id: int):
    s = db_session()
    u = _current_user()
    v = service.get_version(s, version_id, organisation_id=_org_id(u))
    return _version_response(v)


@bp.patch("/<int:version_id>")
@require_permission(DOCUMENTS_EDIT)
def update_document(version_id: int):
    s = db_session()
    u = _current_user()
    v = service.update_content(s, version_id, _payload(), organisation_id=_org_id(u), actor=u)
    s.commit()
    return _version_response(v)


@bp.delete("/<int:version_id>")
@require_permission(DOCUMENTS_DELETE)
def delete_document(version_id: int):
    s = db_session()
    u = _current_user()
    reason = (_payload().get("reason") or "").strip() or None
    v = service.soft_delete_draft(s, version_id, organisation_id=_org_id(u), actor=u, reason=reason)
    s.commit()
    return jsonify({"success": True, "document_id": v.id})


@bp.put("/<int:version_id>/modules/<module_key>")
@require_permission(DOCUMENTS_EDIT)
def update_module(version_id: int, module_key: str):
    s = db_session()
    u = _current_user()
    data = _payload()
    m = service.update_module(
        s,
        version_id,
        module_key,
        organisation_id=_org_id(u),
        actor=u,
        payload=data.get("payload"),
        outcome=data.get("outcome"),
        assessor_notes=data.get("assessor_notes"),
        completed=data.get("completed"),
    )
    s.commit()
    return jsonify(
        {
            "success": True,
            "module": {"module_key": m.module_key, "payload": m.payload, "outcome": m.outcome, "completed": m.completed},
        }
    )


# ---------------------------------------------------------------------------
# Work items
# ---------------------------------------------------------------------------


@bp.post("/<int:version_id>/actions")
@require_permission(DOCUMENTS_EDIT)
def add_action(version_id: int):
    s = db_session()
    u = _current_user()
    data = _payload()
    a = service.add_action(
        s,
        version_id,
        organisation_id=_org_id(u),
        actor=u,
        recommended_action=str(data.get("recommended_action") or ""),
        module_key=data.get("module_key"),
        priority_band=data.get("priority_band"),
        timescale=data.get("timescale"),
        target_date=data.get("target_date"),
        status=data.get("status") or "open",
        owner_user_id=data.get("owner_user_id"),
    )
    s.commit()
    return jsonify({"success": True, "action": service.action_to_dict(a)}), 201


@bp.patch("/actions/<int:action_id>")
@require_permission(DOCUMENTS_EDIT)
def update_action(action_id: int):
    s = db_session()
    u = _current_user()
    a = service.update_action(
        s,
        action_id,
        _payload(),
        organisation_id=_org_id(u),
        actor=u,
        can_reopen=user_has_permission(u, DOCUMENTS_ADMIN),
    )
    s.commit()
    return jsonify({"success": True, "action": service.action_to_dict(a)})


# ---------------------------------------------------------------------------
# Evidence
# ---------------------------------------------------------------------------


@bp.post("/<int:version_id>/evidence")
@require_permission(DOCUMENTS_EDIT)
def upload_evidence(version_id: int):
    s = db_session()
    u = _current_user()
    f = request.files.get("file")
    if not f or not f.filename:
        return jsonify({"success": False, "error": "File is required.", "code": "FILE_REQUIRED"}), 400
    action_id = request.form.get("action_id")
    link = service.add_evidence(
        s,
        version_id,
        organisation_id=_org_id(u),
        actor=u,
        storage=storage_from_config(current_app.config),
        filename=f.filename,
        data=f.read(),
        content_type=f.mimetype,
        caption=request.form.get("caption"),
        module_key=request.form.get("module_key") or None,
        action_id=int(action_id) if action_id else None,
    )
    s.commit()
    return jsonify({"success": True, "evidence": service.evidence_to_dict(link)}), 201


@bp.patch("/evidence/<int:link_id>")
@require_permission(DOCUMENTS_EDIT)
def update_evidence(link_id: int):
    s = db_session()
    u = _current_user()
    link = service.update_evidence_caption(
        s, link_id, _payload().get("caption"), organisation_id=_org_id(u), actor=u
    )
    s.commit()
    return jsonify({"success": True, "evidence": service.evidence_to_dict(link)})


@bp.delete("/evidence/<int:link_id>")
@require_permission(DOCUMENTS_EDIT)
def delete_evidence(link_id: int):
    s = db_session()
    u = _current_user()
    link = service.delete_evidence_link(s, link_id, organisation_id=_org_id(u), actor=u)
    s.commit()
    return jsonify({"success": True, "evidence_id": link.id})


# ---------------------------------------------------------------------------
# Issue + approval
# ---------------------------------------------------------------------------


@bp.get("/<int:version_id>/issue-readiness")
@require_permission(DOCUMENTS_VIEW)
def issue_readiness(version_id: int):
    s = db_session()
    u = _current_user()
    readiness = _orchestrator().validate(s, version_id, actor=u, organisation_id=_org_id(u))
    return jsonify({"success": True, **readiness.to_dict()})


@bp.post("/<int:version_id>/issue")
@require_permission(DOCUMENTS_ISSUE)
def issue_document(version_id: int):
    s = db_session()
    u = _current_user()
    result = _orchestrator().issue(s, version_id, actor=u, organisation_id=_org_id(u))
    return jsonify(result.to_dict())


@bp.post("/<int:version_id>/approval/request")
@require_permission(DOCUMENTS_EDIT)
def request_approval(version_id: int):
    s = db_session()
    u = _current_user()
    service.get_version(s, version_id, organisation_id=_org_id(u))
    v = approval.request_approval(s, version_id, actor=u, notes=_payload().get("notes"))
    s.commit()
    return _version_response(v)


@bp.post("/<int:version_id>/approval/approve")
@require_permission(DOCUMENTS_APPROVE)
def approve_document(version_id: int):
    s = db_session()
    u = _current_user()
    service.get_version(s, version_id, organisation_id=_org_id(u))
    v = approval.approve(s, version_id, actor=u, notes=_payload().get("notes"))
    s.commit()
    return _version_response(v)


@bp.post("/<int:version_id>/approval/reject")
@require_permission(DOCUMENTS_APPROVE)
def reject_document(version_id: int):
    s = db_session()
    u = _current_user()
    service.get_version(s, version_id, organisation_id=_org_id(u))
    v = approval.reject(s, version_id, actor=u, reason=str(_payload().get("reason") or ""))
    s.commit()
    return _version_response(v)


@bp.post("/<int:version_id>/approval/clear")
@require_permission(DOCUMENTS_ADMIN)
def clear_approval(version_id: int):
    s = db_session()
    u = _current_user()
    service.get_version(s, version_id, organisation_id=_org_id(u))
    v = approval.clear_approval(s, version_id, actor=u, reason=_payload().get("reason"))
    s.commit()
    return _version_response(v)


@bp.get("/<int:version_id>/artifact")
@require_permission(DOCUMENTS_VIEW)
def download_artifact(version_id: int):
    s = db_session()
    u = _current_user()
    v = service.get_version(s, version_id, organisation_id=_org_id(u))
    data = service.read_locked_artifact(storage_from_config(current_app.config), v)
    record_event(
        s,
        actor=u,
        action="document.artifact_download",
        entity_type="DocumentVersion",
        entity_id=str(v.id),
        metadata={"locked_pdf_path": v.locked_pdf_path},
    )
    s.commit()
    extension = (v.locked_pdf_path or "").rsplit(".", 1)[-1] or "bin"
    return send_file(
        io.BytesIO(data),
        mimetype="application/pdf" if extension == "pdf" else "application/json",
        as_attachment=True,
        download_name=f"{v.document_type}-v{v.version_number}.{extension}",
        max_age=0,
    )


@bp.get("/<int:version_id>/audit")
@require_permission(DOCUMENTS_VIEW)
def document_audit_trail(version_id: int):
    s = db_session()
    u = _current_user()
    v = service.get_version(s, version_id, organisation_id=_org_id(u), include_deleted=True)
    events = events_for(s, "DocumentVersion", v.id)
    return jsonify({"success": True, "document_id": v.id, "events": [event_to_dict(e) for e in events]})


# ---------------------------------------------------------------------------
# Chains
# ---------------------------------------------------------------------------


@bp.post("/chains/<base_document_id>/versions")
@require_permission(DOCUMENTS_EDIT)
def create_new_version(base_document_id: str):
    s = db_session()
    u = _current_user()
    carry = _payload().get("carry_forward_evidence", True)
    if isinstance(carry, str):
        carry = carry.strip().lower() not in ("0", "false", "no")
    result = derive_new_version(
        s,
        base_document_id,
        actor=u,
        organisation_id=_org_id(u),
        carry_forward_evidence=bool(carry),
    )
    return jsonify(result.to_dict()), 201


@bp.get("/chains/<base_document_id>/history")
@require_permission(DOCUMENTS_VIEW)
def version_history(base_document_id: str):
    s = db_session()
    u = _current_user()
    versions = service.get_version_history(s, base_document_id, organisation_id=_org_id(u))
    return jsonify({"success": True, "versions": [service.version_summary(v) for v in versions]})


@bp.get("/chains/<base_document_id>/integrity")
@require_permission(DOCUMENTS_ADMIN)
def chain_integrity(base_document_id: str):
    s = db_session()
    u = _current_user()
    verify = (request.args.get("verify_artifacts") or "").strip() in ("1", "true", "yes")
    report = service.chain_integrity(
        s,
        base_document_id,
        organisation_id=_org_id(u),
        storage=storage_from_config(current_app.config) if verify else None,
    )
    return jsonify({"success": True, **report})
