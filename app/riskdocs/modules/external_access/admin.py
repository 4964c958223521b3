from __future__ import annotations

import io

from flask import Blueprint, abort, current_app, g, jsonify, request, send_file

from app.riskdocs.db import db_session
from app.riskdocs.models import User
from app.riskdocs.modules.documents.service import read_locked_artifact
from app.riskdocs.modules.external_access import service
from app.riskdocs.rbac import ACCESS_LINKS_MANAGE, require_permission
from app.riskdocs.storage import storage_from_config

bp = Blueprint("access_links", __name__)
client_bp = Blueprint("client", __name__)


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


def _base_url() -> str:
    return current_app.config.get("PUBLIC_BASE_URL") or request.host_url.rstrip("/")


@bp.post("/chains/<base_document_id>")
@require_permission(ACCESS_LINKS_MANAGE)
def create_link(base_document_id: str):
    s = db_session()
    u = _current_user()
    data = request.get_json(silent=True) or request.form.to_dict()
    raw_days = data.get("expires_in_days")
    if raw_days in (None, ""):
        expires_in_days = None
    else:
        try:
            expires_in_days = int(raw_days)
        except (TypeError, ValueError):
            return jsonify({"success": False, "error": "expires_in_days must be a whole number.", "code": "INVALID_EXPIRY"}), 400
    link = service.create_access_link(
        s,
        base_document_id,
        organisation_id=_org_id(u),
        actor=u,
        expires_in_days=expires_in_days,
        label=data.get("label"),
        max_days=int(current_app.config.get("ACCESS_LINK_MAX_DAYS") or 365),
    )
    s.commit()
    return jsonify({"success": True, "link": service.link_to_dict(link, base_url=_base_url())}), 201


@bp.get("/chains/<base_document_id>")
@require_permission(ACCESS_LINKS_MANAGE)
def list_links(base_document_id: str):
    s = db_session()
    u = _current_user()
    links = service.list_access_links(s, base_document_id, organisation_id=_org_id(u))
    return jsonify({"success": True, "links": [service.link_to_dict(link, base_url=_base_url()) for link in links]})


@bp.post("/<int:link_id>/revoke")
@require_permission(ACCESS_LINKS_MANAGE)
def revoke_link(link_id: int):
    s = db_session()
    u = _current_user()
    link = service.revoke_access_link(s, link_id, organisation_id=_org_id(u), actor=u)
    s.commit()
    return jsonify({"success": True, "link": service.link_to_dict(link, base_url=_base_url())})


@bp.delete("/<int:link_id>")
@require_permission(ACCESS_LINKS_MANAGE)
def delete_link(link_id: int):
    s = db_session()
    u = _current_user()
    service.delete_access_link(s, link_id, organisation_id=_org_id(u), actor=u)
    s.commit()
    return jsonify({"success": True})


# ---------------------------------------------------------------------------
# Client portal (no session; the token is the credential)
# ---------------------------------------------------------------------------


def _resolve(token: str, resource: str) -> service.ResolvedDocument:
    return service.resolve_external_token(
        db_session(),
        token,
        client_ip=request.remote_addr,
        user_agent=request.headers.get("User-Agent"),
        resource=resource,
    )


@client_bp.get("/documents/<token>")
def client_document(token: str):
    resolved = _resolve(token, "document")
    v = resolved.version
    return jsonify(
        {
            "success": True,
            "document": {
                "id": v.id,
                "base_document_id": v.base_document_id,
                "title": v.title,
                "document_type": v.document_type,
                "version_number": v.version_number,
                "issue_status": v.issue_status,
                "issue_date": v.issue_date.isoformat() if v.issue_date else None,
                "site_name": v.site_name,
                "locked_pdf_sha256": v.locked_pdf_sha256,
            },
        }
    )


@client_bp.get("/documents/<token>/artifact")
def client_artifact(token: str):
    resolved = _resolve(token, "artifact")
    v = resolved.version
    data = read_locked_artifact(storage_from_config(current_app.config), v)
    extension = (v.locked_pdf_path or "").rsplit(".", 1)[-1] or "bin"
    return send_file(
        io.BytesIO(data),
        mimetype="application/pdf" if extension == "pdf" else "application/json",
        as_attachment=True,
        download_name=f"{v.document_type}-v{v.version_number}.{extension}",
        max_age=0,
    )
