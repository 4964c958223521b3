from __future__ import annotations

import logging
import uuid
from datetime import date, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session
from werkzeug.utils import secure_filename

from app.riskdocs.audit import record_event
from app.riskdocs.errors import DocumentNotFound, LockedError, ValidationFailed
from app.riskdocs.models import User
from app.riskdocs.modules.documents.lifecycle import check_chain, is_editable, lock_message, touch
from app.riskdocs.modules.documents.models import (
    ACTION_CLOSED,
    ACTION_OPEN,
    ACTION_STATUSES,
    CONTENT_FIELDS,
    DOCUMENT_TYPES,
    DRAFT,
    ISSUED,
    SUPERSEDED,
    TERMINAL_ACTION_STATUSES,
    Action,
    DocumentVersion,
    EvidenceFile,
    EvidenceLink,
    ModuleInstance,
)
from app.riskdocs.modules.documents.write_lock import assert_editable
from app.riskdocs.storage import Storage, StorageError, sha256_hex

logger = logging.getLogger(__name__)

# Module skeleton seeded into the first draft of each document type.
MODULE_SKELETONS: dict[str, tuple[str, ...]] = {
    "FRA": (
        "A1_DOC_CONTROL",
        "A2_BUILDING_PROFILE",
        "A3_PERSONS_AT_RISK",
        "A4_MANAGEMENT_CONTROLS",
        "A5_EMERGENCY_ARRANGEMENTS",
        "A7_REVIEW_ASSURANCE",
        "FRA_1_HAZARDS",
        "FRA_2_ESCAPE_ASIS",
        "FRA_3_PROTECTION_ASIS",
        "FRA_5_EXTERNAL_FIRE_SPREAD",
        "FRA_4_SIGNIFICANT_FINDINGS",
    ),
    "FSD": (
        "A1_DOC_CONTROL",
        "A2_BUILDING_PROFILE",
        "FSD_1_REG_BASIS",
        "FSD_2_EVAC_STRATEGY",
        "FSD_3_ESCAPE_DESIGN",
        "FSD_4_PASSIVE_PROTECTION",
        "FSD_5_ACTIVE_SYSTEMS",
        "FSD_6_FRS_ACCESS",
        "FSD_7_DRAWINGS",
        "FSD_8_SMOKE_CONTROL",
        "FSD_9_CONSTRUCTION_PHASE",
    ),
    "DSEAR": (
        "A1_DOC_CONTROL",
        "A2_BUILDING_PROFILE",
        "DSEAR_1_SUBSTANCES_REGISTER",
        "DSEAR_2_PROCESS_RELEASES",
        "DSEAR_3_HAC_ZONING",
        "DSEAR_4_IGNITION_CONTROL",
        "DSEAR_5_MITIGATION",
        "DSEAR_6_RISK_TABLE",
        "DSEAR_10_HIERARCHY_SUBSTITUTION",
        "DSEAR_11_EXPLOSION_EMERGENCY_RESPONSE",
    ),
}

SCOPE_TYPES = ("full", "limited", "desktop")
PRIORITY_BANDS = ("P1", "P2", "P3", "P4")


def parse_date(raw: object, *, field_name: str) -> date | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, date):
        return raw
    try:
        # ISO dates (YYYY-MM-DD), as sent by <input type="date"> and JSON clients.
        return date.fromisoformat(str(raw).strip())
    except ValueError as e:
        raise ValidationFailed([f"{field_name} must be a YYYY-MM-DD date"], codes=["INVALID_DATE"]) from e


def sanitize_upload_filename(filename: str) -> str:
    fn = secure_filename(filename or "")
    return fn or "evidence.bin"


def get_version(s: Session, version_id: int, *, organisation_id: int, include_deleted: bool = False) -> DocumentVersion:
    v = s.get(DocumentVersion, version_id)
    if v is None or v.organisation_id != organisation_id or (v.deleted_at is not None and not include_deleted):
        raise DocumentNotFound(f"Document version {version_id} not found")
    return v


def _editable(s: Session, version_id: int, organisation_id: int) -> DocumentVersion:
    get_version(s, version_id, organisation_id=organisation_id)
    return assert_editable(s, version_id)


# ---------------------------------------------------------------------------
# Creation and content edits
# ---------------------------------------------------------------------------


def _apply_content(v: DocumentVersion, changes: dict[str, Any]) -> dict[str, Any]:
    applied: dict[str, Any] = {}
    for name, raw in changes.items():
        if name not in CONTENT_FIELDS or name == "document_type":
            continue
        value: Any = raw
        if name == "assessment_date":
            value = parse_date(raw, field_name="assessment_date")
        elif name == "no_significant_findings":
            value = bool(raw)
        elif name == "scope_type":
            value = (str(raw).strip().lower() or None) if raw is not None else None
            if value is not None and value not in SCOPE_TYPES:
                raise ValidationFailed([f"scope_type must be one of {', '.join(SCOPE_TYPES)}"], codes=["INVALID_SCOPE"])
        elif name == "title":
            value = (str(raw or "")).strip()
            if not value:
                raise ValidationFailed(["title cannot be empty"], codes=["TITLE_REQUIRED"])
        elif isinstance(raw, str):
            value = raw.strip() or None
        if getattr(v, name) != value:
            setattr(v, name, value)
            applied[name] = value
    return applied


def create_document(
    s: Session,
    *,
    organisation_id: int,
    document_type: str,
    actor: User | None,
    title: str | None = None,
    jurisdiction: str = "UK",
    content: dict[str, Any] | None = None,
) -> DocumentVersion:
    """Create a new chain: version 1 as a draft, with the module skeleton for its type. Commits."""
    document_type = (document_type or "").strip().upper()
    if document_type not in DOCUMENT_TYPES:
        raise ValidationFailed(
            [f"document_type must be one of {', '.join(DOCUMENT_TYPES)}"],
            codes=["INVALID_DOCUMENT_TYPE"],
        )
    now = datetime.utcnow()
    v = DocumentVersion(
        base_document_id=str(uuid.uuid4()),
        version_number=1,
        organisation_id=organisation_id,
        issue_status=DRAFT,
        title=(title or "").strip() or f"New {document_type}",
        document_type=document_type,
        jurisdiction=(jurisdiction or "UK").strip() or "UK",
        assessment_date=date.today(),
        created_by_user_id=actor.id if actor else None,
        created_at=now,
        updated_at=now,
    )
    if content:
        _apply_content(v, content)
    s.add(v)
    s.flush()
    for key in MODULE_SKELETONS[document_type]:
        s.add(ModuleInstance(version_id=v.id, module_key=key, payload={}, updated_at=now))
    record_event(
        s,
        actor=actor,
        action="document.create",
        entity_type="DocumentVersion",
        entity_id=str(v.id),
        metadata={"base_document_id": v.base_document_id, "document_type": document_type, "title": v.title},
    )
    s.commit()
    s.refresh(v)
    return v


def update_content(
    s: Session,
    version_id: int,
    changes: dict[str, Any],
    *,
    organisation_id: int,
    actor: User | None,
) -> DocumentVersion:
    v = _editable(s, version_id, organisation_id)
    applied = _apply_content(v, changes)
    if applied:
        touch(v)
        record_event(
            s,
            actor=actor,
            action="document.update",
            entity_type="DocumentVersion",
            entity_id=str(v.id),
            metadata={"fields": sorted(applied)},
        )
    return v


def update_module(
    s: Session,
    version_id: int,
    module_key: str,
    *,
    organisation_id: int,
    actor: User | None,
    payload: dict[str, Any] | None = None,
    outcome: str | None = None,
    assessor_notes: str | None = None,
    completed: bool | None = None,
) -> ModuleInstance:
    v = _editable(s, version_id, organisation_id)
    m = next((m for m in v.modules if m.module_key == module_key), None)
    if m is None:
        m = ModuleInstance(version_id=v.id, module_key=module_key, payload={})
        s.add(m)
        v.modules.append(m)
    if payload is not None:
        if not isinstance(payload, dict):
            raise ValidationFailed(["payload must be an object"], codes=["INVALID_PAYLOAD"])
        # Reassign: JSON columns only track replacement.
        m.payload = dict(payload)
    if outcome is not None:
        m.outcome = outcome.strip() or None
    if assessor_notes is not None:
        m.assessor_notes = assessor_notes
    if completed is not None:
        m.completed = bool(completed)
    m.updated_at = datetime.utcnow()
    touch(v)
    record_event(
        s,
        actor=actor,
        action="document.module_update",
        entity_type="DocumentVersion",
        entity_id=str(v.id),
        metadata={"module_key": module_key},
    )
    return m


# ---------------------------------------------------------------------------
# Work items
# ---------------------------------------------------------------------------


def _validate_action_fields(fields: dict[str, Any]) -> None:
    status = fields.get("status")
    if status is not None and status not in ACTION_STATUSES:
        raise ValidationFailed([f"status must be one of {', '.join(ACTION_STATUSES)}"], codes=["INVALID_STATUS"])
    band = fields.get("priority_band")
    if band is not None and band not in PRIORITY_BANDS:
        raise ValidationFailed(
            [f"priority_band must be one of {', '.join(PRIORITY_BANDS)}"],
            codes=["INVALID_PRIORITY"],
        )


def add_action(
    s: Session,
    version_id: int,
    *,
    organisation_id: int,
    actor: User | None,
    recommended_action: str,
    module_key: str | None = None,
    priority_band: str | None = None,
    timescale: str | None = None,
    target_date: object = None,
    status: str = ACTION_OPEN,
    owner_user_id: int | None = None,
) -> Action:
    text = (recommended_action or "").strip()
    if not text:
        raise ValidationFailed(["recommended_action is required"], codes=["ACTION_TEXT_REQUIRED"])
    _validate_action_fields({"status": status, "priority_band": priority_band})
    v = _editable(s, version_id, organisation_id)
    now = datetime.utcnow()
    a = Action(
        version_id=v.id,
        module_key=module_key,
        recommended_action=text,
        status=status,
        priority_band=priority_band,
        timescale=(timescale or "").strip() or None,
        target_date=parse_date(target_date, field_name="target_date"),
        owner_user_id=owner_user_id,
        created_at=now,
        updated_at=now,
    )
    if status in TERMINAL_ACTION_STATUSES:
        a.closed_at = now
        a.closed_by_user_id = actor.id if actor else None
    s.add(a)
    touch(v)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="action.create",
        entity_type="Action",
        entity_id=str(a.id),
        metadata={"version_id": v.id, "status": status, "priority_band": priority_band},
    )
    return a


def update_action(
    s: Session,
    action_id: int,
    changes: dict[str, Any],
    *,
    organisation_id: int,
    actor: User | None,
    can_reopen: bool = False,
) -> Action:
    a = s.get(Action, action_id)
    if a is None or a.deleted_at is not None:
        raise DocumentNotFound(f"Action {action_id} not found")
    v = _editable(s, a.version_id, organisation_id)
    _validate_action_fields(changes)

    new_status = changes.get("status")
    if new_status and a.status == ACTION_CLOSED and new_status != ACTION_CLOSED and not can_reopen:
        raise ValidationFailed(
            ["Closed actions cannot be reopened. Contact an administrator if this action needs to be reopened."],
            codes=["REOPEN_NOT_ALLOWED"],
            code="REOPEN_NOT_ALLOWED",
        )

    now = datetime.utcnow()
    before = a.status
    for name in ("recommended_action", "priority_band", "timescale", "module_key", "owner_user_id", "closure_note"):
        if name in changes:
            value = changes[name]
            setattr(a, name, value.strip() if isinstance(value, str) else value)
    if "target_date" in changes:
        a.target_date = parse_date(changes["target_date"], field_name="target_date")
    if new_status and new_status != before:
        a.status = new_status
        if new_status in TERMINAL_ACTION_STATUSES:
            a.closed_at = now
            a.closed_by_user_id = actor.id if actor else None
        else:
            a.closed_at = None
            a.closed_by_user_id = None
    if not (a.recommended_action or "").strip():
        raise ValidationFailed(["recommended_action is required"], codes=["ACTION_TEXT_REQUIRED"])
    a.updated_at = now
    touch(v)
    record_event(
        s,
        actor=actor,
        action="action.update",
        entity_type="Action",
        entity_id=str(a.id),
        metadata={"version_id": v.id, "fields": sorted(changes), "status_from": before, "status_to": a.status},
    )
    return a


# ---------------------------------------------------------------------------
# Evidence
# ---------------------------------------------------------------------------


def add_evidence(
    s: Session,
    version_id: int,
    *,
    organisation_id: int,
    actor: User | None,
    storage: Storage,
    filename: str,
    data: bytes,
    content_type: str | None = None,
    caption: str | None = None,
    module_key: str | None = None,
    action_id: int | None = None,
) -> EvidenceLink:
    """Store the bytes once for the chain and link them to this draft."""
    if not data:
        raise ValidationFailed(["Evidence file is empty"], codes=["EMPTY_FILE"])
    v = _editable(s, version_id, organisation_id)
    if action_id is not None:
        linked_action = s.get(Action, action_id)
        if linked_action is None or linked_action.version_id != v.id:
            raise ValidationFailed(["action_id does not belong to this version"], codes=["INVALID_ACTION"])

    safe_name = sanitize_upload_filename(filename)
    key = f"evidence/{v.base_document_id}/{uuid.uuid4().hex}-{safe_name}"
    try:
        blob = storage.put(key, data, content_type=content_type)
    except StorageError:
        logger.exception("Evidence upload failed (version_id=%s key=%s)", v.id, key)
        raise

    now = datetime.utcnow()
    f = EvidenceFile(
        base_document_id=v.base_document_id,
        organisation_id=v.organisation_id,
        storage_key=blob.path,
        filename=safe_name,
        content_type=content_type or "application/octet-stream",
        sha256=blob.sha256,
        size_bytes=blob.size_bytes,
        uploaded_at=now,
        uploaded_by_user_id=actor.id if actor else None,
    )
    s.add(f)
    s.flush()
    link = EvidenceLink(
        version_id=v.id,
        evidence_id=f.id,
        action_id=action_id,
        module_key=module_key,
        caption=(caption or "").strip() or None,
        created_at=now,
    )
    s.add(link)
    touch(v)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="evidence.upload",
        entity_type="EvidenceFile",
        entity_id=str(f.id),
        metadata={"version_id": v.id, "filename": safe_name, "sha256": blob.sha256, "size_bytes": blob.size_bytes},
    )
    return link


def _get_link(s: Session, link_id: int) -> EvidenceLink:
    link = s.get(EvidenceLink, link_id)
    if link is None or link.deleted_at is not None:
        raise DocumentNotFound(f"Evidence {link_id} not found")
    return link


def update_evidence_caption(
    s: Session,
    link_id: int,
    caption: str | None,
    *,
    organisation_id: int,
    actor: User | None,
) -> EvidenceLink:
    link = _get_link(s, link_id)
    v = _editable(s, link.version_id, organisation_id)
    link.caption = (caption or "").strip() or None
    touch(v)
    record_event(
        s,
        actor=actor,
        action="evidence.caption_update",
        entity_type="EvidenceLink",
        entity_id=str(link.id),
        metadata={"version_id": v.id},
    )
    return link


def delete_evidence_link(s: Session, link_id: int, *, organisation_id: int, actor: User | None) -> EvidenceLink:
    """Unlink evidence from a draft. The file stays, since other versions may reference it."""
    link = _get_link(s, link_id)
    v = _editable(s, link.version_id, organisation_id)
    link.deleted_at = datetime.utcnow()
    touch(v)
    record_event(
        s,
        actor=actor,
        action="evidence.unlink",
        entity_type="EvidenceLink",
        entity_id=str(link.id),
        metadata={"version_id": v.id, "evidence_id": link.evidence_id},
    )
    return link


# ---------------------------------------------------------------------------
# Soft delete, history, integrity
# ---------------------------------------------------------------------------


def soft_delete_draft(
    s: Session,
    version_id: int,
    *,
    organisation_id: int,
    actor: User | None,
    reason: str | None = None,
) -> DocumentVersion:
    """Hide a draft. Issued and superseded versions are permanent records."""
    v = get_version(s, version_id, organisation_id=organisation_id)
    if not is_editable(v):
        raise LockedError(
            lock_message(v) or "Only draft documents can be deleted",
            version_id=v.id,
            issue_status=v.issue_status,
        )
    v = assert_editable(s, version_id)
    v.deleted_at = datetime.utcnow()
    v.deleted_by_user_id = actor.id if actor else None
    touch(v)
    record_event(
        s,
        actor=actor,
        action="document.delete",
        entity_type="DocumentVersion",
        entity_id=str(v.id),
        reason=reason,
        metadata={"base_document_id": v.base_document_id, "version_number": v.version_number},
    )
    return v


def get_version_history(s: Session, base_document_id: str, *, organisation_id: int) -> list[DocumentVersion]:
    """Live versions of a chain, oldest first."""
    versions = list(
        s.scalars(
            select(DocumentVersion)
            .where(
                DocumentVersion.base_document_id == base_document_id,
                DocumentVersion.organisation_id == organisation_id,
                DocumentVersion.deleted_at.is_(None),
            )
            .order_by(DocumentVersion.version_number.asc())
        )
    )
    if not versions:
        raise DocumentNotFound("Document not found")
    return versions


def chain_integrity(
    s: Session,
    base_document_id: str,
    *,
    organisation_id: int,
    storage: Storage | None = None,
) -> dict[str, Any]:
    versions = list(
        s.scalars(
            select(DocumentVersion)
            .where(
                DocumentVersion.base_document_id == base_document_id,
                DocumentVersion.organisation_id == organisation_id,
            )
            .order_by(DocumentVersion.version_number.asc())
        )
    )
    if not versions:
        raise DocumentNotFound("Document not found")

    problems = check_chain(versions)
    numbers = [v.version_number for v in versions]
    if numbers != list(range(1, len(numbers) + 1)):
        problems.append(f"Version numbers are not contiguous: {numbers}")
    if storage is not None:
        for v in versions:
            if v.locked_pdf_path and v.issue_status in (ISSUED, SUPERSEDED):
                problem = verify_artifact(storage, v)
                if problem:
                    problems.append(problem)

    live = [v for v in versions if v.deleted_at is None]
    if problems:
        logger.error("Chain %s failed integrity check: %s", base_document_id, "; ".join(problems))
    return {
        "base_document_id": base_document_id,
        "valid": not problems,
        "problems": problems,
        "total_versions": len(live),
        "draft_count": sum(1 for v in live if v.issue_status == DRAFT),
        "issued_count": sum(1 for v in live if v.issue_status == ISSUED),
        "superseded_count": sum(1 for v in live if v.issue_status == SUPERSEDED),
        "latest_version": max((v.version_number for v in live), default=0),
    }


def verify_artifact(storage: Storage, v: DocumentVersion) -> str | None:
    """Re-hash the stored artifact; returns a problem description or None."""
    try:
        data = storage.get_bytes(v.locked_pdf_path or "")
    except StorageError:
        return f"v{v.version_number}: locked artifact missing from storage"
    if sha256_hex(data) != v.locked_pdf_sha256:
        return f"v{v.version_number}: locked artifact hash mismatch"
    return None


def read_locked_artifact(storage: Storage, v: DocumentVersion) -> bytes:
    if v.issue_status not in (ISSUED, SUPERSEDED) or not v.locked_pdf_path:
        raise DocumentNotFound("This version has no locked artifact")
    data = storage.get_bytes(v.locked_pdf_path)
    if sha256_hex(data) != v.locked_pdf_sha256:
        logger.error("Locked artifact hash mismatch for version %s (%s)", v.id, v.locked_pdf_path)
        raise StorageError(f"Locked artifact for version {v.id} failed its integrity check")
    return data


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------


def _iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def action_to_dict(a: Action) -> dict[str, Any]:
    return {
        "id": a.id,
        "version_id": a.version_id,
        "module_key": a.module_key,
        "recommended_action": a.recommended_action,
        "status": a.status,
        "priority_band": a.priority_band,
        "timescale": a.timescale,
        "target_date": _iso(a.target_date),
        "owner_user_id": a.owner_user_id,
        "reference_number": a.reference_number,
        "first_raised_in_version": a.first_raised_in_version,
        "origin_action_id": a.origin_action_id,
        "carried_from_version_id": a.carried_from_version_id,
        "closed_at": _iso(a.closed_at),
        "closure_note": a.closure_note,
    }


def evidence_to_dict(link: EvidenceLink) -> dict[str, Any]:
    return {
        "id": link.id,
        "version_id": link.version_id,
        "evidence_id": link.evidence_id,
        "filename": link.evidence.filename,
        "content_type": link.evidence.content_type,
        "sha256": link.evidence.sha256,
        "size_bytes": link.evidence.size_bytes,
        "caption": link.caption,
        "module_key": link.module_key,
        "action_id": link.action_id,
    }


def version_summary(v: DocumentVersion) -> dict[str, Any]:
    return {
        "id": v.id,
        "base_document_id": v.base_document_id,
        "version_number": v.version_number,
        "title": v.title,
        "document_type": v.document_type,
        "issue_status": v.issue_status,
        "issue_date": _iso(v.issue_date),
        "issued_by_user_id": v.issued_by_user_id,
        "superseded_by_document_id": v.superseded_by_document_id,
        "superseded_date": _iso(v.superseded_date),
        "approval_status": v.approval_status,
        "has_locked_artifact": bool(v.locked_pdf_path),
        "created_at": _iso(v.created_at),
    }


def version_to_dict(v: DocumentVersion) -> dict[str, Any]:
    d = version_summary(v)
    d.update({name: getattr(v, name) for name in CONTENT_FIELDS})
    d["assessment_date"] = _iso(v.assessment_date)
    d.update(
        {
            "organisation_id": v.organisation_id,
            "editable": is_editable(v),
            "lock_message": lock_message(v) or None,
            "approved_by_user_id": v.approved_by_user_id,
            "approval_date": _iso(v.approval_date),
            "approval_notes": v.approval_notes,
            "locked_pdf_path": v.locked_pdf_path,
            "locked_pdf_sha256": v.locked_pdf_sha256,
            "locked_pdf_size_bytes": v.locked_pdf_size_bytes,
            "locked_pdf_generated_at": _iso(v.locked_pdf_generated_at),
            "artifact_generation_error": v.artifact_generation_error,
            "modules": [
                {
                    "module_key": m.module_key,
                    "payload": m.payload or {},
                    "outcome": m.outcome,
                    "assessor_notes": m.assessor_notes,
                    "completed": m.completed,
                }
                for m in v.modules
            ],
            "actions": [action_to_dict(a) for a in v.live_actions],
            "evidence": [evidence_to_dict(e) for e in v.live_evidence],
        }
    )
    return d
