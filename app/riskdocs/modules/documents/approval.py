from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Session

from app.riskdocs.audit import record_event
from app.riskdocs.errors import ApprovalTransitionError, ValidationFailed
from app.riskdocs.models import Organisation, User
from app.riskdocs.modules.documents.models import (
    APPROVAL_APPROVED,
    APPROVAL_NOT_REQUIRED,
    APPROVAL_PENDING,
    APPROVAL_REJECTED,
    DocumentVersion,
)
from app.riskdocs.modules.documents.lifecycle import touch
from app.riskdocs.modules.documents.write_lock import assert_editable

# approved/rejected -> not_required is only reachable through clear_approval (admin).
APPROVAL_TRANSITIONS = {
    APPROVAL_NOT_REQUIRED: {APPROVAL_PENDING},
    APPROVAL_PENDING: {APPROVAL_APPROVED, APPROVAL_REJECTED},
    APPROVAL_APPROVED: set(),
    APPROVAL_REJECTED: set(),
}

APPROVAL_LABELS = {
    APPROVAL_NOT_REQUIRED: "Not Required",
    APPROVAL_PENDING: "Pending Approval",
    APPROVAL_APPROVED: "Approved",
    APPROVAL_REJECTED: "Rejected",
}


def approval_required(s: Session, organisation_id: int) -> bool:
    """Organisation-level switch: must drafts be approved before they can be issued?"""
    org = s.get(Organisation, organisation_id)
    return bool(org and org.approval_required)


def check_issue_clearance(approval_status: str, required: bool) -> str | None:
    """
    Return the blocking code for an approval status, or None when issue may proceed.

    Pending and rejected always block. When the organisation requires approval
    only an explicit approval clears the gate.
    """
    if approval_status == APPROVAL_PENDING:
        return "APPROVAL_PENDING"
    if approval_status == APPROVAL_REJECTED:
        return "APPROVAL_REJECTED"
    if required and approval_status != APPROVAL_APPROVED:
        return "APPROVAL_REQUIRED"
    return None


def clearance_message(code: str) -> str:
    return {
        "APPROVAL_PENDING": "This document is awaiting approval and cannot be issued yet.",
        "APPROVAL_REJECTED": "This document's approval was rejected. Address the feedback and request approval again.",
        "APPROVAL_REQUIRED": "This document requires approval before it can be issued. Please request approval first.",
    }.get(code, "Approval check failed")


def _move(s: Session, v: DocumentVersion, target: str) -> str:
    current = v.approval_status
    if target not in APPROVAL_TRANSITIONS.get(current, set()):
        raise ApprovalTransitionError(
            f"Cannot move approval from {APPROVAL_LABELS.get(current, current)} "
            f"to {APPROVAL_LABELS.get(target, target)}"
        )
    v.approval_status = target
    touch(v)
    return current


def request_approval(s: Session, version_id: int, *, actor: User, notes: str | None = None) -> DocumentVersion:
    v = assert_editable(s, version_id)
    previous = _move(s, v, APPROVAL_PENDING)
    v.approval_notes = (notes or "").strip() or None
    v.approved_by_user_id = None
    v.approval_date = None
    record_event(
        s,
        actor=actor,
        action="document.approval_requested",
        entity_type="DocumentVersion",
        entity_id=str(v.id),
        metadata={"from": previous, "to": v.approval_status, "base_document_id": v.base_document_id},
    )
    return v


def approve(s: Session, version_id: int, *, actor: User, notes: str | None = None) -> DocumentVersion:
    v = assert_editable(s, version_id)
    previous = _move(s, v, APPROVAL_APPROVED)
    v.approved_by_user_id = actor.id
    v.approval_date = datetime.utcnow()
    if notes and notes.strip():
        v.approval_notes = notes.strip()
    record_event(
        s,
        actor=actor,
        action="document.approved",
        entity_type="DocumentVersion",
        entity_id=str(v.id),
        metadata={"from": previous, "to": v.approval_status, "base_document_id": v.base_document_id},
    )
    return v


def reject(s: Session, version_id: int, *, actor: User, reason: str) -> DocumentVersion:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationFailed(["A rejection reason is required"], codes=["REASON_REQUIRED"], code="REASON_REQUIRED")
    v = assert_editable(s, version_id)
    previous = _move(s, v, APPROVAL_REJECTED)
    v.approved_by_user_id = actor.id
    v.approval_date = datetime.utcnow()
    v.approval_notes = reason
    record_event(
        s,
        actor=actor,
        action="document.approval_rejected",
        entity_type="DocumentVersion",
        entity_id=str(v.id),
        reason=reason,
        metadata={"from": previous, "to": v.approval_status, "base_document_id": v.base_document_id},
    )
    return v


def clear_approval(s: Session, version_id: int, *, actor: User, reason: str | None = None) -> DocumentVersion:
    """Reset an approved/rejected draft to not_required. Admin-only at the API layer."""
    v = assert_editable(s, version_id)
    if v.approval_status not in (APPROVAL_APPROVED, APPROVAL_REJECTED):
        raise ApprovalTransitionError(
            f"Only approved or rejected documents can be cleared (currently "
            f"{APPROVAL_LABELS.get(v.approval_status, v.approval_status)})"
        )
    previous = v.approval_status
    v.approval_status = APPROVAL_NOT_REQUIRED
    v.approved_by_user_id = None
    v.approval_date = None
    v.approval_notes = None
    touch(v)
    record_event(
        s,
        actor=actor,
        action="document.approval_cleared",
        entity_type="DocumentVersion",
        entity_id=str(v.id),
        reason=reason,
        metadata={"from": previous, "to": APPROVAL_NOT_REQUIRED, "base_document_id": v.base_document_id},
    )
    return v
