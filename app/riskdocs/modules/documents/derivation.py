from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.riskdocs.audit import record_event
from app.riskdocs.errors import ChainInvariantViolation, ConflictError, DerivationNotAllowed, DocumentNotFound
from app.riskdocs.models import User
from app.riskdocs.modules.documents.lifecycle import can_derive_from, chain_lock
from app.riskdocs.modules.documents.models import (
    APPROVAL_NOT_REQUIRED,
    CARRY_FORWARD_ACTION_STATUSES,
    CONTENT_FIELDS,
    DRAFT,
    Action,
    DocumentVersion,
    EvidenceLink,
    ModuleInstance,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DerivedVersion:
    new_version_id: int
    new_version_number: int
    source_version_id: int
    carried_actions: int
    carried_evidence: int

    def to_dict(self) -> dict:
        return {
            "success": True,
            "new_document_id": self.new_version_id,
            "new_version_number": self.new_version_number,
            "source_document_id": self.source_version_id,
            "carried_actions": self.carried_actions,
            "carried_evidence": self.carried_evidence,
        }


def next_version_number(s: Session, base_document_id: str) -> int:
    # Soft-deleted drafts count: version numbers are never reused.
    highest = s.scalar(
        select(func.max(DocumentVersion.version_number)).where(DocumentVersion.base_document_id == base_document_id)
    )
    return int(highest or 0) + 1


def derive_new_version(
    s: Session,
    base_document_id: str,
    *,
    actor: User | None,
    organisation_id: int,
    carry_forward_evidence: bool = True,
) -> DerivedVersion:
    """
    Start a new draft from the chain's issued version.

    Copies content and module payloads, carries forward unresolved work items
    (open / in progress / deferred) with their lineage, and links the evidence
    of the issued version by reference. The issued version itself is not modified.
    Commits on success.
    """
    versions = chain_lock(s, base_document_id)
    live = [v for v in versions if v.deleted_at is None]
    if not live or live[0].organisation_id != organisation_id:
        raise DocumentNotFound("Document not found")

    drafts = [v.version_number for v in live if v.issue_status == DRAFT]
    if drafts:
        logger.error(
            "Refusing to derive on chain %s: draft v%s already exists (requested by user %s)",
            base_document_id,
            drafts[0],
            actor.id if actor else None,
        )
        raise ChainInvariantViolation("A draft version already exists for this document", code="DRAFT_EXISTS")

    head = live[-1]
    if not can_derive_from(head):
        raise DerivationNotAllowed(
            f"New versions can only be created from the issued version (latest is {head.issue_status})"
        )
    source = head
    now = datetime.utcnow()

    new = DocumentVersion(
        base_document_id=base_document_id,
        version_number=next_version_number(s, base_document_id),
        organisation_id=organisation_id,
        issue_status=DRAFT,
        approval_status=APPROVAL_NOT_REQUIRED,
        created_by_user_id=actor.id if actor else None,
        created_at=now,
        updated_at=now,
        **{name: getattr(source, name) for name in CONTENT_FIELDS},
    )
    s.add(new)
    try:
        s.flush()
    except IntegrityError as e:
        s.rollback()
        raise ConflictError("Another version of this document was created concurrently; reload and retry") from e

    for m in source.modules:
        s.add(
            ModuleInstance(
                version_id=new.id,
                module_key=m.module_key,
                payload=dict(m.payload or {}),
                outcome=m.outcome,
                assessor_notes=m.assessor_notes,
                completed=m.completed,
                updated_at=now,
            )
        )

    carried: dict[int, Action] = {}
    for a in source.live_actions:
        if a.status not in CARRY_FORWARD_ACTION_STATUSES:
            continue
        copy = Action(
            version_id=new.id,
            module_key=a.module_key,
            recommended_action=a.recommended_action,
            status=a.status,
            priority_band=a.priority_band,
            timescale=a.timescale,
            target_date=a.target_date,
            owner_user_id=a.owner_user_id,
            reference_number=a.reference_number,
            first_raised_in_version=a.first_raised_in_version,
            origin_action_id=a.origin_action_id or a.id,
            carried_from_version_id=source.id,
            created_at=now,
            updated_at=now,
        )
        s.add(copy)
        carried[a.id] = copy
    s.flush()

    linked = 0
    if carry_forward_evidence:
        for link in source.live_evidence:
            target_action = carried.get(link.action_id) if link.action_id else None
            s.add(
                EvidenceLink(
                    version_id=new.id,
                    evidence_id=link.evidence_id,
                    action_id=target_action.id if target_action is not None else None,
                    module_key=link.module_key,
                    caption=link.caption,
                    created_at=now,
                )
            )
            linked += 1

    record_event(
        s,
        actor=actor,
        action="document.new_version",
        entity_type="DocumentVersion",
        entity_id=str(new.id),
        metadata={
            "base_document_id": base_document_id,
            "version_number": new.version_number,
            "source_document_id": source.id,
            "carried_actions": len(carried),
            "carried_evidence": linked,
        },
    )
    try:
        s.commit()
    except IntegrityError as e:
        s.rollback()
        raise ConflictError("Another version of this document was created concurrently; reload and retry") from e

    logger.info(
        "Derived v%s (id=%s) of %s from issued v%s: %d action(s), %d evidence link(s) carried",
        new.version_number,
        new.id,
        base_document_id,
        source.version_number,
        len(carried),
        linked,
    )
    return DerivedVersion(
        new_version_id=new.id,
        new_version_number=new.version_number,
        source_version_id=source.id,
        carried_actions=len(carried),
        carried_evidence=linked,
    )
