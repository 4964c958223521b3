"""
Post-issue side channels.

``document_issued`` fires after the issue transaction has committed. Each
receiver opens its own session, runs independently of the others, and a
failing receiver is logged and dropped: the issued version is already
durable and is never rolled back because of a side channel.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime

from blinker import Namespace
from flask import Flask
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.riskdocs.audit import record_event
from app.riskdocs.db import session_scope
from app.riskdocs.models import User
from app.riskdocs.modules.documents.models import (
    TERMINAL_ACTION_STATUSES,
    Action,
    ChangeSummary,
    DocumentVersion,
)

logger = logging.getLogger(__name__)

_signals = Namespace()
document_issued = _signals.signal("document-issued")

_REF_RE = re.compile(r"^R-(\d+)$")


@dataclass(frozen=True)
class DocumentIssuedEvent:
    version_id: int
    base_document_id: str
    version_number: int
    organisation_id: int
    superseded_version_id: int | None
    issued_by_user_id: int | None
    issued_at: datetime
    artifact_path: str
    artifact_sha256: str


def publish_document_issued(sender: Flask, event: DocumentIssuedEvent) -> list[str]:
    """
    Deliver the event to every receiver, isolating failures.
    Returns the names of receivers that failed (for logging/tests).
    """
    failed: list[str] = []
    for receiver in document_issued.receivers_for(sender):
        name = getattr(receiver, "__name__", repr(receiver))
        try:
            receiver(sender, event=event)
        except Exception:
            logger.exception(
                "document-issued receiver %s failed (version_id=%s base_document_id=%s)",
                name,
                event.version_id,
                event.base_document_id,
            )
            failed.append(name)
    return failed


def next_reference_number(s: Session, base_document_id: str) -> int:
    refs = s.scalars(
        select(Action.reference_number)
        .join(DocumentVersion, DocumentVersion.id == Action.version_id)
        .where(DocumentVersion.base_document_id == base_document_id, Action.reference_number.is_not(None))
    ).all()
    highest = 0
    for ref in refs:
        m = _REF_RE.match(ref or "")
        if m:
            highest = max(highest, int(m.group(1)))
    return highest + 1


def assign_reference_numbers(s: Session, version_id: int) -> list[str]:
    """Give every live action of an issued version without a reference the next R-NN in its chain."""
    v = s.get(DocumentVersion, version_id)
    if v is None:
        return []
    n = next_reference_number(s, v.base_document_id)
    assigned: list[str] = []
    for a in sorted(v.live_actions, key=lambda a: (a.created_at, a.id)):
        if a.reference_number:
            continue
        a.reference_number = f"R-{n:02d}"
        a.first_raised_in_version = v.version_number
        assigned.append(a.reference_number)
        n += 1
    return assigned


def build_change_summary(
    s: Session,
    version_id: int,
    previous_version_id: int | None,
    *,
    generated_by_user_id: int | None = None,
) -> ChangeSummary:
    v = s.get(DocumentVersion, version_id)
    if v is None:
        raise LookupError(f"Version {version_id} not found")

    actions = v.live_actions
    if previous_version_id is None:
        new = actions
        closed: list[Action] = []
    else:
        new = [a for a in actions if a.carried_from_version_id != previous_version_id]
        closed = [
            a
            for a in actions
            if a.carried_from_version_id == previous_version_id and a.status in TERMINAL_ACTION_STATUSES
        ]
    outstanding = [a for a in actions if a.status not in TERMINAL_ACTION_STATUSES]

    def _brief(a: Action) -> dict:
        return {
            "id": a.id,
            "reference_number": a.reference_number,
            "recommended_action": a.recommended_action,
            "priority_band": a.priority_band,
            "status": a.status,
        }

    def _line(a: Action) -> str:
        return f"- {a.reference_number or '-'} [{a.priority_band or '-'}] {a.recommended_action}"

    lines = [f"Changes in version {v.version_number}"]
    if previous_version_id is None:
        lines.append("Initial issue.")
    if new:
        lines.append(f"New actions: {len(new)}")
        lines.extend(_line(a) for a in new)
    if closed:
        lines.append(f"Closed actions: {len(closed)}")
        lines.extend(_line(a) for a in closed)
    if outstanding:
        lines.append(f"Outstanding actions: {len(outstanding)}")
    has_material = bool(new or closed)
    if not has_material:
        lines.append("No material changes since last issue.")

    summary = s.scalars(select(ChangeSummary).where(ChangeSummary.version_id == v.id)).one_or_none()
    if summary is None:
        summary = ChangeSummary(version_id=v.id, version_number=v.version_number)
        s.add(summary)
    summary.previous_version_id = previous_version_id
    summary.new_actions_count = len(new)
    summary.closed_actions_count = len(closed)
    summary.outstanding_actions_count = len(outstanding)
    summary.details_json = {
        "new_actions": [_brief(a) for a in new],
        "closed_actions": [_brief(a) for a in closed],
    }
    summary.summary_text = "\n".join(lines)
    summary.has_material_changes = has_material
    summary.generated_at = datetime.utcnow()
    summary.generated_by_user_id = generated_by_user_id
    return summary


def _on_issued_assign_references(sender: Flask, *, event: DocumentIssuedEvent) -> None:
    with session_scope(sender) as s:
        assigned = assign_reference_numbers(s, event.version_id)
    if assigned:
        logger.info("Assigned reference numbers %s to version %s", ", ".join(assigned), event.version_id)


def _on_issued_change_summary(sender: Flask, *, event: DocumentIssuedEvent) -> None:
    with session_scope(sender) as s:
        build_change_summary(
            s,
            event.version_id,
            event.superseded_version_id,
            generated_by_user_id=event.issued_by_user_id,
        )


def _on_issued_notify(sender: Flask, *, event: DocumentIssuedEvent) -> None:
    with session_scope(sender) as s:
        actor = s.get(User, event.issued_by_user_id) if event.issued_by_user_id else None
        record_event(
            s,
            actor=actor,
            action="document.issue_notification",
            entity_type="DocumentVersion",
            entity_id=str(event.version_id),
            metadata={
                "base_document_id": event.base_document_id,
                "version_number": event.version_number,
                "superseded_version_id": event.superseded_version_id,
                "organisation_id": event.organisation_id,
            },
        )


def connect_default_handlers(app: Flask) -> None:
    for receiver in (_on_issued_assign_references, _on_issued_change_summary, _on_issued_notify):
        document_issued.connect(receiver, sender=app)
