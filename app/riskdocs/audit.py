import json
from typing import Any

from flask import g, has_app_context, has_request_context, request
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.riskdocs.models import AuditEvent, User


def record_event(
    s: Session,
    *,
    actor: User | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditEvent:
    """
    Append-only audit event helper.

    Usable outside a request (scripts, post-issue handlers); request id and
    client ip are only filled in when a request is active.
    """
    if request_id is None and has_app_context():
        request_id = getattr(g, "request_id", None)
    ev = AuditEvent(
        request_id=request_id,
        actor_user_id=actor.id if actor else None,
        actor_user_email=actor.email if actor else None,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
        # default=str: datetimes and dates show up in issue/link metadata.
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
        client_ip=request.remote_addr if has_request_context() else None,
    )
    s.add(ev)
    return ev


def events_for(s: Session, entity_type: str, entity_id: str | int) -> list[AuditEvent]:
    """Trail of one entity, oldest first."""
    return list(
        s.scalars(
            select(AuditEvent)
            .where(AuditEvent.entity_type == entity_type, AuditEvent.entity_id == str(entity_id))
            .order_by(AuditEvent.created_at.asc(), AuditEvent.id.asc())
        )
    )


def event_to_dict(ev: AuditEvent) -> dict[str, Any]:
    return {
        "id": ev.id,
        "created_at": ev.created_at.isoformat() if ev.created_at else None,
        "action": ev.action,
        "actor_user_id": ev.actor_user_id,
        "actor_user_email": ev.actor_user_email,
        "reason": ev.reason,
        "metadata": json.loads(ev.metadata_json) if ev.metadata_json else None,
    }
