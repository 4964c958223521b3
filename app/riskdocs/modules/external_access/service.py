from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.riskdocs.audit import record_event
from app.riskdocs.errors import AccessDenied, ChainInvariantViolation, DocumentNotFound, ValidationFailed
from app.riskdocs.models import User
from app.riskdocs.modules.documents.models import ISSUED, DocumentVersion
from app.riskdocs.modules.external_access.models import AccessLink, AccessLogEntry

logger = logging.getLogger(__name__)

DENY_UNKNOWN = "unknown_token"
DENY_REVOKED = "revoked"
DENY_EXPIRED = "expired"
DENY_NO_ISSUED = "no_issued_version"


@dataclass(frozen=True)
class ResolvedDocument:
    link_id: int
    base_document_id: str
    version: DocumentVersion


def generate_token() -> str:
    return secrets.token_urlsafe(32)


def link_url(link: AccessLink, base_url: str) -> str:
    return f"{base_url.rstrip('/')}/client/documents/{link.token}"


def link_status(link: AccessLink, now: datetime | None = None) -> str:
    now = now or datetime.utcnow()
    if link.revoked:
        return "revoked"
    if link.expires_at is not None and link.expires_at <= now:
        return "expired"
    return "active"


def current_issued_version(s: Session, base_document_id: str) -> DocumentVersion | None:
    """The chain's issued version right now; more than one is a broken chain."""
    issued = list(
        s.scalars(
            select(DocumentVersion).where(
                DocumentVersion.base_document_id == base_document_id,
                DocumentVersion.issue_status == ISSUED,
                DocumentVersion.deleted_at.is_(None),
            )
        )
    )
    if len(issued) > 1:
        logger.error(
            "Chain %s has %d issued versions (%s)",
            base_document_id,
            len(issued),
            ", ".join(str(v.id) for v in issued),
        )
        raise ChainInvariantViolation("Document chain has more than one issued version")
    return issued[0] if issued else None


def create_access_link(
    s: Session,
    base_document_id: str,
    *,
    organisation_id: int,
    actor: User | None,
    expires_in_days: int | None = None,
    label: str | None = None,
    max_days: int = 365,
) -> AccessLink:
    owned = s.scalar(
        select(DocumentVersion.id)
        .where(
            DocumentVersion.base_document_id == base_document_id,
            DocumentVersion.organisation_id == organisation_id,
        )
        .limit(1)
    )
    if owned is None:
        raise DocumentNotFound("Document not found")
    if expires_in_days is not None:
        if isinstance(expires_in_days, bool) or not isinstance(expires_in_days, int) or not 1 <= expires_in_days <= max_days:
            raise ValidationFailed(
                [f"expires_in_days must be between 1 and {max_days}"],
                codes=["INVALID_EXPIRY"],
                code="INVALID_EXPIRY",
            )
    if current_issued_version(s, base_document_id) is None:
        raise ValidationFailed(
            ["No issued document found. Cannot create a link for draft documents."],
            codes=["NO_ISSUED_VERSION"],
            code="NO_ISSUED_VERSION",
        )

    now = datetime.utcnow()
    link = AccessLink(
        token=generate_token(),
        base_document_id=base_document_id,
        organisation_id=organisation_id,
        label=(label or "").strip() or None,
        expires_at=now + timedelta(days=expires_in_days) if expires_in_days else None,
        created_at=now,
        created_by_user_id=actor.id if actor else None,
    )
    s.add(link)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="access_link.create",
        entity_type="AccessLink",
        entity_id=str(link.id),
        metadata={"base_document_id": base_document_id, "expires_at": link.expires_at, "label": link.label},
    )
    return link


def list_access_links(s: Session, base_document_id: str, *, organisation_id: int) -> list[AccessLink]:
    return list(
        s.scalars(
            select(AccessLink)
            .where(AccessLink.base_document_id == base_document_id, AccessLink.organisation_id == organisation_id)
            .order_by(AccessLink.created_at.desc(), AccessLink.id.desc())
        )
    )


def _get_link(s: Session, link_id: int, organisation_id: int) -> AccessLink:
    link = s.get(AccessLink, link_id)
    if link is None or link.organisation_id != organisation_id:
        raise DocumentNotFound(f"Access link {link_id} not found")
    return link


def revoke_access_link(s: Session, link_id: int, *, organisation_id: int, actor: User | None) -> AccessLink:
    link = _get_link(s, link_id, organisation_id)
    if not link.revoked:
        link.revoked = True
        link.revoked_at = datetime.utcnow()
        link.revoked_by_user_id = actor.id if actor else None
        record_event(
            s,
            actor=actor,
            action="access_link.revoke",
            entity_type="AccessLink",
            entity_id=str(link.id),
            metadata={"base_document_id": link.base_document_id},
        )
    return link


def delete_access_link(s: Session, link_id: int, *, organisation_id: int, actor: User | None) -> None:
    link = _get_link(s, link_id, organisation_id)
    record_event(
        s,
        actor=actor,
        action="access_link.delete",
        entity_type="AccessLink",
        entity_id=str(link.id),
        metadata={"base_document_id": link.base_document_id, "access_count": link.access_count},
    )
    s.delete(link)


def _log(
    s: Session,
    *,
    link: AccessLink | None,
    version: DocumentVersion | None,
    granted: bool,
    reason: str | None,
    resource: str,
    client_ip: str | None,
    user_agent: str | None,
) -> None:
    s.add(
        AccessLogEntry(
            link_id=link.id if link else None,
            base_document_id=link.base_document_id if link else None,
            version_id=version.id if version else None,
            granted=granted,
            reason=reason,
            resource=resource,
            client_ip=client_ip,
            user_agent=(user_agent or "")[:1024] or None,
        )
    )


def resolve_external_token(
    s: Session,
    token: str,
    *,
    client_ip: str | None = None,
    user_agent: str | None = None,
    resource: str = "document",
    now: datetime | None = None,
) -> ResolvedDocument:
    """
    Resolve a client token to the chain's currently issued version.

    Nothing is cached: every call re-reads the chain, so a token keeps working
    across re-issues and always lands on the newest issued version. Every
    attempt is logged and committed, including denials.
    """
    now = now or datetime.utcnow()
    link = s.scalars(select(AccessLink).where(AccessLink.token == (token or ""))).one_or_none()

    def deny(reason: str, *, log_link: AccessLink | None) -> AccessDenied:
        _log(
            s,
            link=log_link,
            version=None,
            granted=False,
            reason=reason,
            resource=resource,
            client_ip=client_ip,
            user_agent=user_agent,
        )
        s.commit()
        logger.info("External access denied (%s) link_id=%s", reason, log_link.id if log_link else None)
        return AccessDenied(reason)

    if link is None:
        raise deny(DENY_UNKNOWN, log_link=None)
    if link.revoked:
        raise deny(DENY_REVOKED, log_link=link)
    if link.expires_at is not None and link.expires_at <= now:
        raise deny(DENY_EXPIRED, log_link=link)

    version = current_issued_version(s, link.base_document_id)
    if version is None:
        raise deny(DENY_NO_ISSUED, log_link=link)

    link.access_count = AccessLink.access_count + 1
    link.last_accessed_at = now
    _log(
        s,
        link=link,
        version=version,
        granted=True,
        reason=None,
        resource=resource,
        client_ip=client_ip,
        user_agent=user_agent,
    )
    s.commit()
    return ResolvedDocument(link_id=link.id, base_document_id=link.base_document_id, version=version)


def link_to_dict(link: AccessLink, *, base_url: str) -> dict:
    return {
        "id": link.id,
        "base_document_id": link.base_document_id,
        "token": link.token,
        "url": link_url(link, base_url),
        "label": link.label,
        "status": link_status(link),
        "expires_at": link.expires_at.isoformat() if link.expires_at else None,
        "revoked_at": link.revoked_at.isoformat() if link.revoked_at else None,
        "access_count": link.access_count,
        "last_accessed_at": link.last_accessed_at.isoformat() if link.last_accessed_at else None,
        "created_at": link.created_at.isoformat() if link.created_at else None,
    }
