"""
Issue lifecycle of a single document version.

A version is always in exactly one of three states. Rows are lifted into an
immutable state value with ``state_of``; ``issue`` and ``supersede`` are the
only ways to produce the next state, and ``write_transition`` persists a
transition with a compare-and-swap UPDATE so a concurrent writer loses cleanly.

    draft --issue--> issued --supersede--> superseded (terminal)
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, ClassVar, Union

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.riskdocs.db import supports_row_locks
from app.riskdocs.errors import ChainInvariantViolation, ConflictError, IllegalTransition
from app.riskdocs.modules.documents.models import DRAFT, ISSUED, SUPERSEDED, DocumentVersion

logger = logging.getLogger(__name__)

STATUS_TRANSITIONS = {
    DRAFT: {ISSUED},
    ISSUED: {SUPERSEDED},
    SUPERSEDED: set(),
}


@dataclass(frozen=True)
class Draft:
    status: ClassVar[str] = DRAFT

    version_id: int
    base_document_id: str
    version_number: int
    lock_version: int


@dataclass(frozen=True)
class Issued:
    status: ClassVar[str] = ISSUED

    version_id: int
    base_document_id: str
    version_number: int
    lock_version: int
    issue_date: datetime
    issued_by_user_id: int | None


@dataclass(frozen=True)
class Superseded:
    status: ClassVar[str] = SUPERSEDED

    version_id: int
    base_document_id: str
    version_number: int
    lock_version: int
    issue_date: datetime | None
    superseded_by_document_id: int
    superseded_date: datetime


VersionState = Union[Draft, Issued, Superseded]


def state_of(v: DocumentVersion) -> VersionState:
    common = {
        "version_id": v.id,
        "base_document_id": v.base_document_id,
        "version_number": v.version_number,
        "lock_version": v.lock_version,
    }
    if v.issue_status == DRAFT:
        return Draft(**common)
    if v.issue_status == ISSUED:
        if v.issue_date is None:
            raise ChainInvariantViolation(f"Issued version {v.id} has no issue date")
        return Issued(issue_date=v.issue_date, issued_by_user_id=v.issued_by_user_id, **common)
    if v.issue_status == SUPERSEDED:
        if v.superseded_by_document_id is None or v.superseded_date is None:
            raise ChainInvariantViolation(f"Superseded version {v.id} has no successor pointer")
        return Superseded(
            issue_date=v.issue_date,
            superseded_by_document_id=v.superseded_by_document_id,
            superseded_date=v.superseded_date,
            **common,
        )
    raise ChainInvariantViolation(f"Version {v.id} has unknown issue_status {v.issue_status!r}")


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in STATUS_TRANSITIONS.get(from_status, set())


def issue(state: VersionState, *, issued_at: datetime, issued_by_user_id: int | None) -> Issued:
    if not isinstance(state, Draft):
        raise IllegalTransition(f"Cannot issue a version that is {state.status}")
    return Issued(
        version_id=state.version_id,
        base_document_id=state.base_document_id,
        version_number=state.version_number,
        lock_version=state.lock_version + 1,
        issue_date=issued_at,
        issued_by_user_id=issued_by_user_id,
    )


def supersede(state: VersionState, *, successor_id: int, superseded_at: datetime) -> Superseded:
    if not isinstance(state, Issued):
        raise IllegalTransition(f"Cannot supersede a version that is {state.status}")
    if successor_id == state.version_id:
        raise IllegalTransition("A version cannot supersede itself")
    return Superseded(
        version_id=state.version_id,
        base_document_id=state.base_document_id,
        version_number=state.version_number,
        lock_version=state.lock_version + 1,
        issue_date=state.issue_date,
        superseded_by_document_id=successor_id,
        superseded_date=superseded_at,
    )


def _columns_for(state: VersionState) -> dict[str, Any]:
    values: dict[str, Any] = {"issue_status": state.status, "lock_version": state.lock_version}
    if isinstance(state, Issued):
        values.update(issue_date=state.issue_date, issued_by_user_id=state.issued_by_user_id)
    elif isinstance(state, Superseded):
        values.update(
            superseded_by_document_id=state.superseded_by_document_id,
            superseded_date=state.superseded_date,
        )
    return values


def write_transition(
    s: Session,
    prior: VersionState,
    new: VersionState,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """
    Persist ``prior -> new`` with a compare-and-swap UPDATE.

    The row must still hold the prior status and lock_version, otherwise
    another writer got there first and ConflictError is raised. Unique-index
    violations (a second draft/issued row in the chain) map to ConflictError too.
    """
    if prior.version_id != new.version_id or not can_transition(prior.status, new.status):
        raise IllegalTransition(f"Illegal transition {prior.status} -> {new.status}")

    values = _columns_for(new)
    if extra:
        values.update(extra)
    stmt = (
        update(DocumentVersion)
        .where(
            DocumentVersion.id == prior.version_id,
            DocumentVersion.issue_status == prior.status,
            DocumentVersion.lock_version == prior.lock_version,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    try:
        result = s.execute(stmt)
    except IntegrityError as e:
        logger.warning(
            "Transition %s -> %s on version %s rejected by storage constraint: %s",
            prior.status,
            new.status,
            prior.version_id,
            e.orig,
        )
        raise ConflictError("Another lifecycle change for this document won the race; reload and retry") from e
    if result.rowcount != 1:
        raise ConflictError(
            f"Version {prior.version_id} changed since it was read (expected {prior.status} "
            f"at lock_version {prior.lock_version}); reload and retry"
        )


def chain_lock(s: Session, base_document_id: str) -> list[DocumentVersion]:
    """
    Load every version of a chain, ordered by version number, locking the rows
    where the database supports it. Call inside the transaction that mutates the chain.
    """
    # Pending edits go out first; populate_existing would otherwise overwrite them.
    s.flush()
    q = select(DocumentVersion).where(DocumentVersion.base_document_id == base_document_id)
    if supports_row_locks(s):
        q = q.with_for_update()
    q = q.order_by(DocumentVersion.version_number.asc()).execution_options(populate_existing=True)
    return list(s.scalars(q))


def check_chain(versions: list[DocumentVersion]) -> list[str]:
    """Return invariant problems found in a chain (empty when healthy)."""
    problems: list[str] = []
    live = [v for v in versions if v.deleted_at is None]
    issued = [v for v in live if v.issue_status == ISSUED]
    drafts = [v for v in live if v.issue_status == DRAFT]
    if len(issued) > 1:
        problems.append(f"Multiple issued versions: {sorted(v.version_number for v in issued)}")
    if len(drafts) > 1:
        problems.append(f"Multiple drafts: {sorted(v.version_number for v in drafts)}")

    by_id = {v.id: v for v in versions}
    for v in live:
        if v.issue_status == SUPERSEDED:
            successor = by_id.get(v.superseded_by_document_id or -1)
            if successor is None:
                problems.append(f"v{v.version_number} is superseded without a successor in the chain")
            elif successor.version_number <= v.version_number:
                problems.append(f"v{v.version_number} is superseded by older v{successor.version_number}")
            elif successor.issue_status == DRAFT:
                problems.append(f"v{v.version_number} is superseded by a draft (v{successor.version_number})")
        if v.issue_status in (ISSUED, SUPERSEDED) and not v.locked_pdf_path:
            problems.append(f"v{v.version_number} is {v.issue_status} without a locked artifact")
    return problems


def is_editable(v: DocumentVersion) -> bool:
    return v.issue_status == DRAFT and v.deleted_at is None


def can_derive_from(v: DocumentVersion) -> bool:
    return v.issue_status == ISSUED and v.deleted_at is None


def lock_message(v: DocumentVersion) -> str:
    return status_lock_message(v.issue_status)


def status_lock_message(issue_status: str) -> str:
    if issue_status == ISSUED:
        return "This document has been issued and is locked. To make changes, create a new version."
    if issue_status == SUPERSEDED:
        return "This document has been superseded by a newer version and cannot be edited."
    return ""


def touch(v: DocumentVersion) -> None:
    """
    Mark a draft as edited. Bumping lock_version makes an issue that rendered
    the previous content lose its compare-and-swap instead of freezing stale bytes.
    """
    v.updated_at = datetime.utcnow()
    v.lock_version = (v.lock_version or 0) + 1
