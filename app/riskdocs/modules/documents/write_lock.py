"""
Write lock for issued and superseded versions.

Two layers:
- ``assert_editable`` is called first by every mutation path (service, approval, API)
- ``install_write_lock`` hooks ``before_flush`` on the sessionmaker so that a
  mutation that skipped the first layer still cannot reach the database
"""
from __future__ import annotations

import logging
from collections.abc import Iterable

from sqlalchemy import event, select
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.orm import Session, sessionmaker

from app.riskdocs.errors import DocumentNotFound, LockedError
from app.riskdocs.modules.documents.lifecycle import status_lock_message
from app.riskdocs.modules.documents.models import (
    DRAFT,
    SUPERSESSION_FIELDS,
    Action,
    DocumentVersion,
    EvidenceFile,
    EvidenceLink,
    ModuleInstance,
)

logger = logging.getLogger(__name__)

_CHILD_TYPES = (ModuleInstance, Action, EvidenceLink)
_LOCKED_TYPES = (*_CHILD_TYPES, EvidenceFile)
# Issue-register annotations on work items: written once, after issue.
_REGISTER_FIELDS = frozenset({"reference_number", "first_raised_in_version"})


def assert_editable(s: Session, version_id: int) -> DocumentVersion:
    """Return the version if its stored row is a live draft; raise otherwise.

    Status and deletion are read as plain columns so that unflushed edits already
    held by the session (modules, actions, evidence) are left untouched.
    """
    row = s.execute(
        select(DocumentVersion.issue_status, DocumentVersion.deleted_at).where(DocumentVersion.id == version_id)
    ).one_or_none()
    if row is None or row.deleted_at is not None:
        raise DocumentNotFound(f"Document version {version_id} not found")
    if row.issue_status != DRAFT:
        raise LockedError(
            status_lock_message(row.issue_status),
            version_id=version_id,
            issue_status=row.issue_status,
        )
    v = s.get(DocumentVersion, version_id)
    if v is None:
        raise DocumentNotFound(f"Document version {version_id} not found")
    return v


def _changed_columns(obj: object) -> set[str]:
    state = sa_inspect(obj)
    return {attr.key for attr in state.mapper.column_attrs if state.attrs[attr.key].history.has_changes()}


def _stored_status(s: Session, version_id: int | None) -> str | None:
    if version_id is None:
        return None
    return s.execute(
        select(DocumentVersion.issue_status).where(DocumentVersion.id == version_id)
    ).scalar_one_or_none()


def _parent_ids(obj: object) -> set[int]:
    """Version ids a child row belongs to (before and after a pending re-parent)."""
    ids: set[int] = set()
    state = sa_inspect(obj)
    hist = state.attrs["version_id"].history
    for vid in list(hist.added or ()) + list(hist.deleted or ()) + list(hist.unchanged or ()):
        if vid is not None:
            ids.add(vid)
    if not ids:
        version = getattr(obj, "version", None)
        if version is not None and version.id is not None:
            ids.add(version.id)
    return ids


def _linked_version_ids(s: Session, f: EvidenceFile) -> set[int]:
    """Versions that reference an evidence file, as stored."""
    if f.id is None:
        return set()
    return set(s.scalars(select(EvidenceLink.version_id).where(EvidenceLink.evidence_id == f.id)))


def _is_register_annotation(obj: object, changed: set[str]) -> bool:
    if not isinstance(obj, Action) or not changed or not changed <= _REGISTER_FIELDS:
        return False
    state = sa_inspect(obj)
    return all(old is None for key in changed for old in (state.attrs[key].history.deleted or ()))


def _reject(version_id: int, status: str, what: str) -> None:
    logger.warning("Write lock rejected %s on version %s (%s)", what, version_id, status)
    raise LockedError(
        f"Version {version_id} is {status} and cannot be modified ({what})",
        version_id=version_id,
        issue_status=status,
    )


def _check_version(s: Session, v: DocumentVersion, *, deleting: bool) -> None:
    changed = set() if deleting else _changed_columns(v)
    if not deleting and not changed:
        return
    status = _stored_status(s, v.id)
    if status is None or status == DRAFT:
        return
    if deleting:
        _reject(v.id, status, "delete")
    if not changed <= set(SUPERSESSION_FIELDS):
        _reject(v.id, status, "change to " + ", ".join(sorted(changed - set(SUPERSESSION_FIELDS))))


def _check_child(s: Session, obj: object, *, what: str, changed: set[str] | None = None) -> None:
    for vid in (_linked_version_ids(s, obj) if isinstance(obj, EvidenceFile) else _parent_ids(obj)):
        status = _stored_status(s, vid)
        if status is None or status == DRAFT:
            continue
        if changed is not None and _is_register_annotation(obj, changed):
            continue
        _reject(vid, status, f"{what} {type(obj).__name__}")


def check_pending_changes(s: Session, new: Iterable[object], dirty: Iterable[object], deleted: Iterable[object]) -> None:
    with s.no_autoflush:
        for obj in new:
            if isinstance(obj, _CHILD_TYPES):
                _check_child(s, obj, what="add")
        for obj in dirty:
            if isinstance(obj, DocumentVersion):
                _check_version(s, obj, deleting=False)
            elif isinstance(obj, _LOCKED_TYPES):
                changed = _changed_columns(obj)
                if changed:
                    _check_child(s, obj, what="update", changed=changed)
        for obj in deleted:
            if isinstance(obj, DocumentVersion):
                _check_version(s, obj, deleting=True)
            elif isinstance(obj, _LOCKED_TYPES):
                _check_child(s, obj, what="delete")


def _before_flush(session: Session, flush_context, instances) -> None:  # type: ignore[no-untyped-def]
    check_pending_changes(session, list(session.new), list(session.dirty), list(session.deleted))


def install_write_lock(sm: sessionmaker) -> None:
    """Attach the flush-time write lock to every session the factory produces."""
    if not event.contains(sm, "before_flush", _before_flush):
        event.listen(sm, "before_flush", _before_flush)
