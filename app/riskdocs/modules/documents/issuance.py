"""
Issuing a draft.

Order of operations, each step a precondition of the next:

1. validate (approval gate, permissions, content rules)
2. render the locked artifact (bounded by a timeout) and store it
3. read the artifact back and compare hashes
4. one transaction on the chain: draft -> issued with the artifact metadata,
   previous issued -> superseded pointing at the new version
5. after commit, publish ``document-issued`` to the side channels

A failure before step 4 leaves the chain exactly as it was.
"""
from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from datetime import datetime

from flask import Flask
from sqlalchemy.orm import Session

from app.riskdocs.audit import record_event
from app.riskdocs.errors import (
    ApprovalRejected,
    ApprovalRequired,
    ArtifactGenerationFailed,
    ArtifactGenerationTimedOut,
    ArtifactPersistenceUnverified,
    ChainInvariantViolation,
    ConflictError,
    DocumentNotFound,
    ValidationFailed,
)
from app.riskdocs.models import User
from app.riskdocs.modules.documents.approval import approval_required as org_approval_required
from app.riskdocs.modules.documents.artifacts import (
    ArtifactBuilder,
    artifact_builder_from_config,
    snapshot_content,
)
from app.riskdocs.modules.documents.events import DocumentIssuedEvent, publish_document_issued
from app.riskdocs.modules.documents.lifecycle import (
    Draft,
    chain_lock,
    issue,
    state_of,
    supersede,
    write_transition,
)
from app.riskdocs.modules.documents.models import ISSUED, DocumentVersion
from app.riskdocs.modules.documents.validation import IssueReadiness, PermissionCheck, check_version
from app.riskdocs.rbac import can_edit
from app.riskdocs.storage import Storage, StorageError, StoredBlob, sha256_hex, storage_from_config

logger = logging.getLogger(__name__)

_APPROVAL_ERRORS = {
    "APPROVAL_REQUIRED": ApprovalRequired,
    "APPROVAL_PENDING": ApprovalRequired,
    "APPROVAL_REJECTED": ApprovalRejected,
}


@dataclass(frozen=True)
class IssuedVersion:
    version_id: int
    base_document_id: str
    version_number: int
    issue_date: datetime
    superseded_version_id: int | None
    artifact: StoredBlob
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": True,
            "document_id": self.version_id,
            "base_document_id": self.base_document_id,
            "version_number": self.version_number,
            "issue_date": self.issue_date.isoformat(),
            "superseded_document_id": self.superseded_version_id,
            "locked_pdf_path": self.artifact.path,
            "locked_pdf_sha256": self.artifact.sha256,
            "locked_pdf_size_bytes": self.artifact.size_bytes,
            "warnings": self.warnings,
        }


def artifact_key(v: DocumentVersion, extension: str) -> str:
    # Unique per attempt: a losing concurrent attempt only ever removes its own object.
    return f"documents/{v.base_document_id}/v{v.version_number}/locked-{uuid.uuid4().hex}.{extension}"


class IssuanceOrchestrator:
    def __init__(
        self,
        *,
        storage: Storage,
        builder: ArtifactBuilder,
        permissions: PermissionCheck = can_edit,
        approval_required: Callable[[Session, int], bool] = org_approval_required,
        timeout_seconds: float = 30.0,
        clock: Callable[[], datetime] = datetime.utcnow,
        publisher: Callable[[DocumentIssuedEvent], object] | None = None,
    ) -> None:
        self.storage = storage
        self.builder = builder
        self.permissions = permissions
        self.approval_required = approval_required
        self.timeout_seconds = timeout_seconds
        self.clock = clock
        self.publisher = publisher

    # -- step 1 -----------------------------------------------------------

    def validate(self, s: Session, version_id: int, *, actor: User | None, organisation_id: int) -> IssueReadiness:
        v = self._load(s, version_id, organisation_id)
        if v is None:
            return IssueReadiness(valid=False, errors=["Document not found"], codes=["DOC_NOT_FOUND"])
        return check_version(
            v,
            user=actor,
            approval_required=self.approval_required(s, organisation_id),
            permissions=self.permissions,
        )

    @staticmethod
    def _load(s: Session, version_id: int, organisation_id: int) -> DocumentVersion | None:
        s.flush()
        v = s.get(DocumentVersion, version_id, populate_existing=True)
        if v is None or v.deleted_at is not None or v.organisation_id != organisation_id:
            return None
        return v

    @staticmethod
    def _raise_for(readiness: IssueReadiness) -> None:
        if "DOC_NOT_FOUND" in readiness.codes:
            raise DocumentNotFound("Document not found")
        for code in readiness.codes:
            if code in _APPROVAL_ERRORS:
                raise _APPROVAL_ERRORS[code](
                    readiness.errors, warnings=readiness.warnings, codes=readiness.codes, code=code
                )
        raise ValidationFailed(
            readiness.errors,
            warnings=readiness.warnings,
            codes=readiness.codes,
            code=readiness.codes[0] if readiness.codes else None,
        )

    # -- step 2 -----------------------------------------------------------

    def _build(self, content: dict, version_id: int) -> bytes:
        cancel = threading.Event()
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="artifact-build")
        try:
            future = executor.submit(self.builder.build, content, cancel_event=cancel)
            try:
                data = future.result(timeout=self.timeout_seconds)
            except FuturesTimeout as e:
                cancel.set()
                logger.warning(
                    "Artifact generation for version %s exceeded %.1fs; abandoning",
                    version_id,
                    self.timeout_seconds,
                )
                raise ArtifactGenerationTimedOut(
                    f"Artifact generation timed out after {self.timeout_seconds:g}s"
                ) from e
            except ArtifactGenerationFailed:
                raise
            except Exception as e:
                logger.exception("Artifact builder failed for version %s", version_id)
                raise ArtifactGenerationFailed(f"Artifact generation failed: {e}") from e
        finally:
            # Never wait on a hung builder; it sees the cancel event when it next checks.
            executor.shutdown(wait=False, cancel_futures=True)
        if not isinstance(data, bytes) or not data:
            raise ArtifactGenerationFailed("Artifact builder returned no bytes")
        return data

    def _persist(self, key: str, data: bytes) -> StoredBlob:
        try:
            return self.storage.put(key, data, content_type=self.builder.content_type)
        except StorageError as e:
            raise ArtifactGenerationFailed(f"Could not store artifact: {e}") from e

    # -- step 3 -----------------------------------------------------------

    def _verify(self, blob: StoredBlob) -> None:
        try:
            if not self.storage.exists(blob.path):
                raise ArtifactPersistenceUnverified(f"Stored artifact {blob.path} is not readable back")
            stored = self.storage.get_bytes(blob.path)
        except StorageError as e:
            raise ArtifactPersistenceUnverified(f"Stored artifact {blob.path} is not readable back: {e}") from e
        if sha256_hex(stored) != blob.sha256 or len(stored) != blob.size_bytes:
            raise ArtifactPersistenceUnverified(f"Stored artifact {blob.path} does not match what was written")

    def _discard(self, blob: StoredBlob) -> None:
        try:
            self.storage.delete(blob.path)
        except StorageError:
            logger.warning("Could not remove orphaned artifact %s", blob.path, exc_info=True)

    def _record_failure(self, s: Session, version_id: int, message: str) -> None:
        s.rollback()
        try:
            v = s.get(DocumentVersion, version_id, populate_existing=True)
            if v is not None and v.issue_status != ISSUED:
                v.artifact_generation_error = message[:512]
                s.commit()
        except Exception:
            s.rollback()
            logger.warning("Could not record artifact failure on version %s", version_id, exc_info=True)

    # -- step 4 -----------------------------------------------------------

    def _commit(
        self,
        s: Session,
        draft: Draft,
        blob: StoredBlob,
        actor: User | None,
        now: datetime,
    ) -> DocumentVersion | None:
        versions = chain_lock(s, draft.base_document_id)
        current = next((v for v in versions if v.id == draft.version_id), None)
        if current is None or current.deleted_at is not None:
            raise DocumentNotFound("Document not found")
        if state_of(current) != draft:
            raise ConflictError("The draft changed while it was being issued; reload and retry")

        issued_now = [v for v in versions if v.issue_status == ISSUED and v.deleted_at is None]
        if len(issued_now) > 1:
            logger.error(
                "Chain %s has %d issued versions; refusing to issue",
                draft.base_document_id,
                len(issued_now),
            )
            raise ChainInvariantViolation("Document chain has more than one issued version")

        previous = issued_now[0] if issued_now else None
        if previous is not None:
            if previous.version_number > draft.version_number:
                raise ChainInvariantViolation("A newer version of this document is already issued")
            prior_state = state_of(previous)
            write_transition(s, prior_state, supersede(prior_state, successor_id=draft.version_id, superseded_at=now))

        write_transition(
            s,
            draft,
            issue(draft, issued_at=now, issued_by_user_id=actor.id if actor else None),
            extra={
                "locked_pdf_path": blob.path,
                "locked_pdf_sha256": blob.sha256,
                "locked_pdf_size_bytes": blob.size_bytes,
                "locked_pdf_generated_at": now,
                "artifact_generation_error": None,
                "updated_at": now,
            },
        )
        record_event(
            s,
            actor=actor,
            action="document.issue",
            entity_type="DocumentVersion",
            entity_id=str(draft.version_id),
            metadata={
                "base_document_id": draft.base_document_id,
                "version_number": draft.version_number,
                "locked_pdf_path": blob.path,
                "locked_pdf_sha256": blob.sha256,
            },
        )
        if previous is not None:
            record_event(
                s,
                actor=actor,
                action="document.supersede",
                entity_type="DocumentVersion",
                entity_id=str(previous.id),
                metadata={"superseded_by_document_id": draft.version_id, "base_document_id": draft.base_document_id},
            )
        s.commit()
        return previous

    # -- entry point ------------------------------------------------------

    def issue(self, s: Session, version_id: int, *, actor: User | None, organisation_id: int) -> IssuedVersion:
        """
        Issue a draft. Raises a LifecycleError subclass on every failure; the
        session is committed on success and rolled back on failure.
        """
        readiness = self.validate(s, version_id, actor=actor, organisation_id=organisation_id)
        if not readiness.valid:
            self._raise_for(readiness)

        v = self._load(s, version_id, organisation_id)
        if v is None:
            raise DocumentNotFound("Document not found")
        draft = state_of(v)
        if not isinstance(draft, Draft):
            raise ValidationFailed(["Only draft documents can be issued"], codes=["NOT_DRAFT"], code="NOT_DRAFT")
        content = snapshot_content(v)
        key = artifact_key(v, self.builder.extension)

        try:
            blob = self._persist(key, self._build(content, version_id))
        except ArtifactGenerationFailed as e:
            self._record_failure(s, version_id, e.message)
            raise

        try:
            self._verify(blob)
        except ArtifactPersistenceUnverified as e:
            logger.error(
                "Artifact persistence anomaly for version %s (key=%s sha256=%s): %s",
                version_id,
                blob.path,
                blob.sha256,
                e.message,
            )
            self._discard(blob)
            self._record_failure(s, version_id, e.message)
            raise

        now = self.clock()
        try:
            previous = self._commit(s, draft, blob, actor, now)
        except Exception:
            s.rollback()
            self._discard(blob)
            raise

        s.refresh(v)
        if previous is not None:
            s.refresh(previous)
        logger.info(
            "Issued version %s (v%s of %s)%s",
            v.id,
            v.version_number,
            v.base_document_id,
            f", superseding {previous.id}" if previous is not None else "",
        )

        event = DocumentIssuedEvent(
            version_id=v.id,
            base_document_id=v.base_document_id,
            version_number=v.version_number,
            organisation_id=v.organisation_id,
            superseded_version_id=previous.id if previous is not None else None,
            issued_by_user_id=actor.id if actor else None,
            issued_at=now,
            artifact_path=blob.path,
            artifact_sha256=blob.sha256,
        )
        if self.publisher is not None:
            try:
                self.publisher(event)
            except Exception:
                logger.exception("Publishing document-issued for version %s failed", v.id)

        return IssuedVersion(
            version_id=v.id,
            base_document_id=v.base_document_id,
            version_number=v.version_number,
            issue_date=now,
            superseded_version_id=previous.id if previous is not None else None,
            artifact=blob,
            warnings=readiness.warnings,
        )


def orchestrator_from_app(app: Flask, *, storage: Storage | None = None) -> IssuanceOrchestrator:
    return IssuanceOrchestrator(
        storage=storage or storage_from_config(app.config),
        builder=artifact_builder_from_config(app.config),
        timeout_seconds=float(app.config.get("ARTIFACT_TIMEOUT_SECONDS") or 30.0),
        publisher=lambda event: publish_document_issued(app, event),
    )
