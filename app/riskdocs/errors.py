"""
Typed failures of the document lifecycle.

Every error carries a machine-readable ``code`` and the HTTP status the API
layer renders it with. Orchestration-level errors (validation, approval,
locking) are meant for direct display to the acting user; storage anomalies
and invariant violations are logged where they are raised.
"""
from __future__ import annotations


class LifecycleError(RuntimeError):
    code = "LIFECYCLE_ERROR"
    http_status = 400
    retryable = False

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"success": False, "error": self.message, "code": self.code}


class DocumentNotFound(LifecycleError):
    code = "DOC_NOT_FOUND"
    http_status = 404


class ValidationFailed(LifecycleError):
    """Blocking content/approval/permission errors. Never retried automatically."""

    code = "VALIDATION_FAILED"
    http_status = 422

    def __init__(
        self,
        errors: list[str],
        *,
        warnings: list[str] | None = None,
        codes: list[str] | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__("; ".join(errors) or "Validation failed", code=code)
        self.errors = list(errors)
        self.warnings = list(warnings or [])
        self.codes = list(codes or [])

    def to_dict(self) -> dict:
        d = super().to_dict()
        d.update({"errors": self.errors, "warnings": self.warnings, "codes": self.codes})
        return d


class ApprovalRequired(ValidationFailed):
    code = "APPROVAL_REQUIRED"


class ApprovalRejected(ValidationFailed):
    code = "APPROVAL_REJECTED"


class ApprovalTransitionError(LifecycleError):
    code = "APPROVAL_TRANSITION_INVALID"
    http_status = 409


class ArtifactGenerationFailed(LifecycleError):
    code = "ARTIFACT_GENERATION_FAILED"
    http_status = 502
    retryable = True


class ArtifactGenerationTimedOut(ArtifactGenerationFailed):
    code = "ARTIFACT_GENERATION_TIMED_OUT"
    http_status = 504


class ArtifactPersistenceUnverified(LifecycleError):
    """The store accepted the artifact but a read-back found nothing (or different bytes)."""

    code = "ARTIFACT_PERSISTENCE_UNVERIFIED"
    http_status = 502
    retryable = True


class LockedError(LifecycleError):
    """A mutation was attempted against a version that is no longer draft."""

    code = "DOCUMENT_LOCKED"
    http_status = 423

    def __init__(self, message: str, *, version_id: int | None = None, issue_status: str | None = None) -> None:
        super().__init__(message)
        self.version_id = version_id
        self.issue_status = issue_status


class ConflictError(LifecycleError):
    """Optimistic-concurrency rejection; safe to retry once after re-reading state."""

    code = "CONFLICT"
    http_status = 409
    retryable = True


class ChainInvariantViolation(LifecycleError):
    code = "CHAIN_INVARIANT_VIOLATION"
    http_status = 409


class IllegalTransition(ChainInvariantViolation):
    code = "ILLEGAL_TRANSITION"


class DerivationNotAllowed(LifecycleError):
    code = "DERIVATION_NOT_ALLOWED"
    http_status = 409


class AccessDenied(LifecycleError):
    code = "ACCESS_DENIED"
    http_status = 403

    def __init__(self, reason: str) -> None:
        super().__init__("Access denied", code=None)
        self.reason = reason

    def to_dict(self) -> dict:
        return {"success": False, "error": self.message, "code": self.code, "reason": self.reason}
