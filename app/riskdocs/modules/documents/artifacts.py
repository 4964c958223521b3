"""
Locked artifact rendering.

The issuance path only needs ``build(content, cancel_event=...) -> bytes``.
Layout engines (PDF etc.) plug in behind that interface; the default builder
emits a canonical JSON rendering so the stored bytes are reproducible and
hash-comparable.
"""
from __future__ import annotations

import json
import threading
from typing import Any, Protocol

from app.riskdocs.errors import ArtifactGenerationFailed
from app.riskdocs.modules.documents.models import CONTENT_FIELDS, DocumentVersion


class ArtifactBuilder(Protocol):
    content_type: str
    extension: str

    def build(self, content: dict[str, Any], *, cancel_event: threading.Event) -> bytes: ...


REFERENCE_NUMBER_NOTE = (
    "Actions first raised in this version receive their R-NN reference number once the version is issued; "
    "the issued document register and change summary carry the assigned numbers."
)


def snapshot_content(v: DocumentVersion) -> dict[str, Any]:
    """Everything the locked artifact renders. No timestamps, so equal content renders equal bytes."""
    notes: list[str] = []
    if any(a.reference_number is None for a in v.live_actions):
        notes.append(REFERENCE_NUMBER_NOTE)
    return {
        "notes": notes,
        "base_document_id": v.base_document_id,
        "version_number": v.version_number,
        "organisation_id": v.organisation_id,
        "content": {name: getattr(v, name) for name in CONTENT_FIELDS},
        "modules": [
            {
                "module_key": m.module_key,
                "payload": m.payload or {},
                "outcome": m.outcome,
                "assessor_notes": m.assessor_notes,
                "completed": m.completed,
            }
            for m in sorted(v.modules, key=lambda m: m.module_key)
        ],
        "actions": [
            {
                "id": a.id,
                "module_key": a.module_key,
                "recommended_action": a.recommended_action,
                "status": a.status,
                "priority_band": a.priority_band,
                "timescale": a.timescale,
                "target_date": a.target_date,
                "reference_number": a.reference_number,
                "origin_action_id": a.origin_action_id,
            }
            for a in v.live_actions
        ],
        "evidence": [
            {
                "evidence_id": link.evidence_id,
                "filename": link.evidence.filename,
                "sha256": link.evidence.sha256,
                "caption": link.caption,
                "module_key": link.module_key,
            }
            for link in v.live_evidence
        ],
    }


class CanonicalJsonArtifactBuilder:
    content_type = "application/json"
    extension = "json"

    def build(self, content: dict[str, Any], *, cancel_event: threading.Event) -> bytes:
        if cancel_event.is_set():
            raise ArtifactGenerationFailed("Artifact generation cancelled")
        return json.dumps(content, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")


def artifact_builder_from_config(config: dict) -> ArtifactBuilder:
    kind = (config.get("ARTIFACT_BUILDER") or "canonical-json").strip().lower()
    if kind == "canonical-json":
        return CanonicalJsonArtifactBuilder()
    raise RuntimeError(f"Unknown ARTIFACT_BUILDER {kind!r}")
