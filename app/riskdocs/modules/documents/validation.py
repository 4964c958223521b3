"""
Issue readiness checks.

``validate_for_issue`` never mutates anything. It reports blocking errors
(each with a machine code) and advisory warnings; only errors stop an issue.
"""
from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from app.riskdocs.models import User
from app.riskdocs.modules.documents.approval import (
    approval_required as org_approval_required,
    check_issue_clearance,
    clearance_message,
)
from app.riskdocs.modules.documents.models import (
    DRAFT,
    TERMINAL_ACTION_STATUSES,
    DocumentVersion,
)
from app.riskdocs.rbac import can_edit

PermissionCheck = Callable[[User | None, int | None], bool]

# Modules that must exist with data before a version of each type can be issued.
REQUIRED_MODULES = {
    "FRA": (
        "A1_DOC_CONTROL",
        "A2_BUILDING_PROFILE",
        "A3_PERSONS_AT_RISK",
        "FRA_1_HAZARDS",
        "FRA_2_ESCAPE_ASIS",
        "FRA_3_PROTECTION_ASIS",
        "FRA_4_SIGNIFICANT_FINDINGS",
    ),
    "FSD": (
        "A1_DOC_CONTROL",
        "A2_BUILDING_PROFILE",
        "FSD_1_REG_BASIS",
        "FSD_2_EVAC_STRATEGY",
        "FSD_3_ESCAPE_DESIGN",
    ),
    "DSEAR": (
        "A1_DOC_CONTROL",
        "A2_BUILDING_PROFILE",
        "DSEAR_1_SUBSTANCES_REGISTER",
        "DSEAR_3_HAC_ZONING",
        "DSEAR_6_RISK_TABLE",
    ),
}


@dataclass
class IssueReadiness:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    codes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"valid": self.valid, "errors": self.errors, "warnings": self.warnings, "codes": self.codes}


class _Collector:
    def __init__(self) -> None:
        self.errors: list[str] = []
        self.codes: list[str] = []
        self.warnings: list[str] = []

    def error(self, code: str, message: str) -> None:
        self.errors.append(message)
        if code not in self.codes:
            self.codes.append(code)

    def warn(self, message: str) -> None:
        self.warnings.append(message)

    def result(self) -> IssueReadiness:
        return IssueReadiness(valid=not self.errors, errors=self.errors, warnings=self.warnings, codes=self.codes)


def _text(value: object) -> str:
    return value.strip() if isinstance(value, str) else ""


def _payload_value(v: DocumentVersion, key: str) -> object:
    for m in v.modules:
        if key in (m.payload or {}):
            return m.payload[key]
    return None


def _has_open_actions(v: DocumentVersion) -> bool:
    return any(a.status not in TERMINAL_ACTION_STATUSES for a in v.live_actions)


def _check_fra(v: DocumentVersion, out: _Collector) -> None:
    if v.scope_type in ("limited", "desktop") and not _text(v.scope_limitations):
        out.error("SCOPE_LIMITATIONS_MISSING", "Scope limitations must be specified for limited/desktop assessments")
    if not _has_open_actions(v) and not v.no_significant_findings:
        out.error(
            "NO_RECOMMENDATIONS",
            "Must have at least one open recommendation OR confirm no significant findings",
        )


def _check_fsd(v: DocumentVersion, out: _Collector) -> None:
    if _payload_value(v, "engineered_solutions_used") is True:
        if not _text(_payload_value(v, "limitations_text")):
            out.error("LIMITATIONS_MISSING", "Limitations must be documented when using engineered solutions")
        if not _text(_payload_value(v, "management_assumptions_text")):
            out.error(
                "MANAGEMENT_ASSUMPTIONS_MISSING",
                "Management assumptions must be documented when using engineered solutions",
            )


def _check_dsear(v: DocumentVersion, out: _Collector) -> None:
    if not _payload_value(v, "substances") and _payload_value(v, "no_dangerous_substances") is not True:
        out.error(
            "SUBSTANCES_MISSING",
            "At least one dangerous substance must be identified OR confirm no dangerous substances",
        )
    if not _payload_value(v, "zones") and _payload_value(v, "no_zoned_areas") is not True:
        out.error("ZONES_MISSING", "Zone classification must be documented OR confirm no zoned areas")
    if not _has_open_actions(v) and _payload_value(v, "controls_adequate_confirmed") is not True:
        out.error("NO_RECOMMENDATIONS", "Must have at least one open action OR confirm controls are adequate")


_TYPE_RULES = {"FRA": _check_fra, "FSD": _check_fsd, "DSEAR": _check_dsear}


def check_version(
    v: DocumentVersion,
    *,
    user: User | None,
    approval_required: bool,
    permissions: PermissionCheck = can_edit,
) -> IssueReadiness:
    """Readiness of an already-loaded version row."""
    out = _Collector()

    if v.issue_status != DRAFT:
        out.error("NOT_DRAFT", "Only draft documents can be issued")
        return out.result()

    if not permissions(user, v.organisation_id):
        out.error("NO_PERMISSION", "You do not have permission to issue documents")

    blocked = check_issue_clearance(v.approval_status, approval_required)
    if blocked:
        out.error(blocked, clearance_message(blocked))

    if not v.modules:
        out.error("NO_MODULES", "Document must have at least one module")
    else:
        by_key = {m.module_key: m for m in v.modules}
        required = REQUIRED_MODULES.get(v.document_type, ())
        for key in required:
            m = by_key.get(key)
            if m is None or not m.payload:
                out.error("EMPTY_REQUIRED_MODULES", f"Module {key} has no data")
        for m in v.modules:
            if m.module_key not in required and not m.payload:
                out.warn(f"Module {m.module_key} has no data")

    rule = _TYPE_RULES.get(v.document_type)
    if rule is not None:
        rule(v, out)

    if not v.live_actions:
        out.warn("No recommendations recorded for this version")
    if not _text(v.executive_summary):
        out.warn("Executive summary is empty")
    uncaptioned = [e for e in v.live_evidence if not _text(e.caption)]
    if uncaptioned:
        out.warn(f"{len(uncaptioned)} evidence item(s) have no caption")

    return out.result()


def validate_for_issue(
    s: Session,
    version_id: int,
    *,
    user: User | None,
    organisation_id: int,
    approval_required: bool | None = None,
    permissions: PermissionCheck = can_edit,
) -> IssueReadiness:
    v = s.get(DocumentVersion, version_id)
    if v is None or v.deleted_at is not None or v.organisation_id != organisation_id:
        out = _Collector()
        out.error("DOC_NOT_FOUND", "Document not found")
        return out.result()
    if approval_required is None:
        approval_required = org_approval_required(s, organisation_id)
    return check_version(v, user=user, approval_required=approval_required, permissions=permissions)
