from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from app.riskdocs.errors import IllegalTransition
from app.riskdocs.models import Base

# Issue lifecycle: draft -> issued -> superseded
DRAFT = "draft"
ISSUED = "issued"
SUPERSEDED = "superseded"
ISSUE_STATUSES = (DRAFT, ISSUED, SUPERSEDED)

# Approval sub-machine: not_required -> pending -> approved | rejected
APPROVAL_NOT_REQUIRED = "not_required"
APPROVAL_PENDING = "pending"
APPROVAL_APPROVED = "approved"
APPROVAL_REJECTED = "rejected"
APPROVAL_STATUSES = (APPROVAL_NOT_REQUIRED, APPROVAL_PENDING, APPROVAL_APPROVED, APPROVAL_REJECTED)

DOCUMENT_TYPES = ("FRA", "FSD", "DSEAR")

# Work item statuses. Terminal ones are never carried into a new version.
ACTION_OPEN = "open"
ACTION_IN_PROGRESS = "in_progress"
ACTION_DEFERRED = "deferred"
ACTION_CLOSED = "closed"
ACTION_NOT_APPLICABLE = "not_applicable"
ACTION_STATUSES = (ACTION_OPEN, ACTION_IN_PROGRESS, ACTION_DEFERRED, ACTION_CLOSED, ACTION_NOT_APPLICABLE)
CARRY_FORWARD_ACTION_STATUSES = (ACTION_OPEN, ACTION_IN_PROGRESS, ACTION_DEFERRED)
TERMINAL_ACTION_STATUSES = (ACTION_CLOSED, ACTION_NOT_APPLICABLE)

# Version columns copied into a derived version and frozen once the version leaves draft.
CONTENT_FIELDS = (
    "title",
    "document_type",
    "jurisdiction",
    "assessment_date",
    "assessor_name",
    "site_name",
    "site_address",
    "scope_type",
    "scope_limitations",
    "executive_summary",
    "no_significant_findings",
)

# The only columns a non-draft version may still receive.
SUPERSESSION_FIELDS = ("superseded_by_document_id", "superseded_date")

_PARTIAL_DRAFT = "issue_status = 'draft' AND deleted_at IS NULL"
_PARTIAL_ISSUED = "issue_status = 'issued'"


class DocumentVersion(Base):
    __tablename__ = "document_versions"
    __table_args__ = (
        UniqueConstraint("base_document_id", "version_number", name="uq_document_version_number"),
        # Storage-level backstop for the single-draft / single-issued chain rules.
        Index(
            "uq_document_versions_one_draft",
            "base_document_id",
            unique=True,
            sqlite_where=text(_PARTIAL_DRAFT),
            postgresql_where=text(_PARTIAL_DRAFT),
        ),
        Index(
            "uq_document_versions_one_issued",
            "base_document_id",
            unique=True,
            sqlite_where=text(_PARTIAL_ISSUED),
            postgresql_where=text(_PARTIAL_ISSUED),
        ),
        Index("idx_document_versions_org", "organisation_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    base_document_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    version_number: Mapped[int] = mapped_column(Integer, nullable=False)
    organisation_id: Mapped[int] = mapped_column(ForeignKey("organisations.id", ondelete="RESTRICT"), nullable=False)

    # Content payload
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    document_type: Mapped[str] = mapped_column(String(16), nullable=False)
    jurisdiction: Mapped[str] = mapped_column(String(32), nullable=False, default="UK")
    assessment_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    assessor_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    site_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    site_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    scope_type: Mapped[str | None] = mapped_column(String(32), nullable=True)  # full | limited | desktop
    scope_limitations: Mapped[str | None] = mapped_column(Text, nullable=True)
    executive_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    no_significant_findings: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Lifecycle
    issue_status: Mapped[str] = mapped_column(String(16), nullable=False, default=DRAFT)
    issue_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    issued_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    superseded_by_document_id: Mapped[int | None] = mapped_column(
        ForeignKey("document_versions.id", ondelete="RESTRICT"),
        nullable=True,
    )
    superseded_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    # Bumped by every lifecycle transition; CAS token for the commit step.
    lock_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Approval
    approval_status: Mapped[str] = mapped_column(String(16), nullable=False, default=APPROVAL_NOT_REQUIRED)
    approved_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    approval_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    approval_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Locked artifact (set together with the issue transition)
    locked_pdf_path: Mapped[str | None] = mapped_column(String(512), nullable=True)
    locked_pdf_sha256: Mapped[str | None] = mapped_column(String(64), nullable=True)
    locked_pdf_size_bytes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    locked_pdf_generated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    artifact_generation_error: Mapped[str | None] = mapped_column(String(512), nullable=True)

    # Soft delete (drafts without successor only)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    deleted_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    modules: Mapped[list["ModuleInstance"]] = relationship(
        "ModuleInstance",
        back_populates="version",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ModuleInstance.id",
    )
    actions: Mapped[list["Action"]] = relationship(
        "Action",
        back_populates="version",
        cascade="all, delete-orphan",
        lazy="selectin",
        foreign_keys="Action.version_id",
        order_by="Action.id",
    )
    evidence_links: Mapped[list["EvidenceLink"]] = relationship(
        "EvidenceLink",
        back_populates="version",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="EvidenceLink.id",
    )

    @validates("issue_status")
    def _validate_issue_status(self, key: str, value: str) -> str:
        # Rows are born draft; every later move goes through lifecycle transitions.
        if value != DRAFT or sa_inspect(self).has_identity:
            raise IllegalTransition(
                f"issue_status cannot be assigned directly (attempted {value!r}); use the lifecycle transitions"
            )
        return value

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def live_actions(self) -> list["Action"]:
        return [a for a in self.actions if a.deleted_at is None]

    @property
    def live_evidence(self) -> list["EvidenceLink"]:
        return [e for e in self.evidence_links if e.deleted_at is None]


class ModuleInstance(Base):
    __tablename__ = "module_instances"
    __table_args__ = (
        UniqueConstraint("version_id", "module_key", name="uq_module_instance_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    version_id: Mapped[int] = mapped_column(ForeignKey("document_versions.id", ondelete="CASCADE"), nullable=False)
    module_key: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    outcome: Mapped[str | None] = mapped_column(String(64), nullable=True)
    assessor_notes: Mapped[str] = mapped_column(Text, nullable=False, default="")
    completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    version: Mapped[DocumentVersion] = relationship("DocumentVersion", back_populates="modules")


class Action(Base):
    """A work item (recommendation / action) raised against one version."""

    __tablename__ = "actions"
    __table_args__ = (
        Index("idx_actions_version_status", "version_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    version_id: Mapped[int] = mapped_column(ForeignKey("document_versions.id", ondelete="CASCADE"), nullable=False)
    module_key: Mapped[str | None] = mapped_column(String(64), nullable=True)

    recommended_action: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=ACTION_OPEN)
    priority_band: Mapped[str | None] = mapped_column(String(16), nullable=True)  # P1..P4
    timescale: Mapped[str | None] = mapped_column(String(64), nullable=True)
    target_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    owner_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    # Register annotations (written once, after issue)
    reference_number: Mapped[str | None] = mapped_column(String(16), nullable=True)
    first_raised_in_version: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Carry-forward lineage
    origin_action_id: Mapped[int | None] = mapped_column(ForeignKey("actions.id", ondelete="SET NULL"), nullable=True)
    carried_from_version_id: Mapped[int | None] = mapped_column(
        ForeignKey("document_versions.id", ondelete="SET NULL"),
        nullable=True,
    )

    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    closed_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    closure_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    version: Mapped[DocumentVersion] = relationship(
        "DocumentVersion",
        back_populates="actions",
        foreign_keys=[version_id],
    )


class EvidenceFile(Base):
    """
    Evidence bytes, owned by the chain rather than a single version.
    Versions reference files through EvidenceLink, so carrying evidence forward never copies bytes.
    """

    __tablename__ = "evidence_files"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    base_document_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    organisation_id: Mapped[int] = mapped_column(ForeignKey("organisations.id", ondelete="RESTRICT"), nullable=False)

    storage_key: Mapped[str] = mapped_column(String(512), nullable=False)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    content_type: Mapped[str] = mapped_column(String(128), nullable=False, default="application/octet-stream")
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)
    taken_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    uploaded_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    links: Mapped[list["EvidenceLink"]] = relationship("EvidenceLink", back_populates="evidence", lazy="selectin")


class EvidenceLink(Base):
    __tablename__ = "evidence_links"
    __table_args__ = (
        UniqueConstraint("version_id", "evidence_id", name="uq_evidence_link_version_file"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    version_id: Mapped[int] = mapped_column(ForeignKey("document_versions.id", ondelete="CASCADE"), nullable=False)
    evidence_id: Mapped[int] = mapped_column(ForeignKey("evidence_files.id", ondelete="RESTRICT"), nullable=False)
    action_id: Mapped[int | None] = mapped_column(ForeignKey("actions.id", ondelete="SET NULL"), nullable=True)
    module_key: Mapped[str | None] = mapped_column(String(64), nullable=True)
    caption: Mapped[str | None] = mapped_column(String(512), nullable=True)

    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    version: Mapped[DocumentVersion] = relationship("DocumentVersion", back_populates="evidence_links")
    evidence: Mapped[EvidenceFile] = relationship("EvidenceFile", back_populates="links", lazy="selectin")


class ChangeSummary(Base):
    """Work-item delta between an issued version and the version it superseded."""

    __tablename__ = "change_summaries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    version_id: Mapped[int] = mapped_column(
        ForeignKey("document_versions.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    previous_version_id: Mapped[int | None] = mapped_column(
        ForeignKey("document_versions.id", ondelete="SET NULL"),
        nullable=True,
    )
    version_number: Mapped[int] = mapped_column(Integer, nullable=False)

    new_actions_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    closed_actions_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    outstanding_actions_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    details_json: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    summary_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    has_material_changes: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    generated_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
