"""initial document lifecycle schema

Revision ID: 4d1e7a2b9c30
Revises:
Create Date: 2026-10-18 09:12:44.201377

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '4d1e7a2b9c30'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_ONE_DRAFT = "issue_status = 'draft' AND deleted_at IS NULL"
_ONE_ISSUED = "issue_status = 'issued'"


def upgrade() -> None:
    """Create auth/audit tables, the document chain tables and external access links."""
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    existing_tables = set(inspector.get_table_names())

    if "organisations" not in existing_tables:
        op.create_table(
            "organisations",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("approval_required", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("email", sa.String(320), nullable=False, unique=True),
            sa.Column("full_name", sa.String(255), nullable=True),
            sa.Column("password_hash", sa.String(255), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("organisation_id", sa.Integer(), sa.ForeignKey("organisations.id", ondelete="SET NULL"), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )

    if "roles" not in existing_tables:
        op.create_table(
            "roles",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("key", sa.String(64), nullable=False, unique=True),
            sa.Column("name", sa.String(128), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )

    if "permissions" not in existing_tables:
        op.create_table(
            "permissions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("key", sa.String(128), nullable=False, unique=True),
            sa.Column("name", sa.String(128), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )

    if "user_roles" not in existing_tables:
        op.create_table(
            "user_roles",
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
            sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
        )

    if "role_permissions" not in existing_tables:
        op.create_table(
            "role_permissions",
            sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
            sa.Column("permission_id", sa.Integer(), sa.ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
        )

    if "audit_events" not in existing_tables:
        op.create_table(
            "audit_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("request_id", sa.String(64), nullable=True),
            sa.Column("client_ip", sa.String(64), nullable=True),
            sa.Column("actor_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("actor_user_email", sa.String(320), nullable=True),
            sa.Column("action", sa.String(128), nullable=False),
            sa.Column("entity_type", sa.String(128), nullable=True),
            sa.Column("entity_id", sa.String(128), nullable=True),
            sa.Column("reason", sa.String(512), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.UniqueConstraint("request_id", "id", name="uq_audit_request_id_id"),
        )

    if "document_versions" not in existing_tables:
        op.create_table(
            "document_versions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("base_document_id", sa.String(36), nullable=False),
            sa.Column("version_number", sa.Integer(), nullable=False),
            sa.Column("organisation_id", sa.Integer(), sa.ForeignKey("organisations.id", ondelete="RESTRICT"), nullable=False),
            sa.Column("title", sa.String(255), nullable=False),
            sa.Column("document_type", sa.String(16), nullable=False),
            sa.Column("jurisdiction", sa.String(32), nullable=False, server_default="UK"),
            sa.Column("assessment_date", sa.Date(), nullable=True),
            sa.Column("assessor_name", sa.String(255), nullable=True),
            sa.Column("site_name", sa.String(255), nullable=True),
            sa.Column("site_address", sa.Text(), nullable=True),
            sa.Column("scope_type", sa.String(32), nullable=True),
            sa.Column("scope_limitations", sa.Text(), nullable=True),
            sa.Column("executive_summary", sa.Text(), nullable=True),
            sa.Column("no_significant_findings", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("issue_status", sa.String(16), nullable=False, server_default="draft"),
            sa.Column("issue_date", sa.DateTime(), nullable=True),
            sa.Column("issued_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column(
                "superseded_by_document_id",
                sa.Integer(),
                sa.ForeignKey("document_versions.id", ondelete="RESTRICT"),
                nullable=True,
            ),
            sa.Column("superseded_date", sa.DateTime(), nullable=True),
            sa.Column("lock_version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("approval_status", sa.String(16), nullable=False, server_default="not_required"),
            sa.Column("approved_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("approval_date", sa.DateTime(), nullable=True),
            sa.Column("approval_notes", sa.Text(), nullable=True),
            sa.Column("locked_pdf_path", sa.String(512), nullable=True),
            sa.Column("locked_pdf_sha256", sa.String(64), nullable=True),
            sa.Column("locked_pdf_size_bytes", sa.Integer(), nullable=True),
            sa.Column("locked_pdf_generated_at", sa.DateTime(), nullable=True),
            sa.Column("artifact_generation_error", sa.String(512), nullable=True),
            sa.Column("deleted_at", sa.DateTime(), nullable=True),
            sa.Column("deleted_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("created_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint("base_document_id", "version_number", name="uq_document_version_number"),
        )
        op.create_index("ix_document_versions_base_document_id", "document_versions", ["base_document_id"])
        op.create_index("idx_document_versions_org", "document_versions", ["organisation_id"])
        op.create_index(
            "uq_document_versions_one_draft",
            "document_versions",
            ["base_document_id"],
            unique=True,
            sqlite_where=sa.text(_ONE_DRAFT),
            postgresql_where=sa.text(_ONE_DRAFT),
        )
        op.create_index(
            "uq_document_versions_one_issued",
            "document_versions",
            ["base_document_id"],
            unique=True,
            sqlite_where=sa.text(_ONE_ISSUED),
            postgresql_where=sa.text(_ONE_ISSUED),
        )

    if "module_instances" not in existing_tables:
        op.create_table(
            "module_instances",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("version_id", sa.Integer(), sa.ForeignKey("document_versions.id", ondelete="CASCADE"), nullable=False),
            sa.Column("module_key", sa.String(64), nullable=False),
            sa.Column("payload", sa.JSON(), nullable=False),
            sa.Column("outcome", sa.String(64), nullable=True),
            sa.Column("assessor_notes", sa.Text(), nullable=False, server_default=""),
            sa.Column("completed", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint("version_id", "module_key", name="uq_module_instance_key"),
        )

    if "actions" not in existing_tables:
        op.create_table(
            "actions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("version_id", sa.Integer(), sa.ForeignKey("document_versions.id", ondelete="CASCADE"), nullable=False),
            sa.Column("module_key", sa.String(64), nullable=True),
            sa.Column("recommended_action", sa.Text(), nullable=False),
            sa.Column("status", sa.String(32), nullable=False, server_default="open"),
            sa.Column("priority_band", sa.String(16), nullable=True),
            sa.Column("timescale", sa.String(64), nullable=True),
            sa.Column("target_date", sa.Date(), nullable=True),
            sa.Column("owner_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("reference_number", sa.String(16), nullable=True),
            sa.Column("first_raised_in_version", sa.Integer(), nullable=True),
            sa.Column("origin_action_id", sa.Integer(), sa.ForeignKey("actions.id", ondelete="SET NULL"), nullable=True),
            sa.Column(
                "carried_from_version_id",
                sa.Integer(),
                sa.ForeignKey("document_versions.id", ondelete="SET NULL"),
                nullable=True,
            ),
            sa.Column("closed_at", sa.DateTime(), nullable=True),
            sa.Column("closed_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("closure_note", sa.Text(), nullable=True),
            sa.Column("deleted_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("idx_actions_version_status", "actions", ["version_id", "status"])

    if "evidence_files" not in existing_tables:
        op.create_table(
            "evidence_files",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("base_document_id", sa.String(36), nullable=False),
            sa.Column("organisation_id", sa.Integer(), sa.ForeignKey("organisations.id", ondelete="RESTRICT"), nullable=False),
            sa.Column("storage_key", sa.String(512), nullable=False),
            sa.Column("filename", sa.String(255), nullable=False),
            sa.Column("content_type", sa.String(128), nullable=False, server_default="application/octet-stream"),
            sa.Column("sha256", sa.String(64), nullable=False),
            sa.Column("size_bytes", sa.Integer(), nullable=False),
            sa.Column("taken_at", sa.DateTime(), nullable=True),
            sa.Column("uploaded_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("uploaded_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        )
        op.create_index("ix_evidence_files_base_document_id", "evidence_files", ["base_document_id"])

    if "evidence_links" not in existing_tables:
        op.create_table(
            "evidence_links",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("version_id", sa.Integer(), sa.ForeignKey("document_versions.id", ondelete="CASCADE"), nullable=False),
            sa.Column("evidence_id", sa.Integer(), sa.ForeignKey("evidence_files.id", ondelete="RESTRICT"), nullable=False),
            sa.Column("action_id", sa.Integer(), sa.ForeignKey("actions.id", ondelete="SET NULL"), nullable=True),
            sa.Column("module_key", sa.String(64), nullable=True),
            sa.Column("caption", sa.String(512), nullable=True),
            sa.Column("deleted_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint("version_id", "evidence_id", name="uq_evidence_link_version_file"),
        )

    if "change_summaries" not in existing_tables:
        op.create_table(
            "change_summaries",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column(
                "version_id",
                sa.Integer(),
                sa.ForeignKey("document_versions.id", ondelete="CASCADE"),
                nullable=False,
                unique=True,
            ),
            sa.Column(
                "previous_version_id",
                sa.Integer(),
                sa.ForeignKey("document_versions.id", ondelete="SET NULL"),
                nullable=True,
            ),
            sa.Column("version_number", sa.Integer(), nullable=False),
            sa.Column("new_actions_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("closed_actions_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("outstanding_actions_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("details_json", sa.JSON(), nullable=False),
            sa.Column("summary_text", sa.Text(), nullable=True),
            sa.Column("has_material_changes", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("generated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("generated_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        )

    if "access_links" not in existing_tables:
        op.create_table(
            "access_links",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("token", sa.String(64), nullable=False, unique=True),
            sa.Column("base_document_id", sa.String(36), nullable=False),
            sa.Column("organisation_id", sa.Integer(), sa.ForeignKey("organisations.id", ondelete="RESTRICT"), nullable=False),
            sa.Column("label", sa.String(255), nullable=True),
            sa.Column("expires_at", sa.DateTime(), nullable=True),
            sa.Column("revoked", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("revoked_at", sa.DateTime(), nullable=True),
            sa.Column("revoked_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("access_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_accessed_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("created_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        )
        op.create_index("idx_access_links_base_document", "access_links", ["base_document_id"])

    if "access_log_entries" not in existing_tables:
        op.create_table(
            "access_log_entries",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("link_id", sa.Integer(), sa.ForeignKey("access_links.id", ondelete="CASCADE"), nullable=True),
            sa.Column("base_document_id", sa.String(36), nullable=True),
            sa.Column("version_id", sa.Integer(), sa.ForeignKey("document_versions.id", ondelete="SET NULL"), nullable=True),
            sa.Column("granted", sa.Boolean(), nullable=False),
            sa.Column("reason", sa.String(64), nullable=True),
            sa.Column("resource", sa.String(32), nullable=False, server_default="document"),
            sa.Column("client_ip", sa.String(64), nullable=True),
            sa.Column("user_agent", sa.Text(), nullable=True),
            sa.Column("accessed_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )


def downgrade() -> None:
    """Drop all tables (reverse dependency order)."""
    op.drop_table("access_log_entries")
    op.drop_index("idx_access_links_base_document", table_name="access_links")
    op.drop_table("access_links")
    op.drop_table("change_summaries")
    op.drop_table("evidence_links")
    op.drop_index("ix_evidence_files_base_document_id", table_name="evidence_files")
    op.drop_table("evidence_files")
    op.drop_index("idx_actions_version_status", table_name="actions")
    op.drop_table("actions")
    op.drop_table("module_instances")
    op.drop_index("uq_document_versions_one_issued", table_name="document_versions")
    op.drop_index("uq_document_versions_one_draft", table_name="document_versions")
    op.drop_index("idx_document_versions_org", table_name="document_versions")
    op.drop_index("ix_document_versions_base_document_id", table_name="document_versions")
    op.drop_table("document_versions")
    op.drop_table("audit_events")
    op.drop_table("role_permissions")
    op.drop_table("user_roles")
    op.drop_table("permissions")
    op.drop_table("roles")
    op.drop_table("users")
    op.drop_table("organisations")
