from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.riskdocs.models import Base


class AccessLink(Base):
    """
    External (client) access to a document chain.
    Bound to base_document_id, never to a version id.
    """

    __tablename__ = "access_links"
    __table_args__ = (
        Index("idx_access_links_base_document", "base_document_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    token: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    base_document_id: Mapped[str] = mapped_column(String(36), nullable=False)
    organisation_id: Mapped[int] = mapped_column(ForeignKey("organisations.id", ondelete="RESTRICT"), nullable=False)
    label: Mapped[str | None] = mapped_column(String(255), nullable=True)

    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    revoked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    revoked_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    access_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_accessed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    log_entries: Mapped[list["AccessLogEntry"]] = relationship(
        "AccessLogEntry",
        back_populates="link",
        cascade="all, delete-orphan",
        order_by="AccessLogEntry.id",
    )


class AccessLogEntry(Base):
    """One external resolution attempt (granted or denied)."""

    __tablename__ = "access_log_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    link_id: Mapped[int | None] = mapped_column(ForeignKey("access_links.id", ondelete="CASCADE"), nullable=True)
    base_document_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    version_id: Mapped[int | None] = mapped_column(ForeignKey("document_versions.id", ondelete="SET NULL"), nullable=True)

    granted: Mapped[bool] = mapped_column(Boolean, nullable=False)
    reason: Mapped[str | None] = mapped_column(String(64), nullable=True)  # e.g. "revoked", "expired"
    resource: Mapped[str] = mapped_column(String(32), nullable=False, default="document")  # document | artifact
    client_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    accessed_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    link: Mapped[AccessLink | None] = relationship("AccessLink", back_populates="log_entries")
