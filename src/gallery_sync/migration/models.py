"""
SQLAlchemy models for the local content store.

This module defines the schema for materialized case entities, their
metadata, categorization labels, image attachments, persistent settings,
the TTL cache, the sync-log and case-map tables, and the migration lease.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class CaseEntity(Base):
    """
    Local materialization of one remote case.

    The remote case id lives in EntityMeta under ``case_id`` so that
    entities created by import or by hand can exist without one.
    """

    __tablename__ = "case_entities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")
    excerpt: Mapped[str] = mapped_column(Text, nullable=False, default="")
    slug: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="publish",
        index=True,
        comment="Publication status: publish, draft, private",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('publish', 'draft', 'private')",
            name="ck_case_entities_status",
        ),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "body": self.body,
            "excerpt": self.excerpt,
            "slug": self.slug,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<CaseEntity(id={self.id}, slug='{self.slug}', status='{self.status}')>"


class EntityMeta(Base):
    """Key/value metadata on a case entity. Values are stored as text."""

    __tablename__ = "entity_meta"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("case_entities.id", ondelete="CASCADE"), nullable=False, index=True
    )
    meta_key: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    meta_value: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("entity_id", "meta_key", name="uq_entity_meta_key"),
        Index("idx_entity_meta_key_value", "meta_key", "meta_value"),
    )


class Label(Base):
    """
    Categorization label in a taxonomy (``category`` or ``procedure``).

    ``parent_id`` is a plain column rather than a foreign key so that an
    unresolved parent can be detected by the validator instead of being
    rejected by the database.
    """

    __tablename__ = "labels"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    taxonomy: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    slug: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    parent_id: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (Index("idx_labels_taxonomy_slug", "taxonomy", "slug"),)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "taxonomy": self.taxonomy,
            "name": self.name,
            "slug": self.slug,
            "description": self.description,
            "parent": self.parent_id,
        }

    def __repr__(self) -> str:
        return f"<Label(id={self.id}, taxonomy='{self.taxonomy}', slug='{self.slug}')>"


class LabelMeta(Base):
    """Key/value metadata on a label."""

    __tablename__ = "label_meta"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    label_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("labels.id", ondelete="CASCADE"), nullable=False, index=True
    )
    meta_key: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    meta_value: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (UniqueConstraint("label_id", "meta_key", name="uq_label_meta_key"),)


class EntityLabel(Base):
    """Assignment of a label to a case entity."""

    __tablename__ = "entity_labels"

    entity_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("case_entities.id", ondelete="CASCADE"), primary_key=True
    )
    label_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("labels.id", ondelete="CASCADE"), primary_key=True, index=True
    )


class Attachment(Base):
    """
    An image file on durable storage.

    ``entity_id`` is 0 for detached attachments. ``source_url`` is the
    remote location the file was downloaded from and is used to avoid
    duplicate attachments when a case is processed again.
    """

    __tablename__ = "attachments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_id: Mapped[int] = mapped_column(Integer, nullable=False, default=0, index=True)
    source_url: Mapped[str | None] = mapped_column(String(1024), nullable=True, index=True)
    file_path: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "entity_id": self.entity_id,
            "source_url": self.source_url,
            "file_path": self.file_path,
        }


class Setting(Base):
    """Persistent setting (JSON value)."""

    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[Any] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now(), onupdate=func.now()
    )


class CacheEntry(Base):
    """TTL-cached value."""

    __tablename__ = "cache_entries"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[Any] = mapped_column(JSON, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)


class SyncLog(Base):
    """One row per sync stage run."""

    __tablename__ = "sync_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sync_type: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    sync_status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    sync_source: Mapped[str] = mapped_column(String(20), nullable=False, default="manual")
    items_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_messages: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now(), index=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "sync_type IN ('full', 'partial', 'single', 'stage_1', 'stage_2', 'stage_3')",
            name="ck_sync_log_type",
        ),
        CheckConstraint(
            "sync_status IN ('started', 'completed', 'failed')",
            name="ck_sync_log_status",
        ),
        CheckConstraint(
            "sync_source IN ('manual', 'automatic', 'cron', 'rest_api')",
            name="ck_sync_log_source",
        ),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sync_type": self.sync_type,
            "sync_status": self.sync_status,
            "sync_source": self.sync_source,
            "items_processed": self.items_processed,
            "items_failed": self.items_failed,
            "error_messages": self.error_messages,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class CaseMap(Base):
    """
    Maps remote case ids to local entity ids.

    ``entity_id`` carries no foreign key so orphaned rows survive entity
    deletion and can be reported by the validator.
    """

    __tablename__ = "case_map"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    api_case_id: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True, index=True)
    entity_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    procedure_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    synced_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now(), onupdate=func.now()
    )


class MigrationLease(Base):
    """
    Mutual-exclusion lease for mode migrations.

    At most one row exists per lease name; acquiring it is a single insert
    (or a conditional update of an expired row).
    """

    __tablename__ = "migration_leases"

    name: Mapped[str] = mapped_column(String(100), primary_key=True)
    owner: Mapped[str] = mapped_column(String(255), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    def __repr__(self) -> str:
        return f"<MigrationLease(name='{self.name}', owner='{self.owner}')>"


# Tables dropped when local-mode data is cleaned up and recreated on demand
SYNC_TABLES = [SyncLog.__table__, CaseMap.__table__]
