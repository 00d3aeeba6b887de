"""
Local content store.

This module provides the ContentStore class: create/update/query/delete for
case entities, entity and label metadata, categorization labels and their
assignments, image attachments, persistent settings, a TTL cache, and the
sync-log and case-map tables.

Every method opens its own session unless the call happens inside
``transaction()`` or ``bulk_writes()``, in which case the surrounding
session is reused so the whole block commits or rolls back together.
"""

import json
from collections.abc import Generator, Iterable
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path
from typing import Any

from sqlalchemy import func, select, text
from sqlalchemy.orm import Session

from gallery_sync.client.exceptions import StateError
from gallery_sync.config import StateConfig
from gallery_sync.migration.database import (
    bulk_write_session,
    get_engine,
    get_session,
    has_table,
    init_database,
    utcnow,
)
from gallery_sync.migration.models import (
    SYNC_TABLES,
    Attachment,
    CacheEntry,
    CaseEntity,
    CaseMap,
    EntityLabel,
    EntityMeta,
    Label,
    LabelMeta,
    Setting,
    SyncLog,
)
from gallery_sync.utils.logging import get_logger

logger = get_logger(__name__)

TAXONOMY_CATEGORY = "category"
TAXONOMY_PROCEDURE = "procedure"
TAXONOMIES = (TAXONOMY_CATEGORY, TAXONOMY_PROCEDURE)


def encode_meta(value: Any) -> str | None:
    """Encode a metadata value for storage; strings are stored as-is."""
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value)


class ContentStore:
    """
    Relational content-entity store backed by SQLAlchemy.

    Usage:
        store = ContentStore(config.state)
        with store.transaction():
            entity_id = store.create_entity(title="Case", slug="case")
            store.set_meta(entity_id, "case_id", 42)
    """

    def __init__(self, config: StateConfig):
        """
        Initialize the content store and create missing tables.

        Args:
            config: State database configuration

        Raises:
            ConfigurationError: If the database cannot be initialized
        """
        self.config = config
        self.database_url = config.database_url
        self._active_session: Session | None = None
        self._label_cache: dict[tuple[str, str], int] = {}

        init_database(
            self.database_url,
            pool_size=config.db_pool_size,
            max_overflow=config.db_max_overflow,
            pool_timeout=config.db_pool_timeout,
            pool_recycle=config.db_pool_recycle,
        )
        logger.info("content_store_initialized", database_path=config.db_path)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    @contextmanager
    def _session(self) -> Generator[Session, None, None]:
        if self._active_session is not None:
            yield self._active_session
            return
        with get_session(self.database_url) as session:
            yield session

    @contextmanager
    def transaction(self) -> Generator["ContentStore", None, None]:
        """Run a block of store calls in one all-or-nothing session."""
        if self._active_session is not None:
            yield self
            return
        with get_session(self.database_url) as session:
            self._active_session = session
            try:
                yield self
            finally:
                self._active_session = None

    @contextmanager
    def bulk_writes(self) -> Generator["ContentStore", None, None]:
        """Run a block of writes in one session with integrity checks relaxed.

        Checks are restored when the block exits, whether it succeeded or not.
        """
        if self._active_session is not None:
            yield self
            return
        with bulk_write_session(self.database_url) as session:
            self._active_session = session
            try:
                yield self
            finally:
                self._active_session = None

    def flush_read_cache(self) -> None:
        """Drop cached label lookups and identity-map state."""
        self._label_cache.clear()
        if self._active_session is not None:
            self._active_session.expunge_all()

    def ping(self) -> bool:
        """Trivial round-trip query against the store."""
        with self._session() as session:
            return session.execute(text("SELECT 1")).scalar() == 1

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get_setting(self, key: str, default: Any = None) -> Any:
        with self._session() as session:
            setting = session.get(Setting, key)
            return setting.value if setting is not None else default

    def has_setting(self, key: str) -> bool:
        with self._session() as session:
            return session.get(Setting, key) is not None

    def set_setting(self, key: str, value: Any) -> None:
        with self._session() as session:
            setting = session.get(Setting, key)
            if setting is None:
                session.add(Setting(key=key, value=value))
            else:
                setting.value = value
            session.flush()

    def delete_setting(self, key: str) -> bool:
        with self._session() as session:
            deleted = session.query(Setting).filter_by(key=key).delete()
            return deleted > 0

    def get_settings(self, keys: Iterable[str]) -> dict[str, Any]:
        """Return the given settings; missing keys map to None."""
        return {key: self.get_setting(key) for key in keys}

    # ------------------------------------------------------------------
    # TTL cache
    # ------------------------------------------------------------------

    def get_cached(self, key: str, default: Any = None) -> Any:
        with self._session() as session:
            entry = session.get(CacheEntry, key)
            if entry is None:
                return default
            if entry.expires_at is not None and entry.expires_at <= utcnow():
                session.delete(entry)
                return default
            return entry.value

    def set_cached(self, key: str, value: Any, ttl: int | None = None) -> None:
        expires_at = utcnow() + timedelta(seconds=ttl) if ttl else None
        with self._session() as session:
            entry = session.get(CacheEntry, key)
            if entry is None:
                session.add(CacheEntry(key=key, value=value, expires_at=expires_at))
            else:
                entry.value = value
                entry.expires_at = expires_at
            session.flush()

    def delete_cached(self, key: str) -> None:
        with self._session() as session:
            session.query(CacheEntry).filter_by(key=key).delete()

    def delete_cached_prefix(self, prefix: str) -> int:
        with self._session() as session:
            return (
                session.query(CacheEntry)
                .filter(CacheEntry.key.startswith(prefix, autoescape=True))
                .delete(synchronize_session=False)
            )

    # ------------------------------------------------------------------
    # Case entities
    # ------------------------------------------------------------------

    def create_entity(
        self,
        title: str,
        slug: str,
        status: str = "publish",
        body: str = "",
        excerpt: str = "",
    ) -> int:
        with self._session() as session:
            entity = CaseEntity(title=title, slug=slug, status=status, body=body, excerpt=excerpt)
            session.add(entity)
            session.flush()
            return entity.id

    def update_entity(self, entity_id: int, **fields: Any) -> bool:
        allowed = {"title", "slug", "status", "body", "excerpt"}
        unknown = set(fields) - allowed
        if unknown:
            raise StateError(f"Unknown entity fields: {', '.join(sorted(unknown))}")
        with self._session() as session:
            entity = session.get(CaseEntity, entity_id)
            if entity is None:
                return False
            for name, value in fields.items():
                setattr(entity, name, value)
            session.flush()
            return True

    def set_entity_status(self, entity_id: int, status: str) -> bool:
        return self.update_entity(entity_id, status=status)

    def get_entity(self, entity_id: int) -> dict[str, Any] | None:
        with self._session() as session:
            entity = session.get(CaseEntity, entity_id)
            return entity.to_dict() if entity is not None else None

    def list_entities(self, status: str | None = None) -> list[dict[str, Any]]:
        with self._session() as session:
            query = session.query(CaseEntity)
            if status is not None:
                query = query.filter_by(status=status)
            return [entity.to_dict() for entity in query.order_by(CaseEntity.id)]

    def entity_ids(self, status: str | None = None) -> list[int]:
        with self._session() as session:
            query = session.query(CaseEntity.id)
            if status is not None:
                query = query.filter_by(status=status)
            return [row.id for row in query.order_by(CaseEntity.id)]

    def count_entities(self, status: str | None = None) -> int:
        with self._session() as session:
            query = session.query(func.count(CaseEntity.id))
            if status is not None:
                query = query.filter(CaseEntity.status == status)
            return query.scalar() or 0

    def find_entity_by_meta(self, key: str, value: Any) -> int | None:
        with self._session() as session:
            row = (
                session.query(EntityMeta.entity_id)
                .filter_by(meta_key=key, meta_value=encode_meta(value))
                .order_by(EntityMeta.entity_id)
                .first()
            )
            return row.entity_id if row else None

    def delete_entity(self, entity_id: int) -> bool:
        """Delete an entity together with its metadata and label assignments."""
        with self._session() as session:
            session.query(EntityMeta).filter_by(entity_id=entity_id).delete()
            session.query(EntityLabel).filter_by(entity_id=entity_id).delete()
            deleted = session.query(CaseEntity).filter_by(id=entity_id).delete()
            return deleted > 0

    # ------------------------------------------------------------------
    # Entity metadata
    # ------------------------------------------------------------------

    def get_meta(self, entity_id: int, key: str, default: str | None = None) -> str | None:
        with self._session() as session:
            row = session.query(EntityMeta).filter_by(entity_id=entity_id, meta_key=key).first()
            return row.meta_value if row is not None else default

    def get_json_meta(self, entity_id: int, key: str) -> Any:
        """Parse a JSON metadata value; None when missing or unparseable."""
        raw = self.get_meta(entity_id, key)
        if raw in (None, ""):
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            return None

    def set_meta(self, entity_id: int, key: str, value: Any) -> None:
        encoded = encode_meta(value)
        with self._session() as session:
            row = session.query(EntityMeta).filter_by(entity_id=entity_id, meta_key=key).first()
            if row is None:
                session.add(EntityMeta(entity_id=entity_id, meta_key=key, meta_value=encoded))
            else:
                row.meta_value = encoded
            session.flush()

    def delete_meta(self, entity_id: int, key: str) -> bool:
        with self._session() as session:
            return session.query(EntityMeta).filter_by(entity_id=entity_id, meta_key=key).delete() > 0

    def get_all_meta(self, entity_id: int) -> dict[str, str | None]:
        with self._session() as session:
            rows = session.query(EntityMeta).filter_by(entity_id=entity_id).order_by(EntityMeta.id)
            return {row.meta_key: row.meta_value for row in rows}

    def meta_values(self, key: str) -> list[tuple[int, str | None]]:
        """All (entity_id, value) pairs stored under a metadata key."""
        with self._session() as session:
            rows = session.query(EntityMeta.entity_id, EntityMeta.meta_value).filter_by(meta_key=key)
            return [(row.entity_id, row.meta_value) for row in rows.order_by(EntityMeta.entity_id)]

    def entities_missing_meta(self, key: str) -> list[int]:
        """Entities with no value (or an empty value) under a metadata key."""
        with self._session() as session:
            present = (
                select(EntityMeta.entity_id)
                .where(EntityMeta.meta_key == key)
                .where(EntityMeta.meta_value.isnot(None))
                .where(EntityMeta.meta_value != "")
            )
            rows = (
                session.query(CaseEntity.id)
                .filter(CaseEntity.id.notin_(present))
                .order_by(CaseEntity.id)
            )
            return [row.id for row in rows]

    # ------------------------------------------------------------------
    # Labels
    # ------------------------------------------------------------------

    def find_label(self, taxonomy: str, slug: str) -> dict[str, Any] | None:
        cache_key = (taxonomy, slug)
        with self._session() as session:
            if cache_key in self._label_cache:
                label = session.get(Label, self._label_cache[cache_key])
                if label is not None:
                    return label.to_dict()
                del self._label_cache[cache_key]
            label = (
                session.query(Label)
                .filter_by(taxonomy=taxonomy, slug=slug)
                .order_by(Label.id)
                .first()
            )
            if label is None:
                return None
            self._label_cache[cache_key] = label.id
            return label.to_dict()

    def get_label(self, label_id: int) -> dict[str, Any] | None:
        with self._session() as session:
            label = session.get(Label, label_id)
            return label.to_dict() if label is not None else None

    def create_label(
        self,
        taxonomy: str,
        name: str,
        slug: str,
        description: str = "",
        parent_id: int = 0,
    ) -> int:
        with self._session() as session:
            label = Label(
                taxonomy=taxonomy,
                name=name,
                slug=slug,
                description=description,
                parent_id=parent_id or 0,
            )
            session.add(label)
            session.flush()
            self._label_cache[(taxonomy, slug)] = label.id
            return label.id

    def update_label(self, label_id: int, **fields: Any) -> bool:
        allowed = {"name", "slug", "description", "parent_id"}
        unknown = set(fields) - allowed
        if unknown:
            raise StateError(f"Unknown label fields: {', '.join(sorted(unknown))}")
        with self._session() as session:
            label = session.get(Label, label_id)
            if label is None:
                return False
            for name, value in fields.items():
                setattr(label, name, value)
            session.flush()
            return True

    def list_labels(self, taxonomy: str | None = None) -> list[dict[str, Any]]:
        with self._session() as session:
            query = session.query(Label)
            if taxonomy is not None:
                query = query.filter_by(taxonomy=taxonomy)
            return [label.to_dict() for label in query.order_by(Label.id)]

    def count_labels(self, taxonomy: str) -> int:
        with self._session() as session:
            return session.query(func.count(Label.id)).filter(Label.taxonomy == taxonomy).scalar() or 0

    def delete_label(self, label_id: int) -> bool:
        with self._session() as session:
            session.query(LabelMeta).filter_by(label_id=label_id).delete()
            session.query(EntityLabel).filter_by(label_id=label_id).delete()
            deleted = session.query(Label).filter_by(id=label_id).delete()
            self._label_cache = {k: v for k, v in self._label_cache.items() if v != label_id}
            return deleted > 0

    def label_usage(self, label_id: int) -> int:
        with self._session() as session:
            return (
                session.query(func.count(EntityLabel.entity_id))
                .filter(EntityLabel.label_id == label_id)
                .scalar()
                or 0
            )

    def set_label_meta(self, label_id: int, key: str, value: Any) -> None:
        encoded = encode_meta(value)
        with self._session() as session:
            row = session.query(LabelMeta).filter_by(label_id=label_id, meta_key=key).first()
            if row is None:
                session.add(LabelMeta(label_id=label_id, meta_key=key, meta_value=encoded))
            else:
                row.meta_value = encoded
            session.flush()

    def get_label_meta(self, label_id: int, key: str, default: str | None = None) -> str | None:
        with self._session() as session:
            row = session.query(LabelMeta).filter_by(label_id=label_id, meta_key=key).first()
            return row.meta_value if row is not None else default

    def get_all_label_meta(self, label_id: int) -> dict[str, str | None]:
        with self._session() as session:
            rows = session.query(LabelMeta).filter_by(label_id=label_id).order_by(LabelMeta.id)
            return {row.meta_key: row.meta_value for row in rows}

    def set_entity_labels(self, entity_id: int, taxonomy: str, label_ids: Iterable[int]) -> None:
        """Replace an entity's labels within one taxonomy."""
        wanted = list(dict.fromkeys(label_ids))
        with self._session() as session:
            existing = (
                session.query(EntityLabel)
                .join(Label, Label.id == EntityLabel.label_id)
                .filter(EntityLabel.entity_id == entity_id, Label.taxonomy == taxonomy)
                .all()
            )
            for assignment in existing:
                if assignment.label_id not in wanted:
                    session.delete(assignment)
            current = {assignment.label_id for assignment in existing}
            for label_id in wanted:
                if label_id not in current:
                    session.add(EntityLabel(entity_id=entity_id, label_id=label_id))
            session.flush()

    def get_entity_labels(self, entity_id: int, taxonomy: str | None = None) -> list[dict[str, Any]]:
        with self._session() as session:
            query = (
                session.query(Label)
                .join(EntityLabel, EntityLabel.label_id == Label.id)
                .filter(EntityLabel.entity_id == entity_id)
            )
            if taxonomy is not None:
                query = query.filter(Label.taxonomy == taxonomy)
            return [label.to_dict() for label in query.order_by(Label.id)]

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    def find_attachment_by_url(self, source_url: str) -> dict[str, Any] | None:
        with self._session() as session:
            attachment = (
                session.query(Attachment)
                .filter_by(source_url=source_url)
                .order_by(Attachment.id)
                .first()
            )
            return attachment.to_dict() if attachment is not None else None

    def create_attachment(
        self, entity_id: int, source_url: str | None, file_path: str | None
    ) -> int:
        with self._session() as session:
            attachment = Attachment(
                entity_id=entity_id or 0, source_url=source_url, file_path=file_path
            )
            session.add(attachment)
            session.flush()
            return attachment.id

    def update_attachment(self, attachment_id: int, **fields: Any) -> bool:
        with self._session() as session:
            attachment = session.get(Attachment, attachment_id)
            if attachment is None:
                return False
            for name, value in fields.items():
                setattr(attachment, name, value)
            session.flush()
            return True

    def get_attachment(self, attachment_id: int) -> dict[str, Any] | None:
        with self._session() as session:
            attachment = session.get(Attachment, attachment_id)
            return attachment.to_dict() if attachment is not None else None

    def list_attachments(self, entity_id: int | None = None) -> list[dict[str, Any]]:
        with self._session() as session:
            query = session.query(Attachment)
            if entity_id is not None:
                query = query.filter_by(entity_id=entity_id)
            return [attachment.to_dict() for attachment in query.order_by(Attachment.id)]

    def detach_attachment(self, attachment_id: int) -> bool:
        return self.update_attachment(attachment_id, entity_id=0)

    def delete_attachment(self, attachment_id: int, delete_file: bool = True) -> bool:
        with self._session() as session:
            attachment = session.get(Attachment, attachment_id)
            if attachment is None:
                return False
            if delete_file and attachment.file_path:
                Path(attachment.file_path).unlink(missing_ok=True)
            session.delete(attachment)
            session.flush()
            return True

    # ------------------------------------------------------------------
    # Sync log and case map
    # ------------------------------------------------------------------

    def ensure_sync_tables(self) -> None:
        """Create the sync-log and case-map tables if they are missing."""
        for table in SYNC_TABLES:
            table.create(get_engine(), checkfirst=True)

    def drop_sync_tables(self) -> None:
        for table in SYNC_TABLES:
            table.drop(get_engine(), checkfirst=True)
        logger.info("sync_tables_dropped")

    def has_sync_log_table(self) -> bool:
        return has_table(SyncLog.__tablename__)

    def has_case_map_table(self) -> bool:
        return has_table(CaseMap.__tablename__)

    def start_sync_log(self, sync_type: str, sync_source: str = "manual") -> int:
        with self._session() as session:
            row = SyncLog(
                sync_type=sync_type,
                sync_status="started",
                sync_source=sync_source,
                started_at=utcnow(),
            )
            session.add(row)
            session.flush()
            return row.id

    def finish_sync_log(
        self,
        log_id: int,
        status: str,
        items_processed: int = 0,
        items_failed: int = 0,
        errors: list[str] | None = None,
    ) -> None:
        with self._session() as session:
            row = session.get(SyncLog, log_id)
            if row is None:
                return
            row.sync_status = status
            row.items_processed = items_processed
            row.items_failed = items_failed
            row.error_messages = "\n".join(errors) if errors else None
            row.completed_at = utcnow()
            session.flush()

    def recent_sync_logs(self, limit: int = 100) -> list[dict[str, Any]]:
        if not self.has_sync_log_table():
            return []
        with self._session() as session:
            rows = session.query(SyncLog).order_by(SyncLog.id.desc()).limit(limit)
            return [row.to_dict() for row in rows]

    def prune_sync_logs(self, retention_days: int) -> int:
        """Delete sync-log rows started more than ``retention_days`` ago.

        Returns:
            Number of rows deleted
        """
        if not self.has_sync_log_table():
            return 0
        cutoff = utcnow() - timedelta(days=retention_days)
        with self._session() as session:
            deleted = session.query(SyncLog).filter(SyncLog.started_at < cutoff).delete()
        if deleted:
            logger.info("sync_logs_pruned", deleted=deleted, retention_days=retention_days)
        return deleted

    def sync_stats(self) -> dict[str, Any]:
        """Aggregate statistics over the sync log and case map."""
        stats: dict[str, Any] = {
            "total_syncs": 0,
            "successful_syncs": 0,
            "failed_syncs": 0,
            "total_mapped_cases": 0,
            "last_sync": None,
        }
        with self._session() as session:
            if self.has_sync_log_table():
                stats["total_syncs"] = session.query(func.count(SyncLog.id)).scalar() or 0
                stats["successful_syncs"] = (
                    session.query(func.count(SyncLog.id))
                    .filter(SyncLog.sync_status == "completed")
                    .scalar()
                    or 0
                )
                stats["failed_syncs"] = (
                    session.query(func.count(SyncLog.id))
                    .filter(SyncLog.sync_status == "failed")
                    .scalar()
                    or 0
                )
                last = session.query(func.max(SyncLog.completed_at)).scalar()
                stats["last_sync"] = last.isoformat() if last else None
            if self.has_case_map_table():
                stats["total_mapped_cases"] = session.query(func.count(CaseMap.id)).scalar() or 0
        return stats

    def map_case(self, api_case_id: int, entity_id: int, procedure_id: int | None = None) -> None:
        with self._session() as session:
            row = session.query(CaseMap).filter_by(api_case_id=api_case_id).first()
            if row is None:
                session.add(
                    CaseMap(
                        api_case_id=api_case_id,
                        entity_id=entity_id,
                        procedure_id=procedure_id,
                        synced_at=utcnow(),
                    )
                )
            else:
                row.entity_id = entity_id
                row.procedure_id = procedure_id
                row.synced_at = utcnow()
            session.flush()

    def orphaned_case_maps(self) -> list[dict[str, Any]]:
        """Case-map rows whose entity no longer exists."""
        with self._session() as session:
            existing = select(CaseEntity.id)
            rows = (
                session.query(CaseMap)
                .filter(CaseMap.entity_id.notin_(existing))
                .order_by(CaseMap.id)
            )
            return [{"api_case_id": row.api_case_id, "entity_id": row.entity_id} for row in rows]
