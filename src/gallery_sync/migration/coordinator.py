"""Migration coordinator for switching between API and local modes.

This module provides the coordinator that runs a mode migration end to end:
option validation → preconditions → backup → pre-flight checks → body →
status, with rollback to the last backup on demand.
"""

import os
from pathlib import Path
from typing import Any

import psutil
from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, model_validator
from pydantic import ValidationError as PydanticValidationError

from gallery_sync.client.exceptions import (
    GallerySyncError,
    MigrationError,
    PreconditionError,
    ValidationError,
)
from gallery_sync.client.gallery_client import GalleryClient
from gallery_sync.config import SyncConfig
from gallery_sync.migration.artifacts import ARTIFACT_KINDS, ArtifactStore
from gallery_sync.migration.backup import BackupManager
from gallery_sync.migration.database import utcnow
from gallery_sync.migration.exporter import DataExporter
from gallery_sync.migration.importer import DataImporter
from gallery_sync.migration.pipeline import SyncPipeline
from gallery_sync.migration.state import (
    MIGRATION_TO_API,
    MIGRATION_TO_LOCAL,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_RUNNING,
    MigrationState,
)
from gallery_sync.migration.store import ContentStore
from gallery_sync.migration.validator import MODE_API, MODE_LOCAL, MODE_SETTING, DataValidator
from gallery_sync.reporting.progress import ProgressTracker
from gallery_sync.utils.logging import get_logger, log_error

logger = get_logger(__name__)

PRESERVED_API_SETTINGS = "preserved_api_settings"
PRESERVED_LOCAL_SETTINGS = "preserved_local_settings"
API_CACHE_PREFIX = "gallery_api_"

ARCHIVED_META = "_migration_archived"
HIDDEN_META = "_hidden_for_api_mode"


class ToLocalOptions(BaseModel):
    """Options for migrating to local storage."""

    model_config = ConfigDict(extra="ignore")

    preserve_settings: StrictBool = True
    import_images: StrictBool = True
    cleanup_after: StrictBool = False
    batch_size: StrictInt = Field(default=20, ge=1, le=1000)


class ToApiOptions(BaseModel):
    """Options for migrating back to API mode."""

    model_config = ConfigDict(extra="ignore")

    preserve_data: StrictBool = True
    archive_posts: StrictBool = False
    keep_images: StrictBool = True

    @model_validator(mode="after")
    def validate_conflicts(self) -> "ToApiOptions":
        if self.archive_posts and not self.preserve_data:
            raise ValueError("archive_posts cannot be true when preserve_data is false")
        return self


def parse_options(model: type[BaseModel], options: dict[str, Any] | None) -> BaseModel:
    """Merge options with defaults and validate them.

    Raises:
        ValidationError: Listing every invalid option
    """
    try:
        return model.model_validate(options or {})
    except PydanticValidationError as e:
        errors = [
            f"{'.'.join(str(p) for p in err['loc']) or 'options'}: {err['msg']}"
            for err in e.errors()
        ]
        raise ValidationError("; ".join(errors)) from e


class MigrationCoordinator:
    """Coordinates mode migrations.

    Public entry points never raise: failures are logged with context,
    recorded in the migration status, and reported as False (or an error
    result). ``last_error`` holds the most recent failure message.
    """

    def __init__(
        self,
        config: SyncConfig,
        store: ContentStore,
        client: GalleryClient | None = None,
        artifacts: ArtifactStore | None = None,
        progress: ProgressTracker | None = None,
        pipeline: SyncPipeline | None = None,
    ):
        """Initialize migration coordinator.

        Args:
            config: Application configuration
            store: Local content store
            client: Remote gallery client (required for to-local migrations)
            artifacts: Artifact store (defaults to one in storage.sync_dir)
            progress: Progress tracker (defaults to one over the store)
            pipeline: Sync pipeline (built from the above when omitted)
        """
        self.config = config
        self.store = store
        self.client = client
        self.artifacts = artifacts or ArtifactStore(
            config.storage.sync_dir, store, config.storage.artifact_max_age_days
        )
        self.progress = progress or ProgressTracker(store, ttl=config.sync.progress_ttl)
        self.pipeline = pipeline or SyncPipeline(
            config, store, self.artifacts, self.progress, client
        )
        self.state = MigrationState(store, lease_seconds=config.migration.lease_seconds)
        self.backup = BackupManager(store)
        self.validator = DataValidator(store, config.gallery, client)
        self.last_error: str | None = None

    # ------------------------------------------------------------------
    # Migrations
    # ------------------------------------------------------------------

    async def migrate_to_local(self, options: dict[str, Any] | None = None) -> bool:
        """Switch to locally stored content by running a full sync.

        Args:
            options: preserve_settings, import_images, cleanup_after, batch_size

        Returns:
            True on success
        """
        return await self._run(MIGRATION_TO_LOCAL, ToLocalOptions, options)

    async def migrate_to_api(self, options: dict[str, Any] | None = None) -> bool:
        """Switch back to API-driven mode, archiving, hiding or removing local data.

        Args:
            options: preserve_data, archive_posts, keep_images

        Returns:
            True on success
        """
        return await self._run(MIGRATION_TO_API, ToApiOptions, options)

    async def _run(
        self,
        migration_type: str,
        model: type[BaseModel],
        raw_options: dict[str, Any] | None,
    ) -> bool:
        operation = f"migrate_{migration_type.replace('-', '_')}"
        self.last_error = None

        try:
            options = parse_options(model, raw_options)
            self.check_preconditions()
        except GallerySyncError as e:
            self.last_error = str(e)
            log_error(logger, e, context=operation, options=raw_options)
            return False

        try:
            self.state.set_status(migration_type, STATUS_RUNNING)
            self.backup.create_backup()

            target = MODE_LOCAL if migration_type == MIGRATION_TO_LOCAL else MODE_API
            await self.preflight(target)

            if migration_type == MIGRATION_TO_LOCAL:
                await self._migrate_to_local(options)
            else:
                await self._migrate_to_api(options)

            self.state.set_status(migration_type, STATUS_COMPLETED, "Migration completed")
            return True

        except Exception as e:
            self.last_error = str(e)
            self.state.set_status(migration_type, STATUS_FAILED, str(e))
            log_error(
                logger,
                e,
                context=operation,
                migration_type=migration_type,
                options=options.model_dump(),
            )
            return False

        finally:
            self.state.release_lease()

    async def _migrate_to_local(self, options: ToLocalOptions) -> None:
        self.store.ensure_sync_tables()

        result = await self._pipeline_for(options).run_full_sync()
        if result["status"] != "completed":
            raise MigrationError("Full sync was stopped before completion")

        validation = await self.validator.validate_migration(MODE_LOCAL)
        if not validation["valid"]:
            raise MigrationError("Data validation failed: " + ", ".join(validation["errors"]))

        if options.preserve_settings:
            self._preserve_api_settings()
        self.store.set_setting(MODE_SETTING, MODE_LOCAL)

        if options.cleanup_after:
            cleared = self.store.delete_cached_prefix(API_CACHE_PREFIX)
            logger.info("api_caches_cleared", entries=cleared)

    def _pipeline_for(self, options: ToLocalOptions) -> SyncPipeline:
        tuning = self.config.sync.model_copy(
            update={"batch_size": options.batch_size, "download_images": options.import_images}
        )
        config = self.config.model_copy(update={"sync": tuning})
        return SyncPipeline(config, self.store, self.artifacts, self.progress, self.client)

    async def _migrate_to_api(self, options: ToApiOptions) -> None:
        if options.preserve_data:
            if options.archive_posts:
                self._archive_entities()
            else:
                self._hide_entities()
        else:
            self._cleanup_local_data(options.keep_images)

        for kind in ARTIFACT_KINDS:
            self.artifacts.delete(kind)

        self._preserve_local_settings()
        self.store.set_setting(MODE_SETTING, MODE_API)

        validation = await self.validator.validate_migration(MODE_API)
        if not validation["valid"]:
            raise MigrationError("Data validation failed: " + ", ".join(validation["errors"]))

    def _archive_entities(self) -> None:
        archived_at = utcnow().isoformat()
        with self.store.bulk_writes():
            entity_ids = self.store.entity_ids(status="publish")
            for entity_id in entity_ids:
                self.store.set_entity_status(entity_id, "draft")
                self.store.set_meta(entity_id, ARCHIVED_META, archived_at)
        logger.info("entities_archived", count=len(entity_ids))

    def _hide_entities(self) -> None:
        with self.store.bulk_writes():
            entity_ids = self.store.entity_ids()
            for entity_id in entity_ids:
                self.store.set_meta(entity_id, HIDDEN_META, "1")
        logger.info("entities_hidden", count=len(entity_ids))

    def _cleanup_local_data(self, keep_images: bool) -> None:
        stats = {"entities": 0, "labels": 0, "attachments": 0}
        with self.store.bulk_writes():
            for entity_id in self.store.entity_ids():
                for attachment in self.store.list_attachments(entity_id):
                    if keep_images:
                        self.store.detach_attachment(attachment["id"])
                    else:
                        self.store.delete_attachment(attachment["id"], delete_file=True)
                    stats["attachments"] += 1
                self.store.delete_entity(entity_id)
                stats["entities"] += 1

            for label in self.store.list_labels():
                if self.store.label_usage(label["id"]) == 0:
                    self.store.delete_label(label["id"])
                    stats["labels"] += 1

        self.store.drop_sync_tables()
        logger.info("local_data_cleaned", keep_images=keep_images, **stats)

    def _preserve_api_settings(self) -> None:
        gallery = self.config.gallery
        self.store.set_setting(
            PRESERVED_API_SETTINGS,
            {
                "api_url": self.store.get_setting("api_url", gallery.url),
                "api_token": self.store.get_setting("api_token", gallery.token),
                "property_id": self.store.get_setting("property_id", gallery.property_id),
                "cache_duration": self.store.get_setting("cache_duration", 300),
            },
        )

    def _preserve_local_settings(self) -> None:
        self.store.set_setting(
            PRESERVED_LOCAL_SETTINGS,
            {
                "mode_settings": self.store.get_setting("mode_settings"),
                "sync_dir": self.config.storage.sync_dir,
                "upload_dir": self.config.storage.upload_dir,
            },
        )

    # ------------------------------------------------------------------
    # Preconditions and pre-flight
    # ------------------------------------------------------------------

    def available_memory_mb(self) -> int:
        return psutil.virtual_memory().available // (1024 * 1024)

    def check_preconditions(self) -> None:
        """Check resource budgets, then take the migration lease.

        Raises:
            PreconditionError: If memory or time budgets are too small, or
                another migration holds the lease
        """
        guards = self.config.migration
        errors = []

        if self.available_memory_mb() < guards.min_memory_mb:
            errors.append(f"Insufficient memory. Minimum {guards.min_memory_mb}MB required.")

        limit = guards.execution_time_limit
        if limit and limit < guards.min_execution_seconds:
            errors.append(
                f"Execution time limit should be at least {guards.min_execution_seconds} seconds"
            )

        if errors:
            raise PreconditionError("; ".join(errors))

        if not self.state.acquire_lease():
            raise PreconditionError("Another migration is currently in progress")

    async def preflight_checks(self, target_mode: str) -> dict[str, bool]:
        """Run every pre-flight check for a target mode.

        Returns:
            Check name → passed
        """
        storage = self.config.storage
        checks = {
            "database": self._check_database(),
            "file_permissions": all(
                self._check_writable(path) for path in (storage.upload_dir, storage.sync_dir)
            ),
        }
        if target_mode == MODE_LOCAL:
            checks["api_connectivity"] = await self._check_api()
            checks["storage_space"] = self._check_storage(storage.upload_dir, storage.min_free_bytes)
        return checks

    async def preflight(self, target_mode: str) -> None:
        """Raise on the first failed pre-flight check.

        Raises:
            PreconditionError: Naming the failed check
        """
        for check, passed in (await self.preflight_checks(target_mode)).items():
            if not passed:
                logger.error("preflight_check_failed", check=check, target_mode=target_mode)
                raise PreconditionError(f"Pre-flight check failed: {check}")

    def _check_database(self) -> bool:
        try:
            return self.store.ping()
        except Exception as e:
            logger.warning("database_ping_failed", error=str(e))
            return False

    @staticmethod
    def _check_writable(path: str) -> bool:
        directory = Path(path)
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError:
            return False
        return os.access(directory, os.W_OK)

    async def _check_api(self) -> bool:
        if self.client is None or not self.config.gallery.token:
            return False
        return await self.client.test_connection()

    @staticmethod
    def _check_storage(path: str, required_bytes: int) -> bool:
        try:
            return psutil.disk_usage(path).free >= required_bytes
        except OSError:
            return False

    # ------------------------------------------------------------------
    # Rollback, status, export/import
    # ------------------------------------------------------------------

    def rollback(self) -> bool:
        """Restore the last backup and reset the migration status.

        Returns:
            False when there is no backup or the restore failed
        """
        try:
            if not self.backup.restore():
                return False
            self.state.clear_status()
            return True
        except Exception as e:
            self.last_error = str(e)
            log_error(logger, e, context="rollback")
            return False

    def get_status(self) -> dict[str, Any]:
        status = self.state.get_status().to_dict()
        status["lease_holder"] = self.state.lease_holder()
        status["has_backup"] = self.backup.has_backup()
        return status

    def export_data(self) -> dict[str, Any]:
        return DataExporter(self.store).export_data()

    def import_data(self, document: Any) -> dict[str, Any]:
        """Validate and import an export document.

        Returns:
            {"imported": bool, "counts": {...}, "errors": [...]}
        """
        try:
            counts = DataImporter(self.store).import_data(document)
        except Exception as e:
            self.last_error = str(e)
            log_error(logger, e, context="import_data")
            return {"imported": False, "counts": {}, "errors": [str(e)]}
        return {"imported": True, "counts": counts, "errors": []}
