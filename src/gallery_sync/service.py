"""Operator-facing service surface.

Every operation returns a ``ServiceResponse`` envelope; failures are
reported in the envelope, never raised. ``error_code`` classifies a failure
so callers (the CLI included) can map it to their own conventions.
"""

import functools
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel

from gallery_sync.client.exceptions import (
    AuthenticationError,
    AuthorizationError,
    ConfigurationError,
    ConnectivityError,
    PreconditionError,
    StateError,
    ValidationError,
)
from gallery_sync.client.gallery_client import GalleryClient
from gallery_sync.config import SyncConfig
from gallery_sync.migration.artifacts import ArtifactStore
from gallery_sync.migration.coordinator import MigrationCoordinator
from gallery_sync.migration.pipeline import SyncPipeline
from gallery_sync.migration.state import MIGRATION_TO_API, MIGRATION_TO_LOCAL
from gallery_sync.migration.store import ContentStore
from gallery_sync.reporting.progress import ProgressTracker
from gallery_sync.utils.logging import get_logger, log_error

logger = get_logger(__name__)

# Most specific first
ERROR_CODES: list[tuple[type[Exception], str]] = [
    (ConfigurationError, "configuration"),
    (AuthenticationError, "authentication"),
    (AuthorizationError, "authentication"),
    (ConnectivityError, "connectivity"),
    (StateError, "state"),
    (PreconditionError, "precondition"),
    (ValidationError, "validation"),
]

DIRECTIONS = {
    MIGRATION_TO_LOCAL: MIGRATION_TO_LOCAL,
    "local": MIGRATION_TO_LOCAL,
    MIGRATION_TO_API: MIGRATION_TO_API,
    "api": MIGRATION_TO_API,
}


class ServiceResponse(BaseModel):
    """Envelope returned by every service operation."""

    success: bool
    data: Any = None
    message: str = ""
    error_code: str | None = None

    @classmethod
    def ok(cls, data: Any = None, message: str = "") -> "ServiceResponse":
        return cls(success=True, data=data, message=message)

    @classmethod
    def fail(cls, message: str, error_code: str = "error", data: Any = None) -> "ServiceResponse":
        return cls(success=False, data=data, message=message, error_code=error_code)


def error_code_for(error: Exception) -> str:
    for error_type, code in ERROR_CODES:
        if isinstance(error, error_type):
            return code
    return "error"


def _envelope(operation: str) -> Callable:
    """Turn exceptions raised by an async operation into a failed envelope."""

    def decorator(f: Callable[..., Awaitable[ServiceResponse]]) -> Callable:
        @functools.wraps(f)
        async def wrapper(*args: Any, **kwargs: Any) -> ServiceResponse:
            try:
                return await f(*args, **kwargs)
            except Exception as e:
                log_error(logger, e, context=operation)
                return ServiceResponse.fail(str(e), error_code_for(e))

        return wrapper

    return decorator


class GalleryService:
    """Wires the store, client, pipeline and coordinator behind one surface.

    Usage:
        async with GalleryService(config) as service:
            response = await service.run_full_sync()
    """

    def __init__(
        self,
        config: SyncConfig,
        store: ContentStore | None = None,
        client: GalleryClient | None = None,
    ):
        """Initialize the service.

        Args:
            config: Application configuration
            store: Content store (created from config.state when omitted)
            client: Remote gallery client (created when a gallery URL is configured)
        """
        self.config = config
        self.store = store or ContentStore(config.state)
        if client is None and config.gallery.url:
            client = GalleryClient(config.gallery, config.retry, config.logging)
        self.client = client

        self.artifacts = ArtifactStore(
            config.storage.sync_dir, self.store, config.storage.artifact_max_age_days
        )
        self.progress = ProgressTracker(
            self.store,
            ttl=config.sync.progress_ttl,
            enable_bar=not config.logging.disable_progress,
        )
        self.pipeline = SyncPipeline(config, self.store, self.artifacts, self.progress, client)
        self.coordinator = MigrationCoordinator(
            config,
            self.store,
            client=client,
            artifacts=self.artifacts,
            progress=self.progress,
            pipeline=self.pipeline,
        )

    async def close(self) -> None:
        if self.client is not None:
            await self.client.close()

    async def __aenter__(self) -> "GalleryService":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    @_envelope("start_stage")
    async def start_stage(self, stage: int) -> ServiceResponse:
        result = await self.pipeline.run_stage(stage)
        return ServiceResponse.ok(result, f"Stage {stage} completed")

    @_envelope("run_full_sync")
    async def run_full_sync(self) -> ServiceResponse:
        result = await self.pipeline.run_full_sync()
        if result["status"] == "stopped":
            return ServiceResponse.ok(result, "Full sync stopped at a stage boundary")
        return ServiceResponse.ok(result, "Full sync completed")

    @_envelope("get_progress")
    async def get_progress(self) -> ServiceResponse:
        data = {**self.progress.get(), "state": self.pipeline.get_state()}
        return ServiceResponse.ok(data)

    @_envelope("stop")
    async def stop(self) -> ServiceResponse:
        self.pipeline.request_stop()
        return ServiceResponse.ok(message="Stop requested; the sync stops at the next stage boundary")

    @_envelope("delete_artifact")
    async def delete_artifact(self, kind: str) -> ServiceResponse:
        deleted = self.pipeline.delete_artifact(kind)
        message = f"Deleted {kind}" if deleted else f"No {kind} to delete"
        return ServiceResponse.ok({"deleted": deleted}, message)

    # ------------------------------------------------------------------
    # Migration
    # ------------------------------------------------------------------

    @_envelope("migrate")
    async def migrate(
        self, direction: str, options: dict[str, Any] | None = None
    ) -> ServiceResponse:
        migration_type = DIRECTIONS.get(direction)
        if migration_type is None:
            raise ValidationError(
                f"Invalid migration direction: {direction}. Expected to-local or to-api."
            )

        if migration_type == MIGRATION_TO_LOCAL:
            success = await self.coordinator.migrate_to_local(options)
        else:
            success = await self.coordinator.migrate_to_api(options)

        status = self.coordinator.get_status()
        if not success:
            return ServiceResponse.fail(
                self.coordinator.last_error or "Migration failed", "migration", status
            )
        return ServiceResponse.ok(status, f"Migration {migration_type} completed")

    @_envelope("rollback")
    async def rollback(self) -> ServiceResponse:
        if not self.coordinator.rollback():
            return ServiceResponse.fail(
                self.coordinator.last_error or "No backup available to restore", "state"
            )
        return ServiceResponse.ok(message="Rollback completed")

    @_envelope("status")
    async def status(self) -> ServiceResponse:
        data = {
            "migration": self.coordinator.get_status(),
            "sync_state": self.pipeline.get_state(),
            "progress": self.progress.get(),
            "artifacts": {
                kind: str(path) if (path := self.artifacts.path_for(kind)) else None
                for kind in ("sync_data", "manifest")
            },
            "last_stage_3": self.artifacts.read_summary(),
            "sync_stats": self.store.sync_stats(),
        }
        return ServiceResponse.ok(data)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @_envelope("validate")
    async def validate(self, mode: str | None = None) -> ServiceResponse:
        report = await self.coordinator.validator.get_validation_report(mode)
        valid = (
            report["integrity_check"]["overall_valid"]
            and report["migration_validation"]["valid"]
        )
        return ServiceResponse.ok(report, "Validation passed" if valid else "Validation found errors")

    @_envelope("fix")
    async def fix(self) -> ServiceResponse:
        results = self.coordinator.validator.fix_data_issues()
        return ServiceResponse.ok(results, f"Fixed {results['fixed']} issue(s)")

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    @_envelope("export")
    async def export(self) -> ServiceResponse:
        return ServiceResponse.ok(self.coordinator.export_data(), "Export completed")

    @_envelope("import")
    async def import_(self, document: Any) -> ServiceResponse:
        result = self.coordinator.import_data(document)
        if not result["imported"]:
            return ServiceResponse.fail("; ".join(result["errors"]), "validation", result)
        return ServiceResponse.ok(result["counts"], "Import completed")
