"""
Migration state management.

This module provides the MigrationState class: the persisted, process-wide
MigrationStatus record and the database lease that guarantees at most one
mode migration runs at a time.
"""

import os
import socket
import uuid
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Any

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError

from gallery_sync.client.exceptions import StateError
from gallery_sync.migration.database import get_session, utcnow
from gallery_sync.migration.models import MigrationLease
from gallery_sync.migration.store import ContentStore
from gallery_sync.utils.logging import get_logger

logger = get_logger(__name__)

STATUS_SETTING = "migration_status"
LEASE_NAME = "mode_migration"

MIGRATION_TO_LOCAL = "to-local"
MIGRATION_TO_API = "to-api"
MIGRATION_TYPES = (MIGRATION_TO_LOCAL, MIGRATION_TO_API)

STATUS_IDLE = "idle"
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


@dataclass
class MigrationStatus:
    """Snapshot of the current (or most recent) mode migration."""

    type: str | None = None
    status: str = STATUS_IDLE
    message: str = ""
    timestamp: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "MigrationStatus":
        if not data:
            return cls()
        return cls(
            type=data.get("type"),
            status=data.get("status", STATUS_IDLE),
            message=data.get("message", ""),
            timestamp=data.get("timestamp"),
        )


@dataclass
class MigrationState:
    """
    Persisted migration status plus an exclusive lease.

    The lease is a single row in ``migration_leases``. Acquiring it is one
    INSERT (or one conditional UPDATE of an expired row), so two operators
    starting migrations at the same moment cannot both succeed.

    Usage:
        state = MigrationState(store)
        if state.acquire_lease():
            try:
                ...
            finally:
                state.release_lease()
    """

    store: ContentStore
    lease_seconds: int = 3600
    owner: str = field(
        default_factory=lambda: f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
    )

    def get_status(self) -> MigrationStatus:
        return MigrationStatus.from_dict(self.store.get_setting(STATUS_SETTING))

    def set_status(self, migration_type: str | None, status: str, message: str = "") -> None:
        record = MigrationStatus(
            type=migration_type,
            status=status,
            message=message,
            timestamp=utcnow().isoformat(),
        )
        self.store.set_setting(STATUS_SETTING, record.to_dict())
        logger.info(
            "migration_status_updated",
            migration_type=migration_type,
            status=status,
            message=message,
        )

    def clear_status(self) -> None:
        self.store.delete_setting(STATUS_SETTING)

    def is_running(self) -> bool:
        return self.get_status().status == STATUS_RUNNING

    def acquire_lease(self) -> bool:
        """
        Try to take the migration lease.

        Returns:
            True if this owner now holds the lease, False if another
            unexpired holder exists

        Raises:
            StateError: For database failures other than a held lease
        """
        now = utcnow()
        expires_at = now + timedelta(seconds=self.lease_seconds)

        # Take over an expired lease, or renew one this owner already holds
        with get_session(self.store.database_url) as session:
            result = session.execute(
                update(MigrationLease)
                .where(MigrationLease.name == LEASE_NAME)
                .where((MigrationLease.expires_at <= now) | (MigrationLease.owner == self.owner))
                .values(owner=self.owner, acquired_at=now, expires_at=expires_at)
            )
            if result.rowcount == 1:
                logger.info("migration_lease_acquired", owner=self.owner, takeover=True)
                return True

        try:
            with get_session(self.store.database_url) as session:
                session.add(
                    MigrationLease(
                        name=LEASE_NAME,
                        owner=self.owner,
                        acquired_at=now,
                        expires_at=expires_at,
                    )
                )
        except StateError as e:
            if isinstance(e.__cause__, IntegrityError):
                logger.warning("migration_lease_held", owner=self.owner)
                return False
            raise

        logger.info("migration_lease_acquired", owner=self.owner, takeover=False)
        return True

    def release_lease(self) -> None:
        with get_session(self.store.database_url) as session:
            session.execute(
                delete(MigrationLease)
                .where(MigrationLease.name == LEASE_NAME)
                .where(MigrationLease.owner == self.owner)
            )
        logger.info("migration_lease_released", owner=self.owner)

    def lease_holder(self) -> str | None:
        with get_session(self.store.database_url) as session:
            lease = session.get(MigrationLease, LEASE_NAME)
            if lease is None or lease.expires_at <= utcnow():
                return None
            return lease.owner
