"""
Migration module for Gallery Sync.

This module provides the content store, persisted migration state, and the
database utilities the sync pipeline and mode migrations are built on.
"""

# Database utilities
from gallery_sync.migration.database import (
    create_database_engine,
    get_engine,
    get_session,
    get_session_factory,
    init_database,
)

# Database models
from gallery_sync.migration.models import (
    Attachment,
    Base,
    CaseEntity,
    CaseMap,
    Label,
    MigrationLease,
    SyncLog,
)

# State management
from gallery_sync.migration.state import MigrationState, MigrationStatus
from gallery_sync.migration.store import ContentStore

__all__ = [
    # Models
    "Base",
    "CaseEntity",
    "Label",
    "Attachment",
    "SyncLog",
    "CaseMap",
    "MigrationLease",
    # Database utilities
    "init_database",
    "get_engine",
    "get_session",
    "get_session_factory",
    "create_database_engine",
    # Store and state
    "ContentStore",
    "MigrationState",
    "MigrationStatus",
]
