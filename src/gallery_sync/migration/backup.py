"""Pre-migration backup and rollback.

Only the most recent snapshot is retained: each backup overwrites the last,
and a successful rollback clears it.
"""

from typing import Any

from gallery_sync.migration.database import utcnow
from gallery_sync.migration.store import ContentStore
from gallery_sync.utils.logging import get_logger

logger = get_logger(__name__)

BACKUP_SETTING = "migration_backup"

# Settings a mode switch can change
BACKUP_SETTING_KEYS = ("mode", "mode_settings", "api_url", "api_token", "property_id")


class BackupManager:
    """Captures settings and entity statuses, and restores them atomically."""

    def __init__(self, store: ContentStore, setting_keys: tuple[str, ...] = BACKUP_SETTING_KEYS):
        self.store = store
        self.setting_keys = setting_keys

    def create_backup(self) -> dict[str, Any]:
        """Snapshot the mode settings and every entity's status.

        Returns:
            The backup document that was stored
        """
        backup = {
            "timestamp": utcnow().isoformat(),
            "settings": self.store.get_settings(self.setting_keys),
            "entity_statuses": {
                str(entity["id"]): entity["status"] for entity in self.store.list_entities()
            },
        }
        self.store.set_setting(BACKUP_SETTING, backup)
        logger.info(
            "backup_created",
            settings=len(backup["settings"]),
            entities=len(backup["entity_statuses"]),
        )
        return backup

    def has_backup(self) -> bool:
        return self.store.has_setting(BACKUP_SETTING)

    def get_backup(self) -> dict[str, Any] | None:
        return self.store.get_setting(BACKUP_SETTING)

    def clear_backup(self) -> None:
        self.store.delete_setting(BACKUP_SETTING)

    def restore(self) -> bool:
        """Apply the stored backup and clear it.

        Settings are restored verbatim; a setting captured as None is
        deleted. Entity statuses are restored for entities that still exist.
        Everything runs in one transaction, so a failure leaves the store
        untouched and the backup in place.

        Returns:
            False if there is no backup to restore
        """
        backup = self.get_backup()
        if not backup:
            logger.info("rollback_skipped", reason="no_backup")
            return False

        restored_entities = 0
        with self.store.transaction():
            for key, value in (backup.get("settings") or {}).items():
                if value is None:
                    self.store.delete_setting(key)
                else:
                    self.store.set_setting(key, value)

            for entity_id, status in (backup.get("entity_statuses") or {}).items():
                if self.store.set_entity_status(int(entity_id), status):
                    restored_entities += 1

            self.store.delete_setting(BACKUP_SETTING)

        logger.info(
            "backup_restored",
            backup_timestamp=backup.get("timestamp"),
            settings=len(backup.get("settings") or {}),
            entities=restored_entities,
        )
        return True
