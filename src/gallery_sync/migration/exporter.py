"""Export of local gallery content to a portable JSON document."""

import json
from pathlib import Path
from typing import Any

from gallery_sync.migration.backup import BACKUP_SETTING_KEYS
from gallery_sync.migration.database import utcnow
from gallery_sync.migration.store import TAXONOMIES, ContentStore
from gallery_sync.utils.logging import get_logger

logger = get_logger(__name__)

EXPORT_VERSION = "3.0.0"
SYNC_LOG_EXPORT_LIMIT = 100


class DataExporter:
    """Serializes settings, entities, labels and sync history.

    The document shape is what ``DataImporter`` accepts back.
    """

    def __init__(self, store: ContentStore):
        self.store = store
        self.stats = {"entities": 0, "labels": 0, "settings": 0}

    def export_data(self) -> dict[str, Any]:
        """Build the export document.

        Returns:
            {"version", "timestamp", "settings", "entities", "labels", "sync_data"}
        """
        document = {
            "version": EXPORT_VERSION,
            "timestamp": utcnow().isoformat(),
            "settings": self._export_settings(),
            "entities": self._export_entities(),
            "labels": self._export_labels(),
            "sync_data": {
                "sync_logs": self.store.recent_sync_logs(SYNC_LOG_EXPORT_LIMIT),
                "sync_stats": self.store.sync_stats(),
            },
        }
        logger.info("data_exported", **self.stats)
        return document

    def _export_settings(self) -> dict[str, Any]:
        settings = {
            key: value
            for key, value in self.store.get_settings(BACKUP_SETTING_KEYS).items()
            if value is not None
        }
        self.stats["settings"] = len(settings)
        return settings

    def _export_entities(self) -> list[dict[str, Any]]:
        entities = []
        for entity in self.store.list_entities():
            entity_id = entity["id"]
            entities.append(
                {
                    **entity,
                    "meta": self.store.get_all_meta(entity_id),
                    "labels": {
                        taxonomy: [
                            label["slug"]
                            for label in self.store.get_entity_labels(entity_id, taxonomy)
                        ]
                        for taxonomy in TAXONOMIES
                    },
                }
            )
        self.stats["entities"] = len(entities)
        return entities

    def _export_labels(self) -> dict[str, list[dict[str, Any]]]:
        labels: dict[str, list[dict[str, Any]]] = {}
        for taxonomy in TAXONOMIES:
            labels[taxonomy] = [
                {
                    "id": label["id"],
                    "name": label["name"],
                    "slug": label["slug"],
                    "description": label["description"],
                    "parent": label["parent"],
                    "meta": self.store.get_all_label_meta(label["id"]),
                }
                for label in self.store.list_labels(taxonomy)
            ]
        self.stats["labels"] = sum(len(items) for items in labels.values())
        return labels


def write_export(document: dict[str, Any], export_dir: str | Path) -> Path:
    """Write an export document to ``gallery-export-<timestamp>.json``.

    Returns:
        Path of the written file
    """
    export_path = Path(export_dir)
    export_path.mkdir(parents=True, exist_ok=True)

    stamp = utcnow().strftime("%Y%m%d-%H%M%S")
    path = export_path / f"gallery-export-{stamp}.json"
    with open(path, "w", encoding="utf-8") as f:
        json.dump(document, f, indent=2)

    logger.info("export_written", path=str(path))
    return path
