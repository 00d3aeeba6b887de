"""Import of an exported gallery document.

The document is validated in full before anything is written, and the
writes run in one transaction: a rejected or failing import leaves the
store exactly as it was.
"""

import json
import re
from typing import Any

from gallery_sync.client.exceptions import ValidationError
from gallery_sync.migration.exporter import EXPORT_VERSION
from gallery_sync.migration.pipeline import CASE_ID_META
from gallery_sync.migration.store import TAXONOMIES, ContentStore
from gallery_sync.utils.logging import get_logger

logger = get_logger(__name__)

MAX_IMPORT_BYTES = 50 * 1024 * 1024
MAX_IMPORT_DEPTH = 10
IMPORTED_SYNC_STATS_SETTING = "imported_sync_stats"

SUSPICIOUS_PATTERNS = [
    re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE | re.MULTILINE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"vbscript:", re.IGNORECASE),
    re.compile(r"data:.*base64", re.IGNORECASE),
]


def parse_version(version: str) -> tuple[int, ...]:
    """Parse a dotted numeric version ("3.0.0" -> (3, 0, 0)).

    Raises:
        ValidationError: If any component is not a number
    """
    try:
        return tuple(int(part) for part in version.strip().split("."))
    except ValueError as e:
        raise ValidationError(f"Invalid version: {version}") from e


def nesting_depth(value: Any, current: int = 0) -> int:
    """Deepest level of nested containers below ``value``."""
    children: list[Any]
    if isinstance(value, dict):
        children = list(value.values())
    elif isinstance(value, list):
        children = value
    else:
        return current

    depth = current
    for child in children:
        if isinstance(child, (dict, list)):
            depth = max(depth, nesting_depth(child, current + 1))
    return depth


class DataImporter:
    """Validates and applies an export document."""

    def __init__(
        self,
        store: ContentStore,
        max_bytes: int = MAX_IMPORT_BYTES,
        max_depth: int = MAX_IMPORT_DEPTH,
    ):
        self.store = store
        self.max_bytes = max_bytes
        self.max_depth = max_depth

    def validate(self, document: Any) -> list[str]:
        """Collect every reason to reject a document.

        Returns:
            Error messages; empty when the document is acceptable
        """
        if not isinstance(document, dict):
            return ["Import data must be a JSON object"]

        errors: list[str] = []
        version = document.get("version")
        if not isinstance(version, str):
            errors.append("Missing or invalid version information")
        else:
            try:
                if parse_version(version) > parse_version(EXPORT_VERSION):
                    errors.append(
                        f"Unsupported version {version} (newest supported is {EXPORT_VERSION})"
                    )
            except ValidationError as e:
                errors.append(str(e))

        if "timestamp" not in document:
            errors.append("Missing timestamp")

        serialized = json.dumps(document, default=str)
        if len(serialized.encode("utf-8")) > self.max_bytes:
            errors.append(
                f"Import data exceeds maximum allowed size of {self.max_bytes // (1024 * 1024)}MB"
            )

        if any(pattern.search(serialized) for pattern in SUSPICIOUS_PATTERNS):
            errors.append("Import data contains potentially malicious content")

        if nesting_depth(document) > self.max_depth:
            errors.append("Import data structure is too deeply nested")

        return errors

    def import_data(self, document: Any) -> dict[str, int]:
        """Validate and import a document.

        Returns:
            Counts {"labels", "entities", "settings"}

        Raises:
            ValidationError: If the document is rejected (nothing is written)
            StateError: If a write fails (everything is rolled back)
        """
        errors = self.validate(document)
        if errors:
            logger.warning("import_rejected", errors=errors)
            raise ValidationError("; ".join(errors))

        counts = {"labels": 0, "entities": 0, "settings": 0}
        with self.store.transaction():
            id_map = self._import_labels(document.get("labels") or {}, counts)
            self._import_entities(document.get("entities") or [], counts)
            for key, value in (document.get("settings") or {}).items():
                self.store.set_setting(key, value)
                counts["settings"] += 1

            sync_stats = (document.get("sync_data") or {}).get("sync_stats")
            if sync_stats:
                self.store.set_setting(IMPORTED_SYNC_STATS_SETTING, sync_stats)

        logger.info("data_imported", remapped_labels=len(id_map), **counts)
        return counts

    def _import_labels(
        self, labels: dict[str, list[dict[str, Any]]], counts: dict[str, int]
    ) -> dict[int, int]:
        """Upsert labels by (taxonomy, slug), parents first.

        Returns:
            Mapping of exported label id to local label id
        """
        id_map: dict[int, int] = {}
        ordered = [t for t in TAXONOMIES if t in labels] + [t for t in labels if t not in TAXONOMIES]
        for taxonomy in ordered:
            for item in self._parents_first(labels[taxonomy] or []):
                parent = int(item.get("parent") or 0)
                fields = {
                    "name": item.get("name") or "",
                    "description": item.get("description") or "",
                    "parent_id": id_map.get(parent, 0),
                }
                if parent and parent not in id_map:
                    logger.warning("import_parent_unresolved", slug=item.get("slug"), parent=parent)

                existing = self.store.find_label(taxonomy, item["slug"])
                if existing is not None:
                    self.store.update_label(existing["id"], **fields)
                    label_id = existing["id"]
                else:
                    label_id = self.store.create_label(taxonomy, slug=item["slug"], **fields)

                for key, value in (item.get("meta") or {}).items():
                    self.store.set_label_meta(label_id, key, value)
                if item.get("id") is not None:
                    id_map[int(item["id"])] = label_id
                counts["labels"] += 1
        return id_map

    @staticmethod
    def _parents_first(items: list[dict[str, Any]]) -> list[dict[str, Any]]:
        ids = {int(item["id"]) for item in items if item.get("id") is not None}
        placed: set[int] = set()
        ordered: list[dict[str, Any]] = []
        pending = list(items)

        while pending:
            remaining = []
            for item in pending:
                parent = int(item.get("parent") or 0)
                if parent in ids and parent not in placed:
                    remaining.append(item)
                    continue
                ordered.append(item)
                if item.get("id") is not None:
                    placed.add(int(item["id"]))
            if len(remaining) == len(pending):
                # Parent cycle: keep document order for the rest
                ordered.extend(remaining)
                break
            pending = remaining
        return ordered

    def _import_entities(self, entities: list[dict[str, Any]], counts: dict[str, int]) -> None:
        for item in entities:
            meta = item.get("meta") or {}
            fields = {
                "title": item.get("title") or "",
                "slug": item.get("slug") or "",
                "status": item.get("status") or "draft",
                "body": item.get("body") or "",
                "excerpt": item.get("excerpt") or "",
            }

            entity_id = None
            if meta.get(CASE_ID_META):
                entity_id = self.store.find_entity_by_meta(CASE_ID_META, meta[CASE_ID_META])
            if entity_id is None:
                entity_id = self.store.create_entity(**fields)
            else:
                self.store.update_entity(entity_id, **fields)

            for key, value in meta.items():
                self.store.set_meta(entity_id, key, value)

            for taxonomy, slugs in (item.get("labels") or {}).items():
                label_ids = []
                for slug in slugs or []:
                    label = self.store.find_label(taxonomy, slug)
                    if label is not None:
                        label_ids.append(label["id"])
                self.store.set_entity_labels(entity_id, taxonomy, label_ids)

            counts["entities"] += 1
