"""Cross-entity integrity checks, repair, and post-migration validation."""

import json
import time
from collections import Counter
from pathlib import Path
from typing import Any

from gallery_sync.client.gallery_client import GalleryClient
from gallery_sync.config import GalleryConfig
from gallery_sync.migration.database import utcnow
from gallery_sync.migration.pipeline import CASE_ID_META, JSON_META_FIELDS
from gallery_sync.migration.store import TAXONOMIES, TAXONOMY_CATEGORY, TAXONOMY_PROCEDURE, ContentStore
from gallery_sync.utils.logging import get_logger

logger = get_logger(__name__)

MODE_SETTING = "mode"
MODE_LOCAL = "local"
MODE_API = "api"

IMAGE_ID_META = ("before_image_ids", "after_image_ids")


def _check_result() -> dict[str, Any]:
    return {"valid": True, "errors": [], "warnings": []}


def _is_json(raw: str) -> bool:
    try:
        json.loads(raw)
    except (TypeError, ValueError):
        return False
    return True


class DataValidator:
    """Validates local content after syncs and mode migrations.

    Integrity checks never short-circuit: every domain runs and reports its
    own errors and warnings.
    """

    def __init__(
        self,
        store: ContentStore,
        gallery: GalleryConfig | None = None,
        client: GalleryClient | None = None,
    ):
        """Initialize data validator.

        Args:
            store: Content store to validate
            gallery: Remote gallery configuration (credentials fallback)
            client: Remote gallery client used to check connectivity
        """
        self.store = store
        self.gallery = gallery or GalleryConfig()
        self.client = client

    def current_mode(self) -> str:
        return self.store.get_setting(MODE_SETTING) or MODE_API

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------

    def check_data_integrity(self) -> dict[str, Any]:
        """Run the entity, label, metadata, image and sync checks.

        Returns:
            {"overall_valid", "total_errors", "total_warnings", "checks"}
        """
        checks = {
            "entities": self._check_entities(),
            "labels": self._check_labels(),
            "metadata": self._check_metadata(),
            "images": self._check_images(),
            "sync": self._check_sync(),
        }

        report = {
            "overall_valid": all(check["valid"] for check in checks.values()),
            "total_errors": sum(len(check["errors"]) for check in checks.values()),
            "total_warnings": sum(len(check["warnings"]) for check in checks.values()),
            "checks": checks,
        }
        logger.info(
            "integrity_check_completed",
            overall_valid=report["overall_valid"],
            errors=report["total_errors"],
            warnings=report["total_warnings"],
        )
        return report

    def _check_entities(self) -> dict[str, Any]:
        result = _check_result()
        entities = self.store.list_entities()

        for entity in entities:
            if not (entity["title"] or "").strip():
                result["valid"] = False
                result["errors"].append(f"Entity {entity['id']} has no title")

        slug_counts = Counter(entity["slug"] for entity in entities)
        for slug, count in sorted(slug_counts.items()):
            if count > 1:
                result["warnings"].append(f"Duplicate slug '{slug}' found {count} times")
        return result

    def _check_labels(self) -> dict[str, Any]:
        result = _check_result()
        for taxonomy in TAXONOMIES:
            labels = self.store.list_labels(taxonomy)

            for label in labels:
                if not (label["name"] or "").strip():
                    result["valid"] = False
                    result["errors"].append(f"{taxonomy} label {label['id']} has no name")
                # Procedure parents live in the category taxonomy
                if label["parent"] and self.store.get_label(label["parent"]) is None:
                    result["valid"] = False
                    result["errors"].append(
                        f"{taxonomy} label {label['id']} has missing parent {label['parent']}"
                    )

            slug_counts = Counter(label["slug"] for label in labels)
            for slug, count in sorted(slug_counts.items()):
                if count > 1:
                    result["warnings"].append(
                        f"Duplicate {taxonomy} slug '{slug}' found {count} times"
                    )
        return result

    def _check_metadata(self) -> dict[str, Any]:
        result = _check_result()

        for key in JSON_META_FIELDS:
            for entity_id, raw in self.store.meta_values(key):
                if raw and not _is_json(raw):
                    result["valid"] = False
                    result["errors"].append(f"Entity {entity_id} has invalid JSON in {key}")

        if self.current_mode() == MODE_LOCAL:
            for entity_id in self.store.entities_missing_meta(CASE_ID_META):
                result["warnings"].append(f"Entity {entity_id} is missing {CASE_ID_META}")
        return result

    def _check_images(self) -> dict[str, Any]:
        result = _check_result()
        for entity_id in self.store.entity_ids():
            for attachment_id in self._image_ids(entity_id):
                if not self._attachment_file_exists(attachment_id):
                    result["valid"] = False
                    result["errors"].append(
                        f"Entity {entity_id} references missing image {attachment_id}"
                    )
        return result

    def _image_ids(self, entity_id: int) -> list[int]:
        ids: list[int] = []
        thumbnail = self.store.get_meta(entity_id, "thumbnail_id")
        if thumbnail and thumbnail.isdigit():
            ids.append(int(thumbnail))
        for key in IMAGE_ID_META:
            values = self.store.get_json_meta(entity_id, key)
            if isinstance(values, list):
                ids.extend(int(v) for v in values if str(v).isdigit())
        return ids

    def _attachment_file_exists(self, attachment_id: int) -> bool:
        attachment = self.store.get_attachment(attachment_id)
        if attachment is None or not attachment["file_path"]:
            return False
        return Path(attachment["file_path"]).is_file()

    def _check_sync(self) -> dict[str, Any]:
        result = _check_result()
        if not self.store.has_sync_log_table():
            result["warnings"].append("Sync log table does not exist")
        if not self.store.has_case_map_table():
            result["warnings"].append("Case map table does not exist")
            return result

        orphaned = self.store.orphaned_case_maps()
        if orphaned:
            result["warnings"].append(f"{len(orphaned)} orphaned case mappings found")
        return result

    # ------------------------------------------------------------------
    # Repair
    # ------------------------------------------------------------------

    def fix_data_issues(self) -> dict[str, Any]:
        """Repair what can be repaired automatically.

        Adds temporary case ids, de-duplicates slugs, and deletes
        unparseable JSON metadata. Only runs when called explicitly.

        Returns:
            {"fixed", "failed", "messages"}
        """
        results: dict[str, Any] = {"fixed": 0, "failed": 0, "messages": []}

        for entity_id in self.store.entities_missing_meta(CASE_ID_META):
            try:
                temp_id = f"temp_{entity_id}_{int(time.time())}"
                self.store.set_meta(entity_id, CASE_ID_META, temp_id)
                results["fixed"] += 1
                results["messages"].append(f"Added temporary case ID for entity {entity_id}")
            except Exception as e:
                results["failed"] += 1
                results["messages"].append(f"Failed to add case ID for entity {entity_id}: {e}")

        self._fix_duplicate_slugs(results)
        self._fix_broken_json(results)

        logger.info("data_issues_fixed", fixed=results["fixed"], failed=results["failed"])
        return results

    def _fix_duplicate_slugs(self, results: dict[str, Any]) -> None:
        seen: set[str] = set()
        for entity in self.store.list_entities():
            slug = entity["slug"]
            if slug not in seen:
                seen.add(slug)
                continue

            new_slug = f"{slug}-{entity['id']}"
            try:
                self.store.update_entity(entity["id"], slug=new_slug)
                seen.add(new_slug)
                results["fixed"] += 1
                results["messages"].append(
                    f"Fixed duplicate slug for entity {entity['id']}: {slug} -> {new_slug}"
                )
            except Exception as e:
                results["failed"] += 1
                results["messages"].append(f"Failed to fix slug for entity {entity['id']}: {e}")

    def _fix_broken_json(self, results: dict[str, Any]) -> None:
        for key in JSON_META_FIELDS:
            for entity_id, raw in self.store.meta_values(key):
                if not raw or _is_json(raw):
                    continue
                self.store.delete_meta(entity_id, key)
                results["fixed"] += 1
                results["messages"].append(f"Removed broken JSON in entity {entity_id} field {key}")

    # ------------------------------------------------------------------
    # Migration validation
    # ------------------------------------------------------------------

    async def validate_migration(self, target_mode: str) -> dict[str, Any]:
        """Validate the store against a target mode.

        Args:
            target_mode: "local" or "api"

        Returns:
            {"valid", "errors", "warnings", "stats"}
        """
        if target_mode == MODE_LOCAL:
            result = self._validate_local()
        elif target_mode == MODE_API:
            result = await self._validate_api()
        else:
            result = {
                "valid": False,
                "errors": [f"Invalid target mode: {target_mode}"],
                "warnings": [],
                "stats": {},
            }

        logger.info(
            "migration_validated",
            target_mode=target_mode,
            valid=result["valid"],
            errors=len(result["errors"]),
            warnings=len(result["warnings"]),
        )
        return result

    def _validate_local(self) -> dict[str, Any]:
        result: dict[str, Any] = {"valid": True, "errors": [], "warnings": [], "stats": {}}

        total = self.store.count_entities()
        if total == 0:
            result["valid"] = False
            result["errors"].append("No case entities found after migration")
        else:
            result["stats"]["total_entities"] = total
            result["stats"]["published_entities"] = self.store.count_entities("publish")

        categories = self.store.count_labels(TAXONOMY_CATEGORY)
        procedures = self.store.count_labels(TAXONOMY_PROCEDURE)
        result["stats"]["categories"] = categories
        result["stats"]["procedures"] = procedures
        if categories == 0 and procedures == 0:
            result["warnings"].append("No labels found")

        sync_stats = self.store.sync_stats()
        result["stats"]["sync"] = sync_stats
        if sync_stats["total_syncs"] == 0:
            result["warnings"].append("No sync operations recorded")

        published = set(self.store.entity_ids("publish"))
        missing = [i for i in self.store.entities_missing_meta(CASE_ID_META) if i in published]
        if missing:
            result["warnings"].append(f"{len(missing)} entities are missing required metadata")
            result["stats"]["entities_missing_meta"] = len(missing)

        broken = [
            entity_id
            for entity_id in published
            if any(not self._attachment_file_exists(a) for a in self._image_ids(entity_id))
        ]
        if broken:
            result["warnings"].append(f"{len(broken)} entities have broken or missing images")
            result["stats"]["entities_with_broken_images"] = len(broken)

        return result

    async def _validate_api(self) -> dict[str, Any]:
        result: dict[str, Any] = {"valid": True, "errors": [], "warnings": [], "stats": {}}

        api_url = self.store.get_setting("api_url") or self.gallery.url
        api_token = self.store.get_setting("api_token") or self.gallery.token
        if not api_url or not api_token:
            result["valid"] = False
            result["errors"].append("API settings are not configured")
        elif self.client is None or not await self.client.test_connection():
            result["valid"] = False
            result["errors"].append("Cannot connect to API")

        published = self.store.count_entities("publish")
        result["stats"]["remaining_published_entities"] = published
        if published > 0:
            result["warnings"].append(
                f"{published} case entities are still published (consider archiving them)"
            )
        return result

    async def get_validation_report(self, mode: str | None = None) -> dict[str, Any]:
        """Integrity check plus migration validation for a mode.

        Args:
            mode: Mode to validate against (defaults to the current mode)
        """
        mode = mode or self.current_mode()
        return {
            "timestamp": utcnow().isoformat(),
            "mode": mode,
            "integrity_check": self.check_data_integrity(),
            "migration_validation": await self.validate_migration(mode),
        }
