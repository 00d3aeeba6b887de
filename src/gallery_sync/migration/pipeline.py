"""Three-stage sync pipeline.

Stage 1 upserts category/procedure labels from the remote sidebar, Stage 2
builds the procedure → case-ID manifest, and Stage 3 materializes each case
as a local entity. Stages are independently triggerable; everything one
stage hands to the next lives in the ArtifactStore, so each stage can run in
its own invocation.

Cancellation is coarse: a stop request is only honored between stages of a
full sync, never inside a Stage 3 batch. Stopping leaves the artifacts of
completed stages in place; a full sync is not a transaction.
"""

import asyncio
import hashlib
import re
import unicodedata
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import urlparse

from gallery_sync.client.exceptions import (
    ConfigurationError,
    PartialFailure,
    PreconditionError,
    ValidationError,
)
from gallery_sync.client.gallery_client import GalleryClient
from gallery_sync.config import SyncConfig
from gallery_sync.migration.artifacts import MANIFEST, SYNC_DATA, ArtifactStore
from gallery_sync.migration.store import TAXONOMY_CATEGORY, TAXONOMY_PROCEDURE, ContentStore
from gallery_sync.reporting.progress import ProgressTracker
from gallery_sync.utils.logging import get_logger, log_error, log_sync_progress

logger = get_logger(__name__)

STOP_FLAG_SETTING = "sync_stop_flag"
PIPELINE_STATE_SETTING = "sync_pipeline_state"

CASE_ID_META = "case_id"
JSON_META_FIELDS = ("patient_info", "procedure_details", "seo_data", "before_images", "after_images")

# Remote case fields copied verbatim into entity metadata
CASE_FIELD_META = {
    "qualityScore": "quality_score",
    "isForWebsite": "is_for_website",
    "approvedForSocial": "approved_for_social",
    "noWatermark": "no_watermark",
    "createdAt": "remote_created_at",
    "updatedAt": "remote_updated_at",
}

PATIENT_FIELDS = ("age", "gender", "ethnicity", "height", "heightUnit", "weight", "weightUnit")
SEO_FIELDS = ("seoSuffixUrl", "seoHeadline", "seoPageTitle", "seoPageDescription")

# Full-sync progress range per stage
STAGE_BOUNDS = {1: (0.0, 33.0), 2: (33.0, 66.0), 3: (66.0, 100.0)}


class ProgressSink(Protocol):
    def update(self, percentage: float, message: str) -> None: ...


def slugify(value: str) -> str:
    """Lowercase ASCII slug: words joined by hyphens."""
    value = unicodedata.normalize("NFKD", str(value)).encode("ascii", "ignore").decode("ascii")
    value = re.sub(r"[^\w\s-]", "", value.lower())
    return re.sub(r"[-_\s]+", "-", value).strip("-")


def image_filename(url: str) -> str:
    """File name for a downloaded image, unique per source URL.

    Different URLs often share a basename (``before/photo.jpg`` and
    ``after/photo.jpg``), so a short digest of the full URL is appended.
    """
    path = Path(Path(urlparse(url).path).name or "image.jpg")
    digest = hashlib.sha1(url.encode("utf-8")).hexdigest()[:10]
    return f"{path.stem}-{digest}{path.suffix or '.jpg'}"


def _now() -> str:
    return datetime.now(UTC).isoformat()


class SyncPipeline:
    """Runs the category, manifest and case-materialization stages."""

    def __init__(
        self,
        config: SyncConfig,
        store: ContentStore,
        artifacts: ArtifactStore,
        progress: ProgressTracker,
        client: GalleryClient | None = None,
    ):
        """Initialize sync pipeline.

        Args:
            config: Application configuration
            store: Local content store
            artifacts: Artifact store shared between stages
            progress: Shared progress slot
            client: Remote gallery client (required by stages that call the API)
        """
        self.config = config
        self.store = store
        self.artifacts = artifacts
        self.progress = progress
        self.client = client
        self.tuning = config.sync
        self._labels: dict[int, dict[str, Any]] = {}
        self._overflow = 0

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def _require_client(self) -> tuple[GalleryClient, str]:
        if self.client is None or not self.config.gallery.token:
            raise ConfigurationError("Gallery API credentials are not configured")
        return self.client, self.config.gallery.token

    def request_stop(self) -> None:
        """Ask a running full sync to stop at the next stage boundary."""
        self.store.set_setting(STOP_FLAG_SETTING, True)
        logger.info("sync_stop_requested")

    def clear_stop(self) -> None:
        self.store.delete_setting(STOP_FLAG_SETTING)

    def stop_requested(self) -> bool:
        return bool(self.store.get_setting(STOP_FLAG_SETTING, False))

    def get_state(self) -> str:
        record = self.store.get_setting(PIPELINE_STATE_SETTING) or {}
        return record.get("state", "idle")

    def _set_state(self, state: str) -> None:
        self.store.set_setting(PIPELINE_STATE_SETTING, {"state": state, "updated_at": _now()})
        logger.info("sync_state_changed", state=state)

    def delete_artifact(self, kind: str) -> bool:
        """Delete an artifact so the stage that produces it runs again.

        Raises:
            ValidationError: If kind is not sync_data or manifest
        """
        return self.artifacts.delete(kind)

    async def _logged(
        self,
        sync_type: str,
        runner: Callable[[], Awaitable[dict[str, Any]]],
        counts: Callable[[dict[str, Any]], tuple[int, int, list[str]]],
    ) -> dict[str, Any]:
        """Run a stage with a sync-log row recording its outcome."""
        self.store.ensure_sync_tables()
        self.store.prune_sync_logs(self.tuning.log_retention_days)
        log_id = self.store.start_sync_log(sync_type, self.tuning.source)
        try:
            result = await runner()
        except Exception as e:
            log_error(logger, e, context=sync_type)
            self.store.finish_sync_log(log_id, "failed", errors=[str(e)])
            raise
        processed, failed, errors = counts(result)
        self.store.finish_sync_log(log_id, "completed", processed, failed, errors)
        return result

    # ------------------------------------------------------------------
    # Stage 1: categories
    # ------------------------------------------------------------------

    async def run_stage_1(self, progress: ProgressSink | None = None) -> dict[str, Any]:
        """Upsert one label per remote category and procedure.

        Reuses the Sync Data snapshot when one exists; otherwise fetches the
        sidebar and writes the snapshot.

        Returns:
            {"created", "updated", "total"}
        """
        progress = progress or self.progress.scaled(0, 100, "stage_1")
        return await self._logged(
            "stage_1",
            lambda: self._stage_1(progress),
            lambda r: (r["total"], 0, []),
        )

    async def _stage_1(self, progress: ProgressSink) -> dict[str, Any]:
        sync_data = self.artifacts.read(SYNC_DATA)
        fetched = sync_data is None

        if fetched:
            client, token = self._require_client()
            progress.update(0, "Fetching categories from gallery API")
            categories = await client.fetch_categories(token)
        else:
            categories = sync_data.get("categories") or []
            logger.info("stage_1_using_snapshot", categories=len(categories))

        created = updated = 0
        with self.store.transaction():
            for index, category in enumerate(categories):
                name = str(category.get("name") or "").strip()
                if not name:
                    continue

                category_id, was_created = self._upsert_label(
                    TAXONOMY_CATEGORY,
                    name,
                    slugify(category.get("slugName") or name),
                    description=category.get("description") or "",
                )
                created += was_created
                updated += not was_created
                self.store.set_label_meta(category_id, "nudity", bool(category.get("nudity")))
                self.store.set_label_meta(
                    category_id, "total_cases", int(category.get("totalCase") or 0)
                )

                for procedure in category.get("procedures") or []:
                    c, u = self._upsert_procedure(procedure, category_id)
                    created += c
                    updated += u

                progress.update(
                    (index + 1) / len(categories) * 100, f"Processed category {name}"
                )

        if fetched:
            self.artifacts.write(SYNC_DATA, {"categories": categories})

        result = {"created": created, "updated": updated, "total": created + updated}
        logger.info("stage_1_completed", **result)
        return result

    def _upsert_procedure(self, procedure: dict[str, Any], parent_id: int) -> tuple[int, int]:
        name = str(procedure.get("name") or "").strip()
        if not name:
            return 0, 0

        label_id, was_created = self._upsert_label(
            TAXONOMY_PROCEDURE,
            name,
            slugify(procedure.get("slugName") or name),
            description=procedure.get("description") or "",
            parent_id=parent_id,
        )

        ids = self._valid_ids(procedure.get("ids"))
        if ids:
            self.store.set_label_meta(label_id, "procedure_id", ids[0])
            self.store.set_label_meta(label_id, "procedure_ids", ",".join(map(str, ids)))
        self.store.set_label_meta(label_id, "nudity", bool(procedure.get("nudity")))
        self.store.set_label_meta(label_id, "details", procedure.get("description") or "")
        self.store.set_label_meta(label_id, "total_cases", int(procedure.get("totalCase") or 0))

        return (1, 0) if was_created else (0, 1)

    def _upsert_label(
        self,
        taxonomy: str,
        name: str,
        slug: str,
        description: str = "",
        parent_id: int = 0,
    ) -> tuple[int, bool]:
        existing = self.store.find_label(taxonomy, slug)
        if existing is not None:
            self.store.update_label(
                existing["id"], name=name, description=description, parent_id=parent_id
            )
            return existing["id"], False
        return (
            self.store.create_label(taxonomy, name, slug, description, parent_id),
            True,
        )

    @staticmethod
    def _valid_ids(raw: Any) -> list[int]:
        ids: list[int] = []
        for value in raw or []:
            try:
                number = int(value)
            except (TypeError, ValueError):
                continue
            if number > 0 and number not in ids:
                ids.append(number)
        return ids

    # ------------------------------------------------------------------
    # Stage 2: manifest
    # ------------------------------------------------------------------

    async def run_stage_2(self, progress: ProgressSink | None = None) -> dict[str, Any]:
        """Build the procedure → case-ID manifest.

        An existing manifest is never rebuilt: its counts are returned
        without contacting the remote API.

        Returns:
            {"procedure_count", "case_count", "cached"}

        Raises:
            PreconditionError: If Stage 1 has not produced Sync Data
        """
        progress = progress or self.progress.scaled(0, 100, "stage_2")
        return await self._logged(
            "stage_2",
            lambda: self._stage_2(progress),
            lambda r: (r["case_count"], 0, []),
        )

    async def _stage_2(self, progress: ProgressSink) -> dict[str, Any]:
        sync_data = self.artifacts.read(SYNC_DATA)
        if sync_data is None:
            raise PreconditionError("Sync data not found. Run stage 1 first.")

        existing = self.artifacts.read(MANIFEST)
        if existing is not None:
            entries = existing.get("entries") or {}
            result = {
                "procedure_count": existing.get("procedure_count", len(entries)),
                "case_count": existing.get(
                    "case_count", sum(len(e.get("case_ids", [])) for e in entries.values())
                ),
                "cached": True,
            }
            progress.update(100, "Manifest already exists")
            logger.info("stage_2_manifest_exists", **result)
            return result

        client, token = self._require_client()
        procedures = self._extract_procedures(sync_data.get("categories") or [])

        entries: dict[str, dict[str, Any]] = {}
        for index, (procedure_id, name) in enumerate(procedures):
            case_ids = await self._collect_case_ids(client, token, procedure_id)
            if case_ids:
                entries[str(procedure_id)] = {"case_count": len(case_ids), "case_ids": case_ids}

            total_cases = sum(e["case_count"] for e in entries.values())
            progress.update(
                (index + 1) / len(procedures) * 100,
                f"Processed: {name} - Total cases so far: {total_cases}",
            )
            log_sync_progress(logger, "stage_2", index + 1, len(procedures), procedure=name)

        case_count = sum(e["case_count"] for e in entries.values())
        self.artifacts.write(
            MANIFEST,
            {"procedure_count": len(entries), "case_count": case_count, "entries": entries},
        )

        result = {"procedure_count": len(entries), "case_count": case_count, "cached": False}
        logger.info("stage_2_completed", **result)
        return result

    def _extract_procedures(self, categories: list[dict[str, Any]]) -> list[tuple[int, str]]:
        """Procedure ids worth listing: valid ids of procedures with cases."""
        procedures: list[tuple[int, str]] = []
        seen: set[int] = set()
        for category in categories:
            for procedure in category.get("procedures") or []:
                if int(procedure.get("totalCase") or 0) <= 0:
                    continue
                name = procedure.get("name") or "Unknown"
                for procedure_id in self._valid_ids(procedure.get("ids")):
                    if procedure_id not in seen:
                        seen.add(procedure_id)
                        procedures.append((procedure_id, name))
        return procedures

    async def _collect_case_ids(
        self, client: GalleryClient, token: str, procedure_id: int
    ) -> list[int]:
        case_ids: list[int] = []
        seen: set[int] = set()
        for page in range(1, self.tuning.max_pages + 1):
            result = await client.fetch_case_ids(token, procedure_id, page)
            for case_id in result.get("ids") or []:
                if case_id not in seen:
                    seen.add(case_id)
                    case_ids.append(case_id)
            if not result.get("has_more"):
                break
            await asyncio.sleep(self.tuning.page_delay)
        else:
            logger.warning("page_limit_reached", procedure_id=procedure_id, pages=self.tuning.max_pages)
        return case_ids

    # ------------------------------------------------------------------
    # Stage 3: case materialization
    # ------------------------------------------------------------------

    async def run_stage_3(self, progress: ProgressSink | None = None) -> dict[str, Any]:
        """Fetch and upsert every case listed in the manifest.

        Cases are processed in batches of ``sync.batch_size``. A failing
        case is recorded and skipped; it never aborts the stage.

        Returns:
            The Stage 3 summary

        Raises:
            PreconditionError: If Stage 2 has not produced a manifest
            ValidationError: If the manifest lists no cases
        """
        progress = progress or self.progress.scaled(0, 100, "stage_3")
        return await self._logged(
            "stage_3",
            lambda: self._stage_3(progress),
            lambda r: (r["processed"], r["failed"], r["errors"]),
        )

    async def _stage_3(self, progress: ProgressSink) -> dict[str, Any]:
        manifest = self.artifacts.read(MANIFEST)
        if manifest is None:
            raise PreconditionError("Manifest not found. Run stage 2 first.")

        entries = manifest.get("entries") or {}
        if not entries:
            raise ValidationError("Manifest is empty")

        client, token = self._require_client()
        labels = self._procedure_label_map()
        self._labels = labels

        summary: dict[str, Any] = {
            "total": sum(len(e.get("case_ids") or []) for e in entries.values()),
            "processed": 0,
            "created": 0,
            "updated": 0,
            "failed": 0,
            "skipped": 0,
            "errors": [],
        }
        self._overflow = 0

        work: list[tuple[int, int, dict[str, Any], int]] = []
        for procedure_key, entry in entries.items():
            procedure_id = int(procedure_key)
            case_ids = [int(c) for c in entry.get("case_ids") or []]
            label = labels.get(procedure_id)
            if label is None:
                logger.warning("procedure_label_missing", procedure_id=procedure_id)
                summary["processed"] += len(case_ids)
                summary["skipped"] += len(case_ids)
                continue
            self.store.set_label_meta(label["id"], "case_order", case_ids)
            work.extend(
                (case_id, procedure_id, label, position)
                for position, case_id in enumerate(case_ids, start=1)
            )

        batch_size = self.tuning.batch_size
        batches = [work[i : i + batch_size] for i in range(0, len(work), batch_size)]

        for number, batch in enumerate(batches, start=1):
            await self._process_batch(client, token, batch, summary)

            # Bound memory and burst load between batches
            self.store.flush_read_cache()
            await asyncio.sleep(self.tuning.batch_pause)

            percentage = summary["processed"] / summary["total"] * 100 if summary["total"] else 100
            progress.update(
                percentage,
                f"Processed {summary['processed']} of {summary['total']} cases "
                f"(batch {number}/{len(batches)})",
            )
            log_sync_progress(logger, "stage_3", summary["processed"], summary["total"])

        if self._overflow:
            summary["errors"].append(f"... and {self._overflow} more")

        summary["completed_at"] = _now()
        self.artifacts.write_summary(summary)
        logger.info(
            "stage_3_completed",
            created=summary["created"],
            updated=summary["updated"],
            failed=summary["failed"],
            total=summary["total"],
        )
        return summary

    def _procedure_label_map(self) -> dict[int, dict[str, Any]]:
        """Map every remote procedure id to its local procedure label."""
        mapping: dict[int, dict[str, Any]] = {}
        for label in self.store.list_labels(TAXONOMY_PROCEDURE):
            meta = self.store.get_all_label_meta(label["id"])
            raw_ids = (meta.get("procedure_ids") or meta.get("procedure_id") or "").split(",")
            for procedure_id in self._valid_ids(raw_ids):
                mapping.setdefault(procedure_id, label)
        return mapping

    def _record_error(self, summary: dict[str, Any], message: str) -> None:
        if len(summary["errors"]) < self.tuning.error_cap:
            summary["errors"].append(message)
        else:
            self._overflow += 1

    async def _process_batch(
        self,
        client: GalleryClient,
        token: str,
        batch: list[tuple[int, int, dict[str, Any], int]],
        summary: dict[str, Any],
    ) -> None:
        """Process one batch; per-case failures are recorded, not raised."""
        for case_id, procedure_id, label, position in batch:
            try:
                outcome = await self._process_case(
                    client, token, case_id, procedure_id, label, position
                )
                summary[outcome] += 1
            except Exception as e:
                failure = e if isinstance(e, PartialFailure) else PartialFailure(case_id, str(e))
                summary["failed"] += 1
                self._record_error(summary, str(failure))
                logger.warning("case_failed", case_id=case_id, error=str(e))
            finally:
                summary["processed"] += 1

    async def _process_case(
        self,
        client: GalleryClient,
        token: str,
        case_id: int,
        procedure_id: int,
        label: dict[str, Any],
        position: int,
    ) -> str:
        """Fetch one case and upsert its entity.

        Returns:
            "created" or "updated"
        """
        payload = await client.fetch_case(token, case_id, procedure_id)
        remote_id = int(payload.get("id") or case_id)

        images = self._image_urls(payload)
        files: dict[str, str | None] = {}
        if self.tuning.download_images:
            for url in images["all"]:
                files[url] = await self._download_image(client, remote_id, url)

        labels = self._labels
        with self.store.bulk_writes():
            entity_id = self.store.find_entity_by_meta(CASE_ID_META, remote_id)
            fields = {
                "title": f"{label['name']} #{remote_id}",
                "slug": self._case_slug(payload, remote_id),
                "status": "draft" if payload.get("draft") else "publish",
                "body": str(payload.get("description") or payload.get("details") or ""),
            }
            if entity_id is None:
                entity_id = self.store.create_entity(**fields)
                outcome = "created"
            else:
                self.store.update_entity(entity_id, **fields)
                outcome = "updated"

            self._write_case_meta(entity_id, remote_id, procedure_id, position, payload, images)
            self._assign_case_labels(entity_id, procedure_id, payload, labels)
            if self.tuning.download_images:
                self._attach_images(entity_id, images, files)
            self.store.map_case(remote_id, entity_id, procedure_id)

        return outcome

    @staticmethod
    def _case_slug(payload: dict[str, Any], case_id: int) -> str:
        for detail in payload.get("caseDetails") or []:
            if isinstance(detail, dict) and detail.get("seoSuffixUrl"):
                return slugify(detail["seoSuffixUrl"]) or str(case_id)
        return str(case_id)

    def _write_case_meta(
        self,
        entity_id: int,
        case_id: int,
        procedure_id: int,
        position: int,
        payload: dict[str, Any],
        images: dict[str, Any],
    ) -> None:
        store = self.store
        store.set_meta(entity_id, CASE_ID_META, case_id)
        store.set_meta(entity_id, "synced_at", _now())
        store.set_meta(entity_id, "procedure_id", procedure_id)
        procedure_ids = self._valid_ids(payload.get("procedureIds")) or [procedure_id]
        store.set_meta(entity_id, "procedure_ids", ",".join(map(str, procedure_ids)))
        store.set_meta(entity_id, "case_order", position)

        for api_field, meta_key in CASE_FIELD_META.items():
            if api_field in payload and payload[api_field] is not None:
                store.set_meta(entity_id, meta_key, payload[api_field])

        store.set_meta(
            entity_id,
            "patient_info",
            {field: payload[field] for field in PATIENT_FIELDS if payload.get(field) is not None},
        )
        details = payload.get("procedureDetails")
        store.set_meta(entity_id, "procedure_details", details if isinstance(details, dict) else {})
        seo = [
            {field: detail.get(field) for field in SEO_FIELDS if detail.get(field)}
            for detail in payload.get("caseDetails") or []
            if isinstance(detail, dict)
        ]
        store.set_meta(entity_id, "seo_data", seo)
        store.set_meta(entity_id, "before_images", images["before"])
        store.set_meta(entity_id, "after_images", images["after"])

    def _assign_case_labels(
        self,
        entity_id: int,
        procedure_id: int,
        payload: dict[str, Any],
        labels: dict[int, dict[str, Any]],
    ) -> None:
        procedure_ids = self._valid_ids(payload.get("procedureIds"))
        if not procedure_ids and isinstance(payload.get("procedureDetails"), dict):
            procedure_ids = self._valid_ids(list(payload["procedureDetails"].keys()))
        if procedure_id not in procedure_ids:
            procedure_ids.append(procedure_id)

        procedure_labels = [labels[p] for p in procedure_ids if p in labels]
        self.store.set_entity_labels(
            entity_id, TAXONOMY_PROCEDURE, [label["id"] for label in procedure_labels]
        )
        category_ids = [label["parent"] for label in procedure_labels if label["parent"]]
        self.store.set_entity_labels(entity_id, TAXONOMY_CATEGORY, category_ids)

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    @staticmethod
    def _image_urls(payload: dict[str, Any]) -> dict[str, Any]:
        before: list[str] = []
        after: list[str] = []
        featured: str | None = None
        for photo_set in payload.get("photoSets") or []:
            if not isinstance(photo_set, dict):
                continue
            if photo_set.get("beforeLocationUrl"):
                before.append(photo_set["beforeLocationUrl"])
            after_url = photo_set.get("afterLocationUrl1") or photo_set.get("afterLocationUrl")
            if after_url:
                after.append(after_url)
            if featured is None and photo_set.get("postProcessedImageLocation"):
                featured = photo_set["postProcessedImageLocation"]
        all_urls = list(dict.fromkeys(before + after + ([featured] if featured else [])))
        return {"before": before, "after": after, "featured": featured, "all": all_urls}

    async def _download_image(self, client: GalleryClient, case_id: int, url: str) -> str | None:
        """Download an image once; an existing attachment for the URL is reused."""
        existing = self.store.find_attachment_by_url(url)
        if existing and existing["file_path"] and Path(existing["file_path"]).is_file():
            return existing["file_path"]

        case_dir = Path(self.config.storage.upload_dir) / "cases" / str(case_id)
        target = case_dir / image_filename(url)
        target.parent.mkdir(parents=True, exist_ok=True)

        content = await client.download_image(url)
        target.write_bytes(content)
        logger.debug("image_downloaded", case_id=case_id, url=url, path=str(target))
        return str(target)

    def _attach_images(
        self, entity_id: int, images: dict[str, Any], files: dict[str, str | None]
    ) -> None:
        ids: dict[str, int] = {}
        for url in images["all"]:
            path = files.get(url)
            existing = self.store.find_attachment_by_url(url)
            if existing is not None:
                self.store.update_attachment(existing["id"], entity_id=entity_id, file_path=path)
                ids[url] = existing["id"]
            else:
                ids[url] = self.store.create_attachment(entity_id, url, path)

        before_ids = [ids[url] for url in images["before"] if url in ids]
        after_ids = [ids[url] for url in images["after"] if url in ids]
        self.store.set_meta(entity_id, "before_image_ids", before_ids)
        self.store.set_meta(entity_id, "after_image_ids", after_ids)

        featured = images["featured"] or (images["before"][0] if images["before"] else None)
        if featured and featured in ids:
            self.store.set_meta(entity_id, "thumbnail_id", ids[featured])

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def run_stage(self, stage: int) -> dict[str, Any]:
        """Run a single stage as its own operation, owning the progress slot."""
        runners = {1: self.run_stage_1, 2: self.run_stage_2, 3: self.run_stage_3}
        if stage not in runners:
            raise ValidationError(f"Invalid stage: {stage}. Expected 1, 2 or 3.")

        name = f"stage_{stage}"
        self.progress.start(f"Starting stage {stage}", stage=name)
        self._set_state(f"stage{stage}-running")
        try:
            result = await runners[stage](self.progress.scaled(0, 100, name))
        except Exception as e:
            self._set_state("failed")
            self.progress.halt(f"Stage {stage} failed: {e}", stage=name)
            raise
        self._set_state(f"stage{stage}-done")
        self.progress.complete(f"Stage {stage} completed", stage=name)
        return result

    async def run_full_sync(self) -> dict[str, Any]:
        """Run stages 1-3 in sequence.

        Progress is each stage's own 0-100% rescaled into 0-33, 33-66 and
        66-100. The stop flag is checked only before each stage.

        Returns:
            {"status": "completed" | "stopped", "state", "stages": {...}}
        """
        runners = {1: self.run_stage_1, 2: self.run_stage_2, 3: self.run_stage_3}
        results: dict[str, Any] = {}

        self.clear_stop()
        self.progress.start("Starting full sync", stage="full")
        self._set_state("idle")
        self.store.ensure_sync_tables()
        log_id = self.store.start_sync_log("full", self.tuning.source)

        for stage, (start, end) in STAGE_BOUNDS.items():
            if self.stop_requested():
                self._set_state("stopped")
                self.progress.halt(f"Stopped before stage {stage}", stage="full")
                self.store.finish_sync_log(log_id, "failed", errors=["Stopped by operator"])
                self.clear_stop()
                logger.info("full_sync_stopped", before_stage=stage)
                return {"status": "stopped", "state": "stopped", "stages": results}

            name = f"stage_{stage}"
            self._set_state(f"stage{stage}-running")
            try:
                results[name] = await runners[stage](self.progress.scaled(start, end, name))
            except Exception as e:
                self._set_state("failed")
                self.progress.halt(f"Stage {stage} failed: {e}", stage=name)
                self.store.finish_sync_log(log_id, "failed", errors=[str(e)])
                raise

            self.progress.update(end, f"Stage {stage} completed", stage=name)
            self._set_state(f"stage{stage}-done" if stage < 3 else "completed")

        stage_3 = results.get("stage_3", {})
        self.store.finish_sync_log(
            log_id,
            "completed",
            stage_3.get("processed", 0),
            stage_3.get("failed", 0),
        )
        self.progress.complete("Full sync completed", stage="full")
        logger.info("full_sync_completed")
        return {"status": "completed", "state": "completed", "stages": results}
