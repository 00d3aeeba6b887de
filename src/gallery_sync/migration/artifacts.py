"""Durable artifacts shared between sync stages.

Stages run as separate invocations, so everything one stage hands to the
next lives here: the Sync Data snapshot (Stage 1 → Stage 2), the Manifest
(Stage 2 → Stage 3), and the Stage 3 summary.
"""

import json
import os
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from gallery_sync.client.exceptions import StateError, ValidationError
from gallery_sync.migration.store import ContentStore
from gallery_sync.utils.logging import get_logger

logger = get_logger(__name__)

SYNC_DATA = "sync_data"
MANIFEST = "manifest"
ARTIFACT_KINDS = {SYNC_DATA: "sync-data", MANIFEST: "manifest"}

STAGE3_SUMMARY_SETTING = "stage3_last_run"


class ArtifactStore:
    """Reads and writes sync artifacts as dated JSON files in one directory.

    Each kind is written to ``{prefix}-YYYY-MM-DD.json``. A sync cycle spans
    ``max_age_days`` days before today (0 means today only); files dated
    before the cycle are stale and ignored, so a new cycle fetches fresh
    remote data. Within the cycle the newest file is current.
    """

    def __init__(self, sync_dir: str | Path, store: ContentStore, max_age_days: int = 0):
        self.sync_dir = Path(sync_dir)
        self.store = store
        self.max_age_days = max_age_days

    def _prefix(self, kind: str) -> str:
        if kind not in ARTIFACT_KINDS:
            raise ValidationError(
                f"Unknown artifact kind: {kind}. Expected one of: {', '.join(ARTIFACT_KINDS)}"
            )
        return ARTIFACT_KINDS[kind]

    def _files(self, kind: str) -> list[Path]:
        prefix = self._prefix(kind)
        if not self.sync_dir.is_dir():
            return []
        return sorted(self.sync_dir.glob(f"{prefix}-*.json"))

    def _cycle_start(self) -> str:
        return (datetime.now(UTC).date() - timedelta(days=self.max_age_days)).isoformat()

    def _is_current(self, kind: str, path: Path) -> bool:
        file_date = path.stem[len(self._prefix(kind)) + 1 :]
        return file_date >= self._cycle_start()

    def path_for(self, kind: str) -> Path | None:
        """Path of the current file of a kind, if any."""
        files = [path for path in self._files(kind) if self._is_current(kind, path)]
        return files[-1] if files else None

    def exists(self, kind: str) -> bool:
        return self.path_for(kind) is not None

    def read(self, kind: str) -> dict[str, Any] | None:
        """Load the current artifact of a kind.

        Raises:
            StateError: If the file exists but is not a JSON object
        """
        path = self.path_for(kind)
        if path is None:
            return None

        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise StateError(f"Failed to read {kind} artifact {path}: {e}") from e

        if not isinstance(data, dict):
            raise StateError(f"Artifact {path} does not contain a JSON object")
        return data

    def write(self, kind: str, data: dict[str, Any]) -> Path:
        """Write an artifact, stamping it with a timestamp if missing.

        The file is written to a temporary name and renamed into place so a
        reader never sees a half-written document.
        """
        self.sync_dir.mkdir(parents=True, exist_ok=True)
        now = datetime.now(UTC)
        document = {"timestamp": now.isoformat(), **data}

        path = self.sync_dir / f"{self._prefix(kind)}-{now.strftime('%Y-%m-%d')}.json"
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=2)
        os.replace(tmp_path, path)
        for stale in self._files(kind):
            if not self._is_current(kind, stale):
                stale.unlink(missing_ok=True)

        logger.info("artifact_written", kind=kind, path=str(path))
        return path

    def delete(self, kind: str) -> bool:
        """Delete every file of a kind so the producing stage runs again.

        Returns:
            True if at least one file was removed
        """
        files = self._files(kind)
        for path in files:
            path.unlink(missing_ok=True)
        logger.info("artifact_deleted", kind=kind, files=len(files))
        return bool(files)

    def read_summary(self) -> dict[str, Any] | None:
        return self.store.get_setting(STAGE3_SUMMARY_SETTING)

    def write_summary(self, summary: dict[str, Any]) -> None:
        self.store.set_setting(STAGE3_SUMMARY_SETTING, summary)
