"""Shared fixtures: an isolated SQLite content store and a scripted gallery client."""

from collections import Counter
from pathlib import Path
from typing import Any

import pytest

from gallery_sync.client.exceptions import NotFoundError
from gallery_sync.config import (
    GalleryConfig,
    MigrationGuardConfig,
    RetryConfig,
    StateConfig,
    StorageConfig,
    SyncConfig,
    SyncTuningConfig,
)
from gallery_sync.migration.artifacts import ArtifactStore
from gallery_sync.migration.pipeline import SyncPipeline
from gallery_sync.migration.store import ContentStore
from gallery_sync.reporting.progress import ProgressTracker

CATEGORIES = [
    {
        "name": "Breast",
        "slugName": "breast",
        "description": "Breast procedures",
        "totalCase": 5,
        "nudity": True,
        "procedures": [
            {
                "name": "Breast Augmentation",
                "slugName": "breast-augmentation",
                "ids": [101],
                "totalCase": 3,
                "nudity": True,
            },
            {
                "name": "Breast Lift",
                "slugName": "breast-lift",
                "ids": [102],
                "totalCase": 2,
            },
        ],
    },
    {
        "name": "Face",
        "totalCase": 0,
        "procedures": [{"name": "Facelift", "ids": [201], "totalCase": 0}],
    },
]

# Procedure id -> pages of case ids
CASE_PAGES = {101: [[1, 2], [3]], 102: [[4, 5]]}


def case_payload(case_id: int, procedure_id: int) -> dict[str, Any]:
    return {
        "id": case_id,
        "procedureIds": [procedure_id],
        "description": f"Case {case_id} description",
        "age": 40,
        "gender": "female",
        "qualityScore": 4,
        "photoSets": [
            {
                "beforeLocationUrl": f"https://img.gallery.test/{case_id}/before.jpg",
                "afterLocationUrl1": f"https://img.gallery.test/{case_id}/after.jpg",
            }
        ],
        "caseDetails": [{"seoSuffixUrl": f"Case {case_id}", "seoHeadline": "Results"}],
    }


class FakeGalleryClient:
    """In-memory stand-in for GalleryClient that counts every call."""

    def __init__(
        self,
        categories: list[dict[str, Any]] | None = None,
        pages: dict[int, list[list[int]]] | None = None,
    ):
        self.categories = categories if categories is not None else CATEGORIES
        self.pages = pages if pages is not None else CASE_PAGES
        self.failing_cases: set[int] = set()
        self.connected = True
        self.calls: Counter[str] = Counter()
        self.on_fetch_categories = None

    async def fetch_categories(self, token: str) -> list[dict[str, Any]]:
        self.calls["fetch_categories"] += 1
        if self.on_fetch_categories is not None:
            self.on_fetch_categories()
        return self.categories

    async def fetch_case_ids(self, token: str, procedure_id: int, page: int) -> dict[str, Any]:
        self.calls["fetch_case_ids"] += 1
        pages = self.pages.get(procedure_id, [])
        ids = pages[page - 1] if page <= len(pages) else []
        return {"ids": ids, "has_more": bool(ids)}

    async def fetch_case(
        self, token: str, case_id: int, procedure_id: int | None = None
    ) -> dict[str, Any]:
        self.calls["fetch_case"] += 1
        if case_id in self.failing_cases:
            raise NotFoundError(message=f"No data returned for case {case_id}")
        return case_payload(case_id, procedure_id)

    async def download_image(self, url: str) -> bytes:
        self.calls["download_image"] += 1
        return b"\xff\xd8\xff" + url.encode()

    async def test_connection(self) -> bool:
        self.calls["test_connection"] += 1
        return self.connected

    async def close(self) -> None:
        self.calls["close"] += 1


@pytest.fixture
def config(tmp_path: Path) -> SyncConfig:
    return SyncConfig(
        gallery=GalleryConfig(url="https://gallery.test", token="test-token", property_id="7"),
        storage=StorageConfig(
            sync_dir=str(tmp_path / "sync"),
            upload_dir=str(tmp_path / "uploads"),
            export_dir=str(tmp_path / "exports"),
            min_free_bytes=0,
        ),
        state=StateConfig(db_path=str(tmp_path / "gallery.db")),
        sync=SyncTuningConfig(batch_size=2, page_delay=0, batch_pause=0),
        migration=MigrationGuardConfig(min_memory_mb=0),
        retry=RetryConfig(max_attempts=2, min_wait=0, max_wait=0),
    )


@pytest.fixture
def store(config: SyncConfig) -> ContentStore:
    return ContentStore(config.state)


@pytest.fixture
def client() -> FakeGalleryClient:
    return FakeGalleryClient()


@pytest.fixture
def artifacts(config: SyncConfig, store: ContentStore) -> ArtifactStore:
    return ArtifactStore(config.storage.sync_dir, store)


@pytest.fixture
def progress(store: ContentStore) -> ProgressTracker:
    return ProgressTracker(store, ttl=300)


@pytest.fixture
def pipeline(config, store, artifacts, progress, client) -> SyncPipeline:
    return SyncPipeline(config, store, artifacts, progress, client)
