from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import event

from gallery_sync.client.exceptions import StateError, ValidationError
from gallery_sync.migration.artifacts import MANIFEST, SYNC_DATA, ArtifactStore
from gallery_sync.migration.database import get_engine, get_session, utcnow
from gallery_sync.migration.models import SyncLog
from gallery_sync.migration.state import STATUS_RUNNING, MigrationState
from gallery_sync.migration.store import TAXONOMY_CATEGORY


def test_settings_round_trip_json_values(store):
    store.set_setting("mode_settings", {"cache": 300, "enabled": True})

    assert store.get_setting("mode_settings") == {"cache": 300, "enabled": True}
    assert store.has_setting("mode_settings")
    assert store.delete_setting("mode_settings") is True
    assert store.get_setting("mode_settings", "fallback") == "fallback"


def test_cache_entries_expire(store):
    store.set_cached("gallery_api_cases", [1, 2], ttl=300)
    store.set_cached("gallery_api_sidebar", {"ok": True})
    store.set_cached("other", 1)

    assert store.get_cached("gallery_api_cases") == [1, 2]
    assert store.delete_cached_prefix("gallery_api_") == 2
    assert store.get_cached("gallery_api_sidebar") is None
    assert store.get_cached("other") == 1


def test_transaction_rolls_back_every_write(store):
    with pytest.raises(StateError):
        with store.transaction():
            store.create_entity(title="Case", slug="case")
            store.set_setting("mode", "local")
            # Violates the status check constraint
            store.create_entity(title="Bad", slug="bad", status="unknown")

    assert store.count_entities() == 0
    assert store.get_setting("mode") is None


def test_bulk_writes_toggle_foreign_keys_outside_the_transaction(store):
    pragmas = []

    def record(conn, cursor, statement, parameters, context, executemany):
        if statement.startswith("PRAGMA foreign_keys"):
            pragmas.append((statement, cursor.connection.in_transaction))

    engine = get_engine()
    event.listen(engine, "before_cursor_execute", record)
    try:
        with store.bulk_writes():
            store.create_entity(title="Case", slug="case")
    finally:
        event.remove(engine, "before_cursor_execute", record)

    # SQLite ignores the pragma inside an open transaction
    assert pragmas == [("PRAGMA foreign_keys=OFF", False), ("PRAGMA foreign_keys=ON", False)]
    assert store.count_entities() == 1


def test_bulk_writes_roll_back_on_failure(store):
    with pytest.raises(StateError):
        with store.bulk_writes():
            store.create_entity(title="Case", slug="case")
            store.create_entity(title="Bad", slug="bad", status="unknown")

    assert store.count_entities() == 0


def test_update_entity_rejects_unknown_fields(store):
    entity_id = store.create_entity(title="Case", slug="case")

    with pytest.raises(StateError):
        store.update_entity(entity_id, color="blue")


def test_entity_meta_and_lookup(store):
    entity_id = store.create_entity(title="Case", slug="case")
    store.set_meta(entity_id, "case_id", 42)
    store.set_meta(entity_id, "seo_data", [{"seoHeadline": "Results"}])

    assert store.find_entity_by_meta("case_id", 42) == entity_id
    assert store.get_json_meta(entity_id, "seo_data") == [{"seoHeadline": "Results"}]
    assert store.entities_missing_meta("case_id") == []

    other = store.create_entity(title="Other", slug="other")
    assert store.entities_missing_meta("case_id") == [other]


def test_label_assignment_replaces_within_taxonomy(store):
    entity_id = store.create_entity(title="Case", slug="case")
    first = store.create_label(TAXONOMY_CATEGORY, "Breast", "breast")
    second = store.create_label(TAXONOMY_CATEGORY, "Face", "face")

    store.set_entity_labels(entity_id, TAXONOMY_CATEGORY, [first, first])
    store.set_entity_labels(entity_id, TAXONOMY_CATEGORY, [second])

    assert [label["id"] for label in store.get_entity_labels(entity_id)] == [second]
    assert store.label_usage(first) == 0


def test_delete_entity_removes_meta(store):
    entity_id = store.create_entity(title="Case", slug="case")
    store.set_meta(entity_id, "case_id", 1)

    assert store.delete_entity(entity_id) is True
    assert store.meta_values("case_id") == []


def test_sync_log_and_stats(store):
    log_id = store.start_sync_log("stage_1", "manual")
    store.finish_sync_log(log_id, "completed", items_processed=5)
    failed_id = store.start_sync_log("stage_2", "cron")
    store.finish_sync_log(failed_id, "failed", errors=["boom"])

    stats = store.sync_stats()

    assert stats["total_syncs"] == 2
    assert stats["successful_syncs"] == 1
    assert stats["failed_syncs"] == 1
    assert stats["last_sync"] is not None
    assert store.recent_sync_logs(1)[0]["error_messages"] == "boom"


def test_prune_sync_logs_keeps_recent_rows(store):
    old_id = store.start_sync_log("stage_1")
    recent_id = store.start_sync_log("stage_2")
    with get_session() as session:
        session.get(SyncLog, old_id).started_at = utcnow() - timedelta(days=120)

    assert store.prune_sync_logs(90) == 1
    assert [row["id"] for row in store.recent_sync_logs()] == [recent_id]
    assert store.prune_sync_logs(90) == 0


def test_sync_tables_can_be_dropped_and_recreated(store):
    store.drop_sync_tables()

    assert store.has_sync_log_table() is False
    assert store.recent_sync_logs() == []
    assert store.sync_stats()["total_syncs"] == 0

    store.ensure_sync_tables()
    assert store.has_case_map_table() is True


def test_orphaned_case_maps(store):
    entity_id = store.create_entity(title="Case", slug="case")
    store.map_case(7, entity_id, 101)
    store.map_case(8, 999, 101)

    assert store.orphaned_case_maps() == [{"api_case_id": 8, "entity_id": 999}]


def test_artifacts_write_read_delete(artifacts):
    assert artifacts.read(MANIFEST) is None

    path = artifacts.write(MANIFEST, {"entries": {"101": {"case_ids": [1]}}})

    assert path.name.startswith("manifest-")
    document = artifacts.read(MANIFEST)
    assert document["entries"]["101"]["case_ids"] == [1]
    assert "timestamp" in document
    assert artifacts.delete(MANIFEST) is True
    assert artifacts.delete(MANIFEST) is False


def test_artifacts_newest_file_wins(artifacts, config):
    artifacts.write(SYNC_DATA, {"categories": ["new"]})
    older = artifacts.sync_dir / "sync-data-2000-01-01.json"
    older.write_text('{"categories": ["old"]}', encoding="utf-8")

    assert artifacts.read(SYNC_DATA)["categories"] == ["new"]


def test_artifacts_from_a_past_cycle_are_stale(artifacts):
    artifacts.sync_dir.mkdir(parents=True, exist_ok=True)
    (artifacts.sync_dir / "manifest-2020-01-01.json").write_text(
        '{"entries": {}}', encoding="utf-8"
    )

    assert artifacts.exists(MANIFEST) is False
    assert artifacts.read(MANIFEST) is None

    artifacts.write(MANIFEST, {"entries": {}})

    assert [path.name for path in artifacts.sync_dir.glob("manifest-*.json")] == [
        f"manifest-{datetime.now(UTC).date().isoformat()}.json"
    ]


def test_artifact_cycle_can_span_several_days(config, store):
    lenient = ArtifactStore(config.storage.sync_dir, store, max_age_days=3)
    lenient.sync_dir.mkdir(parents=True, exist_ok=True)
    yesterday = datetime.now(UTC).date() - timedelta(days=1)
    (lenient.sync_dir / f"manifest-{yesterday.isoformat()}.json").write_text(
        '{"entries": {"101": {"case_ids": [1]}}}', encoding="utf-8"
    )

    assert lenient.read(MANIFEST)["entries"]["101"]["case_ids"] == [1]
    assert ArtifactStore(config.storage.sync_dir, store).exists(MANIFEST) is False


def test_artifacts_reject_unknown_kind_and_bad_files(artifacts):
    with pytest.raises(ValidationError):
        artifacts.read("checkpoint")

    path = artifacts.write(MANIFEST, {"entries": {}})
    path.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(StateError):
        artifacts.read(MANIFEST)


def test_progress_never_decreases_while_active(progress):
    progress.start("Starting")
    progress.update(40, "Halfway")
    progress.update(10, "Late report")

    assert progress.get()["percentage"] == 40

    progress.halt("Stopped")
    slot = progress.get()
    assert slot["active"] is False
    assert slot["percentage"] == 40


def test_scaled_progress_maps_into_range(progress):
    progress.start()
    view = progress.scaled(33, 66, "stage_2")

    view.update(50, "Half of stage 2")

    slot = progress.get()
    assert slot["percentage"] == pytest.approx(49.5)
    assert slot["stage"] == "stage_2"


def test_lease_is_exclusive(store):
    first = MigrationState(store, owner="first")
    second = MigrationState(store, owner="second")

    assert first.acquire_lease() is True
    assert second.acquire_lease() is False
    assert first.lease_holder() == "first"

    first.release_lease()
    assert second.acquire_lease() is True
    assert second.lease_holder() == "second"


def test_expired_lease_can_be_taken_over(store):
    # A zero-second lease is already expired when the next caller looks
    stale = MigrationState(store, lease_seconds=0, owner="stale")
    fresh = MigrationState(store, owner="fresh")

    assert stale.acquire_lease() is True
    assert fresh.acquire_lease() is True
    assert fresh.lease_holder() == "fresh"


def test_migration_status_record(store):
    state = MigrationState(store)

    assert state.get_status().status == "idle"
    state.set_status("to-local", STATUS_RUNNING, "Syncing")

    status = state.get_status()
    assert status.type == "to-local"
    assert state.is_running() is True
    assert status.timestamp is not None

    state.clear_status()
    assert state.is_running() is False
