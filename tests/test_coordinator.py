import pytest

from gallery_sync.migration.artifacts import MANIFEST, SYNC_DATA
from gallery_sync.migration.coordinator import (
    ARCHIVED_META,
    HIDDEN_META,
    PRESERVED_API_SETTINGS,
    PRESERVED_LOCAL_SETTINGS,
    MigrationCoordinator,
)
from gallery_sync.migration.state import STATUS_COMPLETED, STATUS_FAILED, STATUS_RUNNING, MigrationState
from gallery_sync.migration.validator import MODE_API, MODE_LOCAL, MODE_SETTING


@pytest.fixture
def coordinator(config, store, client, artifacts, progress, pipeline):
    return MigrationCoordinator(
        config, store, client=client, artifacts=artifacts, progress=progress, pipeline=pipeline
    )


@pytest.fixture
async def local_mode(coordinator):
    assert await coordinator.migrate_to_local({"batch_size": 2}), coordinator.last_error
    return coordinator


def test_rollback_without_backup_leaves_settings_alone(coordinator, store):
    store.set_setting(MODE_SETTING, MODE_LOCAL)
    store.set_setting("api_url", "https://gallery.test")
    entity_id = store.create_entity(title="Case", slug="case", status="draft")

    assert coordinator.rollback() is False

    assert store.get_setting(MODE_SETTING) == MODE_LOCAL
    assert store.get_setting("api_url") == "https://gallery.test"
    assert store.get_entity(entity_id)["status"] == "draft"


def test_rollback_twice_is_a_no_op(coordinator, store):
    store.set_setting(MODE_SETTING, MODE_API)
    coordinator.backup.create_backup()
    store.set_setting(MODE_SETTING, MODE_LOCAL)

    assert coordinator.rollback() is True
    store.set_setting("api_url", "https://after-rollback.test")

    assert coordinator.rollback() is False
    assert store.get_setting(MODE_SETTING) == MODE_API
    assert store.get_setting("api_url") == "https://after-rollback.test"


def test_rollback_restores_settings_and_statuses(coordinator, store):
    store.set_setting(MODE_SETTING, MODE_API)
    entity_id = store.create_entity(title="Case", slug="case", status="publish")
    coordinator.backup.create_backup()

    store.set_setting(MODE_SETTING, MODE_LOCAL)
    store.set_setting("api_url", "https://other.test")
    store.set_entity_status(entity_id, "draft")

    assert coordinator.rollback() is True
    assert store.get_setting(MODE_SETTING) == MODE_API
    # Captured as absent, so removed again
    assert store.has_setting("api_url") is False
    assert store.get_entity(entity_id)["status"] == "publish"
    assert coordinator.backup.has_backup() is False


def test_backup_keeps_only_latest_snapshot(coordinator, store):
    store.set_setting(MODE_SETTING, MODE_API)
    coordinator.backup.create_backup()
    store.set_setting(MODE_SETTING, MODE_LOCAL)
    coordinator.backup.create_backup()

    assert coordinator.backup.get_backup()["settings"][MODE_SETTING] == MODE_LOCAL

    coordinator.backup.clear_backup()

    assert coordinator.backup.get_backup() is None
    assert coordinator.rollback() is False


async def test_migrate_to_local(local_mode, store, client):
    coordinator = local_mode

    assert store.get_setting(MODE_SETTING) == MODE_LOCAL
    assert store.count_entities() == 5
    status = coordinator.get_status()
    assert status["status"] == STATUS_COMPLETED
    assert status["type"] == "to-local"
    assert status["lease_holder"] is None
    assert status["has_backup"] is True
    assert store.get_setting(PRESERVED_API_SETTINGS)["api_url"] == "https://gallery.test"
    assert client.calls["test_connection"] == 1


async def test_migrate_to_local_applies_options(coordinator, store, client):
    store.set_cached("gallery_api_sidebar", {"cached": True})

    assert await coordinator.migrate_to_local(
        {"import_images": False, "cleanup_after": True, "preserve_settings": False}
    )

    assert client.calls["download_image"] == 0
    assert store.get_cached("gallery_api_sidebar") is None
    assert store.has_setting(PRESERVED_API_SETTINGS) is False


async def test_invalid_options_leave_status_untouched(coordinator, store):
    assert await coordinator.migrate_to_local({"batch_size": "ten"}) is False

    assert "batch_size" in coordinator.last_error
    assert coordinator.get_status()["status"] == "idle"
    assert coordinator.backup.has_backup() is False
    assert store.count_entities() == 0


async def test_to_api_option_conflict_is_rejected(coordinator):
    assert await coordinator.migrate_to_api({"preserve_data": False, "archive_posts": True}) is False
    assert "archive_posts" in coordinator.last_error


async def test_held_lease_blocks_second_migration(coordinator, store):
    other = MigrationState(store, owner="other-operator")
    assert other.acquire_lease()
    other.set_status("to-api", STATUS_RUNNING)

    assert await coordinator.migrate_to_local() is False

    assert "in progress" in coordinator.last_error
    # The running migration's status is not overwritten
    assert coordinator.get_status()["status"] == STATUS_RUNNING
    assert coordinator.get_status()["lease_holder"] == "other-operator"


async def test_failed_preflight_marks_migration_failed(coordinator, client, store):
    client.connected = False

    assert await coordinator.migrate_to_local() is False

    status = coordinator.get_status()
    assert status["status"] == STATUS_FAILED
    assert "api_connectivity" in status["message"]
    assert status["lease_holder"] is None
    assert store.count_entities() == 0


async def test_insufficient_memory_is_a_precondition(coordinator, monkeypatch):
    coordinator.config.migration.min_memory_mb = 1024
    monkeypatch.setattr(coordinator, "available_memory_mb", lambda: 64)

    assert await coordinator.migrate_to_local() is False
    assert "Insufficient memory" in coordinator.last_error
    assert coordinator.get_status()["status"] == "idle"


async def test_migrate_to_api_hides_entities(local_mode, store, artifacts):
    coordinator = local_mode

    assert await coordinator.migrate_to_api(), coordinator.last_error

    assert store.get_setting(MODE_SETTING) == MODE_API
    assert all(value == "1" for _, value in store.meta_values(HIDDEN_META))
    assert len(store.meta_values(HIDDEN_META)) == 5
    assert store.count_entities("publish") == 5
    assert not artifacts.exists(SYNC_DATA)
    assert not artifacts.exists(MANIFEST)
    assert store.has_setting(PRESERVED_LOCAL_SETTINGS)


async def test_migrate_to_api_archives_entities(local_mode, store):
    coordinator = local_mode

    assert await coordinator.migrate_to_api({"archive_posts": True})

    assert store.count_entities("publish") == 0
    assert store.count_entities("draft") == 5
    assert len(store.meta_values(ARCHIVED_META)) == 5


async def test_migrate_to_api_deletes_data_keeping_images(local_mode, store):
    coordinator = local_mode
    files = [a["file_path"] for a in store.list_attachments()]

    assert await coordinator.migrate_to_api({"preserve_data": False, "keep_images": True})

    assert store.count_entities() == 0
    assert store.has_sync_log_table() is False
    attachments = store.list_attachments()
    assert len(attachments) == len(files)
    assert all(a["entity_id"] == 0 for a in attachments)


async def test_rollback_after_archive_restores_statuses(local_mode, store):
    coordinator = local_mode
    assert await coordinator.migrate_to_api({"archive_posts": True})

    assert coordinator.rollback() is True

    assert store.get_setting(MODE_SETTING) == MODE_LOCAL
    assert store.count_entities("publish") == 5
    assert coordinator.get_status()["status"] == "idle"


async def test_preflight_checks_report_each_check(coordinator, client):
    client.connected = False

    local = await coordinator.preflight_checks(MODE_LOCAL)
    api = await coordinator.preflight_checks(MODE_API)

    assert local == {
        "database": True,
        "file_permissions": True,
        "api_connectivity": False,
        "storage_space": True,
    }
    assert api == {"database": True, "file_permissions": True}


def test_export_and_import_through_coordinator(coordinator, store):
    entity_id = store.create_entity(title="Case", slug="case")
    store.set_meta(entity_id, "case_id", 11)

    document = coordinator.export_data()
    result = coordinator.import_data(document)

    assert result["imported"] is True
    assert result["counts"]["entities"] == 1
    assert store.count_entities() == 1


def test_import_rejection_is_reported(coordinator):
    result = coordinator.import_data({"version": "99.0.0", "timestamp": "now"})

    assert result["imported"] is False
    assert "Unsupported version" in result["errors"][0]
