import pytest

from gallery_sync.client.exceptions import ConfigurationError, NetworkError, PreconditionError
from gallery_sync.service import GalleryService, ServiceResponse, error_code_for


@pytest.fixture
async def service(config, store, client):
    async with GalleryService(config, store=store, client=client) as service:
        yield service


def test_error_code_for():
    assert error_code_for(ConfigurationError("x")) == "configuration"
    assert error_code_for(NetworkError("x")) == "connectivity"
    assert error_code_for(PreconditionError("x")) == "precondition"
    assert error_code_for(RuntimeError("x")) == "error"


def test_response_helpers():
    assert ServiceResponse.ok({"a": 1}).success is True
    failed = ServiceResponse.fail("nope", "state")
    assert failed.success is False
    assert failed.error_code == "state"


async def test_start_stage(service):
    response = await service.start_stage(1)

    assert response.success is True
    assert response.data["created"] == 5


async def test_failures_become_envelopes(service):
    invalid = await service.start_stage(7)
    missing = await service.start_stage(3)

    assert invalid.success is False
    assert invalid.error_code == "validation"
    assert missing.error_code == "precondition"
    assert "stage 2" in missing.message


async def test_full_sync_and_progress(service):
    response = await service.run_full_sync()
    progress = await service.get_progress()

    assert response.data["status"] == "completed"
    assert progress.data["percentage"] == 100
    assert progress.data["state"] == "completed"


async def test_stop_sets_flag(service):
    response = await service.stop()

    assert response.success is True
    assert service.pipeline.stop_requested() is True


async def test_delete_missing_artifact(service):
    response = await service.delete_artifact("manifest")

    assert response.success is True
    assert response.data == {"deleted": False}


async def test_migrate_directions(service, store):
    bad = await service.migrate("sideways")
    local = await service.migrate("local", {"batch_size": 3})

    assert bad.error_code == "validation"
    assert local.success is True, local.message
    assert local.data["status"] == "completed"
    assert store.get_setting("mode") == "local"


async def test_failed_migration_reports_status(service, client):
    client.connected = False

    response = await service.migrate("to-local")

    assert response.success is False
    assert response.error_code == "migration"
    assert response.data["status"] == "failed"


async def test_rollback_without_backup(service):
    response = await service.rollback()

    assert response.success is False
    assert response.error_code == "state"


async def test_status_overview(service):
    await service.start_stage(1)

    response = await service.status()

    assert response.data["migration"]["status"] == "idle"
    assert response.data["sync_state"] == "stage1-done"
    assert response.data["artifacts"]["sync_data"] is not None
    assert response.data["artifacts"]["manifest"] is None


async def test_validate_and_fix(service):
    report = await service.validate("api")
    fixed = await service.fix()

    assert report.success is True
    assert report.data["mode"] == "api"
    assert fixed.data["fixed"] == 0


async def test_export_import(service):
    exported = await service.export()
    imported = await service.import_(exported.data)
    rejected = await service.import_({"version": "1.0.0"})

    assert imported.success is True
    assert rejected.success is False
    assert rejected.error_code == "validation"


async def test_close_closes_client(config, store, client):
    async with GalleryService(config, store=store, client=client):
        pass

    assert client.calls["close"] == 1
