from gallery_sync.migration.pipeline import CASE_ID_META
from gallery_sync.migration.store import TAXONOMY_CATEGORY, TAXONOMY_PROCEDURE
from gallery_sync.migration.validator import MODE_API, MODE_LOCAL, MODE_SETTING, DataValidator


def test_empty_store_is_valid(store):
    report = DataValidator(store).check_data_integrity()

    assert report["overall_valid"] is True
    assert report["total_errors"] == 0
    assert set(report["checks"]) == {"entities", "labels", "metadata", "images", "sync"}


def test_integrity_reports_every_domain(store):
    store.set_setting(MODE_SETTING, MODE_LOCAL)
    untitled = store.create_entity(title="  ", slug="dup")
    store.create_entity(title="Case", slug="dup")
    store.set_meta(untitled, "patient_info", "{not json")
    store.set_meta(untitled, "before_image_ids", [999])
    store.create_label(TAXONOMY_PROCEDURE, "Lift", "lift", parent_id=4242)

    report = DataValidator(store).check_data_integrity()
    checks = report["checks"]

    assert report["overall_valid"] is False
    assert checks["entities"]["valid"] is False
    assert any("Duplicate slug 'dup'" in w for w in checks["entities"]["warnings"])
    assert checks["labels"]["valid"] is False
    assert checks["metadata"]["valid"] is False
    # Local mode: entities without a case id are reported as warnings
    assert len([w for w in checks["metadata"]["warnings"] if CASE_ID_META in w]) == 2
    assert checks["images"]["valid"] is False


def test_procedure_parent_in_category_taxonomy_resolves(store):
    parent = store.create_label(TAXONOMY_CATEGORY, "Breast", "breast")
    store.create_label(TAXONOMY_PROCEDURE, "Lift", "lift", parent_id=parent)

    assert DataValidator(store).check_data_integrity()["checks"]["labels"]["valid"] is True


def test_sync_check_warns_about_orphans(store):
    store.map_case(5, 12345)

    result = DataValidator(store).check_data_integrity()["checks"]["sync"]

    assert result["valid"] is True
    assert result["warnings"] == ["1 orphaned case mappings found"]


def test_fix_data_issues(store):
    first = store.create_entity(title="One", slug="same")
    second = store.create_entity(title="Two", slug="same")
    store.set_meta(first, CASE_ID_META, 1)
    store.set_meta(second, CASE_ID_META, 2)
    store.set_meta(second, "seo_data", "[broken")
    missing = store.create_entity(title="Three", slug="three")

    results = DataValidator(store).fix_data_issues()

    assert results["failed"] == 0
    assert results["fixed"] == 3
    assert store.get_entity(second)["slug"] == f"same-{second}"
    assert store.get_meta(second, "seo_data") is None
    assert store.get_meta(missing, CASE_ID_META).startswith(f"temp_{missing}_")


async def test_validate_local_requires_entities(store):
    result = await DataValidator(store).validate_migration(MODE_LOCAL)

    assert result["valid"] is False
    assert result["errors"] == ["No case entities found after migration"]


async def test_validate_api_requires_settings(store):
    result = await DataValidator(store).validate_migration(MODE_API)

    assert result["valid"] is False
    assert "API settings are not configured" in result["errors"]


async def test_validate_api_checks_connection(store, config, client):
    store.create_entity(title="Case", slug="case")
    client.connected = False

    result = await DataValidator(store, config.gallery, client).validate_migration(MODE_API)

    assert result["errors"] == ["Cannot connect to API"]
    assert result["stats"]["remaining_published_entities"] == 1
    assert result["warnings"]


async def test_validate_unknown_mode(store):
    result = await DataValidator(store).validate_migration("hybrid")

    assert result["valid"] is False


async def test_validation_report_defaults_to_current_mode(store):
    report = await DataValidator(store).get_validation_report()

    assert report["mode"] == MODE_API
    assert "integrity_check" in report
    assert "migration_validation" in report
