import json

import pytest

from gallery_sync.client.exceptions import ValidationError
from gallery_sync.config import StateConfig
from gallery_sync.migration.exporter import EXPORT_VERSION, DataExporter, write_export
from gallery_sync.migration.importer import (
    IMPORTED_SYNC_STATS_SETTING,
    DataImporter,
    nesting_depth,
    parse_version,
)
from gallery_sync.migration.store import TAXONOMY_CATEGORY, TAXONOMY_PROCEDURE, ContentStore


@pytest.fixture
def populated(store):
    category = store.create_label(TAXONOMY_CATEGORY, "Breast", "breast")
    procedure = store.create_label(TAXONOMY_PROCEDURE, "Lift", "breast-lift", parent_id=category)
    store.set_label_meta(procedure, "procedure_id", 102)

    entity_id = store.create_entity(title="Lift #4", slug="case-4", body="Before and after")
    store.set_meta(entity_id, "case_id", 4)
    store.set_meta(entity_id, "patient_info", {"age": 40})
    store.set_entity_labels(entity_id, TAXONOMY_PROCEDURE, [procedure])
    store.set_entity_labels(entity_id, TAXONOMY_CATEGORY, [category])

    store.set_setting("mode", "local")
    log_id = store.start_sync_log("stage_3")
    store.finish_sync_log(log_id, "completed", items_processed=1)
    return store


def _document(**overrides):
    document = {"version": EXPORT_VERSION, "timestamp": "2026-01-01T00:00:00"}
    document.update(overrides)
    return document


def test_parse_version():
    assert parse_version("3.0.0") == (3, 0, 0)
    assert parse_version("2.10") > parse_version("2.9")
    with pytest.raises(ValidationError):
        parse_version("3.x")


def test_nesting_depth():
    assert nesting_depth(1) == 0
    assert nesting_depth({"a": 1}) == 0
    assert nesting_depth({"a": [{"b": 1}]}) == 2


def test_export_document_shape(populated):
    document = DataExporter(populated).export_data()

    assert document["version"] == EXPORT_VERSION
    assert document["settings"] == {"mode": "local"}
    entity = document["entities"][0]
    assert entity["meta"]["case_id"] == "4"
    assert entity["labels"] == {TAXONOMY_CATEGORY: ["breast"], TAXONOMY_PROCEDURE: ["breast-lift"]}
    assert [label["slug"] for label in document["labels"][TAXONOMY_PROCEDURE]] == ["breast-lift"]
    assert document["sync_data"]["sync_stats"]["total_syncs"] == 1


def test_write_export(populated, tmp_path):
    path = write_export(DataExporter(populated).export_data(), tmp_path / "exports")

    assert path.name.startswith("gallery-export-")
    assert json.loads(path.read_text())["version"] == EXPORT_VERSION


def test_import_into_empty_store(populated, tmp_path):
    document = json.loads(json.dumps(DataExporter(populated).export_data()))
    target = ContentStore(StateConfig(db_path=str(tmp_path / "target.db")))

    counts = DataImporter(target).import_data(document)

    assert counts == {"labels": 2, "entities": 1, "settings": 1}
    category = target.find_label(TAXONOMY_CATEGORY, "breast")
    procedure = target.find_label(TAXONOMY_PROCEDURE, "breast-lift")
    assert procedure["parent"] == category["id"]
    assert target.get_label_meta(procedure["id"], "procedure_id") == "102"

    entity_id = target.find_entity_by_meta("case_id", 4)
    assert target.get_entity(entity_id)["body"] == "Before and after"
    assert target.get_json_meta(entity_id, "patient_info") == {"age": 40}
    assert [label["slug"] for label in target.get_entity_labels(entity_id)] == [
        "breast",
        "breast-lift",
    ]
    assert target.get_setting("mode") == "local"
    assert target.get_setting(IMPORTED_SYNC_STATS_SETTING)["total_syncs"] == 1


def test_import_is_an_upsert(populated):
    document = DataExporter(populated).export_data()
    document["entities"][0]["title"] = "Renamed"

    DataImporter(populated).import_data(document)

    assert populated.count_entities() == 1
    assert len(populated.list_labels()) == 2
    assert populated.list_entities()[0]["title"] == "Renamed"


def test_import_places_children_after_parents(store):
    document = _document(
        labels={
            TAXONOMY_PROCEDURE: [
                {"id": 20, "name": "Child", "slug": "child", "parent": 10},
                {"id": 10, "name": "Parent", "slug": "parent", "parent": 0},
            ]
        }
    )

    DataImporter(store).import_data(document)

    parent = store.find_label(TAXONOMY_PROCEDURE, "parent")
    assert store.find_label(TAXONOMY_PROCEDURE, "child")["parent"] == parent["id"]


@pytest.mark.parametrize(
    "document, message",
    [
        ([], "JSON object"),
        ({"timestamp": "now"}, "version"),
        (_document(version="4.0.0"), "Unsupported version"),
        (_document(version="three"), "Invalid version"),
        ({"version": EXPORT_VERSION}, "timestamp"),
        (_document(entities=[{"title": "<script>alert(1)</script>"}]), "malicious"),
        (_document(entities=[{"body": "javascript:void(0)"}]), "malicious"),
    ],
)
def test_validate_rejects(store, document, message):
    errors = DataImporter(store).validate(document)

    assert any(message in error for error in errors)


def test_rejected_import_writes_nothing(store):
    nested: dict = {"leaf": 1}
    for _ in range(12):
        nested = {"child": nested}
    document = _document(
        entities=[{"title": "Case", "slug": "case", "meta": {"case_id": 1}}],
        extra=nested,
    )

    with pytest.raises(ValidationError, match="too deeply nested"):
        DataImporter(store).import_data(document)

    assert store.count_entities() == 0
    assert store.list_labels() == []


def test_oversized_import_is_rejected(store):
    importer = DataImporter(store, max_bytes=100)

    errors = importer.validate(_document(entities=[{"title": "x" * 200}]))

    assert any("exceeds maximum allowed size" in error for error in errors)


def test_newer_version_import_writes_nothing(store):
    document = _document(
        version="4.0.0",
        settings={"mode": "local"},
        entities=[{"title": "Case", "slug": "case", "meta": {"case_id": 1}}],
        labels={TAXONOMY_CATEGORY: [{"id": 1, "name": "Breast", "slug": "breast", "parent": 0}]},
    )

    with pytest.raises(ValidationError, match="Unsupported version"):
        DataImporter(store).import_data(document)

    assert store.count_entities() == 0
    assert store.list_labels() == []
    assert store.get_setting("mode") is None
