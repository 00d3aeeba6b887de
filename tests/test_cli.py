import json
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from gallery_sync.cli.main import cli
from gallery_sync.service import GalleryService


@pytest.fixture
def config_file(config, tmp_path) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(config.model_dump()), encoding="utf-8")
    return path


@pytest.fixture
def invoke(config_file, client, tmp_path, monkeypatch):
    monkeypatch.setattr(
        "gallery_sync.cli.context.GalleryService",
        lambda config: GalleryService(config, client=client),
    )
    runner = CliRunner()

    def _invoke(*args: str, **kwargs):
        return runner.invoke(
            cli,
            ["--config", str(config_file), "--log-file", str(tmp_path / "cli.log"), *args],
            **kwargs,
        )

    return _invoke


def test_help_without_subcommand(invoke):
    result = invoke()

    assert result.exit_code == 0
    assert "migrate" in result.output
    assert "sync" in result.output


def test_sync_stage(invoke):
    result = invoke("sync", "stage", "1")

    assert result.exit_code == 0, result.output
    assert "Stage 1 completed" in result.output


def test_stage_out_of_order_exits_with_precondition_code(invoke):
    result = invoke("sync", "stage", "2")

    assert result.exit_code == 6
    assert "Run stage 1 first" in result.output


def test_full_sync_then_progress_and_logs(invoke):
    assert invoke("sync", "full").exit_code == 0

    progress = invoke("sync", "progress")
    logs = invoke("sync", "logs", "--limit", "5")

    assert "100.0%" in progress.output
    assert logs.exit_code == 0
    assert "Total Syncs" in logs.output


def test_delete_missing_artifact(invoke):
    result = invoke("sync", "delete-artifact", "manifest", "--yes")

    assert result.exit_code == 0
    assert "No manifest to delete" in result.output


def test_delete_artifact_asks_for_confirmation(invoke):
    result = invoke("sync", "delete-artifact", "manifest", input="n\n")

    assert result.exit_code == 0
    assert "Operation cancelled." in result.output


def test_migration_round_trip(invoke):
    to_local = invoke("migrate", "to-local", "--batch-size", "2")
    to_api = invoke("migrate", "to-api", "--archive-posts", "--yes")
    rollback = invoke("migrate", "rollback", "--yes")

    assert to_local.exit_code == 0, to_local.output
    assert to_api.exit_code == 0, to_api.output
    assert rollback.exit_code == 0, rollback.output


def test_conflicting_to_api_options_fail(invoke):
    result = invoke("migrate", "to-api", "--delete-data", "--archive-posts", "--yes")

    assert result.exit_code == 1
    assert "archive_posts" in result.output


def test_rollback_without_backup_exits_with_state_code(invoke):
    result = invoke("migrate", "rollback", "--yes")

    assert result.exit_code == 5


def test_migrate_status_and_preflight(invoke):
    status = invoke("migrate", "status")
    preflight = invoke("migrate", "preflight", "--target", "api")

    assert status.exit_code == 0
    assert "idle" in status.output
    assert preflight.exit_code == 0
    assert "All pre-flight checks passed" in preflight.output


def test_failed_preflight_exits_non_zero(invoke, client):
    client.connected = False

    result = invoke("migrate", "preflight", "--target", "local")

    assert result.exit_code == 6


def test_validate_check(invoke, tmp_path):
    report_path = tmp_path / "report.json"

    api = invoke("validate", "check", "--mode", "api", "--output", str(report_path))
    local = invoke("validate", "check", "--mode", "local")

    assert api.exit_code == 0, api.output
    assert json.loads(report_path.read_text())["mode"] == "api"
    assert local.exit_code == 6
    assert "No case entities found" in local.output


def test_validate_fix(invoke):
    result = invoke("validate", "fix", "--yes")

    assert result.exit_code == 0
    assert "Fixed 0 issue(s)" in result.output


def test_data_export_and_import(invoke, tmp_path):
    invoke("sync", "full")
    export_path = tmp_path / "export.json"

    exported = invoke("data", "export", "--output", str(export_path))
    imported = invoke("data", "import", str(export_path), "--yes")

    assert exported.exit_code == 0, exported.output
    assert json.loads(export_path.read_text())["version"] == "3.0.0"
    assert imported.exit_code == 0, imported.output
    assert "Import completed" in imported.output


def test_data_export_defaults_to_export_dir(invoke, config):
    result = invoke("data", "export")

    assert result.exit_code == 0, result.output
    assert list(Path(config.storage.export_dir).glob("gallery-export-*.json"))


def test_rejected_import_exits_with_validation_code(invoke, tmp_path):
    path = tmp_path / "future.json"
    path.write_text(json.dumps({"version": "9.0.0", "timestamp": "now"}), encoding="utf-8")

    result = invoke("data", "import", str(path), "--yes")

    assert result.exit_code == 6
    assert "Unsupported version" in result.output


def test_config_show_masks_token(invoke):
    result = invoke("config", "show")

    assert result.exit_code == 0
    assert "test-token" not in result.output
    assert "https://gallery.test" in result.output


def test_config_validate(invoke):
    result = invoke("config", "validate", "--check-connectivity")

    assert result.exit_code == 0, result.output
    assert "Configuration is valid!" in result.output


def test_config_init(tmp_path, monkeypatch):
    monkeypatch.setenv("GALLERY_SYNC_GALLERY__URL", "https://env.gallery.test")
    output = tmp_path / "generated.yaml"

    result = CliRunner().invoke(
        cli, ["--log-file", str(tmp_path / "cli.log"), "config", "init", "--output", str(output)]
    )

    assert result.exit_code == 0, result.output
    assert yaml.safe_load(output.read_text())["gallery"]["url"] == "https://env.gallery.test"
