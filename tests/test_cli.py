"""Tests for the command line interface."""

import json
import logging

import pytest
from typer.testing import CliRunner

from conftest import FULL_EXPORT_CSV

from clinical_import.cli import app
from clinical_import.infrastructure.settings import settings

runner = CliRunner()


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch):
    """Keep log lines out of captured output and restore root handlers."""
    monkeypatch.setattr(settings, "log_level", "CRITICAL")
    monkeypatch.setattr(settings, "log_json", False)
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def csv_file(tmp_path):
    path = tmp_path / "export.csv"
    path.write_text(FULL_EXPORT_CSV)
    return path


class TestImportCommand:
    def test_json_output_without_storage(self, csv_file):
        result = runner.invoke(app, ["import", str(csv_file), "--no-store", "--json"])
        assert result.exit_code == 0
        payload = json.loads(result.stdout)
        assert payload["success"] is True
        assert payload["format"] == "csv"
        assert payload["statistics"]["observationCount"] == 3

    def test_store_twice_reports_duplicates(self, csv_file, tmp_path):
        db_path = str(tmp_path / "import.duckdb")
        first = runner.invoke(app, ["import", str(csv_file), "--db-path", db_path])
        second = runner.invoke(app, ["import", str(csv_file), "--db-path", db_path, "--json"])
        assert first.exit_code == 0
        assert "Import succeeded" in first.stdout
        payload = json.loads(second.stdout)
        assert payload["persistence"]["duplicates"] == 7
        assert payload["warnings"][-1]["code"] == "DUPLICATES_ENCOUNTERED"

    def test_duplicate_error_policy_exits_nonzero(self, csv_file, tmp_path):
        db_path = str(tmp_path / "import.duckdb")
        runner.invoke(app, ["import", str(csv_file), "--db-path", db_path])
        result = runner.invoke(app, ["import", str(csv_file), "--db-path", db_path, "-d", "error", "--json"])
        assert result.exit_code == 1
        assert "DUPLICATE_RECORD" in [e["code"] for e in json.loads(result.stdout)["errors"]]

    def test_unsupported_file(self, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_text("just one line of prose")
        result = runner.invoke(app, ["import", str(path), "--no-store", "--json"])
        assert result.exit_code == 1
        assert json.loads(result.stdout)["errors"][0]["code"] == "UNSUPPORTED_FORMAT"

    def test_missing_database_directory(self, csv_file, tmp_path):
        result = runner.invoke(app, ["import", str(csv_file), "--db-path", str(tmp_path / "nope" / "x.duckdb")])
        assert result.exit_code == 1
        assert "Import failed" in result.stdout

    def test_missing_input_file(self, tmp_path):
        result = runner.invoke(app, ["import", str(tmp_path / "absent.csv")])
        assert result.exit_code == 2


class TestOtherCommands:
    def test_detect_csv(self, csv_file):
        result = runner.invoke(app, ["detect", str(csv_file)])
        assert result.exit_code == 0
        assert "csv" in result.stdout
        assert "full_export" in result.stdout

    def test_detect_unknown(self, tmp_path):
        path = tmp_path / "data.txt"
        path.write_text('{"hello": "world"}')
        result = runner.invoke(app, ["detect", str(path)])
        assert result.exit_code == 1
        assert "unknown" in result.stdout

    def test_info(self):
        result = runner.invoke(app, ["info"])
        assert result.exit_code == 0
        assert "Duplicate Handling" in result.stdout

    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert f"v{settings.app_version}" in result.stdout
