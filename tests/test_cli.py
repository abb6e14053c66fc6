"""Tests for the orbit-sync command line."""

import json

import pytest
import yaml
from click.testing import CliRunner

from orbit_sync.cli import cli


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_file(tmp_path):
    return tmp_path / "sync.yaml"


def invoke(runner, config_file, *args):
    return runner.invoke(cli, ["--config", str(config_file), *args])


def write_json(path, data):
    path.write_text(json.dumps(data))
    return path


class TestConfigCommands:

    def test_show_defaults(self, runner, config_file):
        result = invoke(runner, config_file, "config", "show")

        assert result.exit_code == 0
        assert "background_sync_interval" in result.output
        assert "last_write_wins" in result.output

    def test_set_persists(self, runner, config_file):
        result = invoke(runner, config_file, "config", "set", "background_sync_interval", "30")

        assert result.exit_code == 0
        assert "background_sync_interval = 30" in result.output
        saved = yaml.safe_load(config_file.read_text())
        assert saved["orbit_sync_config"]["background_sync_interval"] == 30

    def test_set_unknown_key_fails(self, runner, config_file):
        result = invoke(runner, config_file, "config", "set", "colour", "blue")

        assert result.exit_code != 0
        assert "colour" in result.output
        assert not config_file.exists()

    def test_set_invalid_value_fails(self, runner, config_file):
        result = invoke(runner, config_file, "config", "set", "max_retries", "0")

        assert result.exit_code != 0
        assert not config_file.exists()

    def test_strategy_default_and_per_service(self, runner, config_file):
        first = invoke(runner, config_file, "config", "strategy", "app_wins", "--auto-resolve")
        second = invoke(runner, config_file, "config", "strategy", "merge", "--service", "google_contacts")

        assert first.exit_code == 0 and second.exit_code == 0
        assert "Auto-resolve: on" in first.output
        assert "google_contacts" in second.output

        saved = yaml.safe_load(config_file.read_text())["orbit_conflict_config"]
        assert saved["default_strategy"] == "app_wins"
        assert saved["auto_resolve"] is True
        assert saved["per_service_strategy"] == {"google_contacts": "merge"}

    def test_unknown_strategy_is_rejected(self, runner, config_file):
        result = invoke(runner, config_file, "config", "strategy", "coin_flip")
        assert result.exit_code == 2


class TestDiffCommand:

    @pytest.fixture
    def snapshots(self, tmp_path):
        local = write_json(tmp_path / "local.json", {
            "id": "task-1", "title": "Local title", "description": "local notes",
        })
        remote = write_json(tmp_path / "remote.json", {
            "id": "remote-1", "title": "Remote title", "status": "needsAction", "notes": "remote notes",
        })
        return local, remote

    def times(self):
        return [
            "--last-synced", "2024-01-01T12:00:00Z",
            "--app-modified", "2024-01-01T13:00:00Z",
            "--external-modified", "2024-01-01T14:00:00Z",
        ]

    def test_no_conflict_without_sync_history(self, runner, config_file, snapshots):
        result = invoke(runner, config_file, "diff", *map(str, snapshots))

        assert result.exit_code == 0
        assert "No conflict" in result.output

    def test_conflict_table(self, runner, config_file, snapshots):
        result = invoke(runner, config_file, "diff", *map(str, snapshots), *self.times())

        assert result.exit_code == 0
        assert "Conflict (" in result.output
        assert "title" in result.output
        assert "Resolved with" not in result.output

    def test_merge_preview(self, runner, config_file, snapshots):
        result = invoke(runner, config_file, "diff", *map(str, snapshots), *self.times(), "--strategy", "merge")

        assert result.exit_code == 0
        assert "Resolved with merge" in result.output
        assert "local notes" in result.output
        assert "remote notes" in result.output

    def test_manual_strategy_is_reported(self, runner, config_file, snapshots):
        result = invoke(runner, config_file, "diff", *map(str, snapshots), *self.times(), "--strategy", "manual")

        assert result.exit_code == 0
        assert "Resolved with" not in result.output

    def test_bad_timestamp(self, runner, config_file, snapshots):
        result = invoke(runner, config_file, "diff", *map(str, snapshots), "--last-synced", "yesterday")

        assert result.exit_code == 2
        assert "ISO-8601" in result.output

    def test_non_object_json(self, runner, config_file, tmp_path, snapshots):
        bad = write_json(tmp_path / "list.json", [1, 2])

        result = invoke(runner, config_file, "diff", str(bad), str(snapshots[1]))

        assert result.exit_code == 1
        assert "JSON object" in result.output
