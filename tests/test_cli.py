"""Tests for the command line entry point."""

import json
import logging
import sys

import pytest

from fleetsync.__main__ import JSONFormatter, main
from fleetsync.log import SQLiteLogStore


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    for key in ("FLEETSYNC_LOG_DB_PATH", "FLEETSYNC_NODE_ID", "FLEETSYNC_SERVER_URL"):
        monkeypatch.delenv(key, raising=False)
    path = tmp_path / "config.yaml"
    path.write_text(
        "node:\n"
        "  id: cli-node\n"
        "log_sync:\n"
        f"  db_path: {tmp_path / 'log.db'}\n"
        "repository:\n"
        f"  path: {tmp_path / 'repository'}\n"
    )
    return path


def run(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["fleetsync", *argv])
    return main()


class TestLogCommand:
    """Tests for appending events from the command line."""

    def test_log_event(self, config_file, tmp_path, monkeypatch, capsys):
        assert run(monkeypatch, "-c", str(config_file), "log", "3", "1001", "name=bundle") == 0
        assert run(monkeypatch, "-c", str(config_file), "log", "3", "1002") == 0

        lines = capsys.readouterr().out.splitlines()
        assert lines[0].startswith("cli-node,3,1,")
        assert lines[0].endswith(",1001,name,bundle")
        assert lines[1].startswith("cli-node,3,2,")

        store = SQLiteLogStore(tmp_path / "log.db", "cli-node")
        assert store.highest_id(3) == 2
        store.close()

    def test_bad_property(self, config_file, monkeypatch):
        assert run(monkeypatch, "-c", str(config_file), "log", "1", "1", "novalue") == 1


class TestMisc:
    """Tests for argument handling and logging setup."""

    def test_no_command(self, monkeypatch):
        assert run(monkeypatch) == 1

    def test_repo_without_url(self, config_file, monkeypatch):
        assert run(monkeypatch, "-c", str(config_file), "repo", "range") == 1

    def test_status_skips_health_check_for_file_url(self, config_file, monkeypatch, capsys):
        monkeypatch.setenv("FLEETSYNC_SERVER_URL", "FILE:/srv/fleetsync")

        assert run(monkeypatch, "-c", str(config_file), "status", "--json") == 0

        status = json.loads(capsys.readouterr().out)
        assert status["server"] == {"url": "FILE:/srv/fleetsync", "reachable": False}

    def test_json_formatter(self):
        record = logging.LogRecord(
            "fleetsync.log.sync_task", logging.INFO, __file__, 1, "Pushed %d events", (5,), None
        )

        data = json.loads(JSONFormatter().format(record))

        assert data["level"] == "INFO"
        assert data["component"] == "fleetsync.log.sync_task"
        assert data["message"] == "Pushed 5 events"
