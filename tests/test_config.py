"""Tests for configuration loading and discovery."""

import pytest

from fleetsync.config import Config, load_config
from fleetsync.discovery import StaticDiscovery, StaticIdentification, is_network_url

CONFIG_YAML = """
revision: 7
node:
  id: gateway-12
server:
  url: http://central:8080
  port: 9090
log_sync:
  mode: PushPull
  endpoint: events
  interval_seconds: 15
  isolate_failures: false
repository:
  path: /var/lib/fleetsync/repo
  names: [store, settings]
  master: false
  limit: 10
replication:
  enabled: true
  master_url: http://master:8080
  limit: 3
"""


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep host FLEETSYNC_* variables out of the tests."""
    import os

    for key in list(os.environ):
        if key.startswith("FLEETSYNC_"):
            monkeypatch.delenv(key)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(CONFIG_YAML)
    return path


class TestLoadConfig:
    """Tests for YAML loading."""

    def test_defaults_without_file(self):
        config = load_config(None)

        assert config == Config()
        assert config.log_sync.mode == "push"
        assert config.log_sync.endpoint == "auditlog"
        assert config.replicated_names == ["store"]

    def test_missing_file_uses_defaults(self, tmp_path):
        assert load_config(tmp_path / "absent.yaml") == Config()

    def test_load_yaml(self, config_file):
        config = load_config(config_file)

        assert config.revision == 7
        assert config.node.id == "gateway-12"
        assert config.server.url == "http://central:8080"
        assert config.server.port == 9090
        assert config.server.host == "0.0.0.0"
        assert config.log_sync.mode == "pushpull"
        assert config.log_sync.endpoint == "events"
        assert config.log_sync.interval_seconds == 15
        assert config.log_sync.isolate_failures is False
        assert config.repository.names == ["store", "settings"]
        assert config.repository.master is False
        assert config.repository.limit == 10
        assert config.replication.enabled is True
        assert config.replication.limit == 3
        assert config.replicated_names == ["store", "settings"]

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")

        assert load_config(path) == Config()

    def test_invalid_mode(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("log_sync:\n  mode: sideways\n")

        with pytest.raises(ValueError):
            load_config(path)

    def test_invalid_limit(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("repository:\n  limit: 0\n")

        with pytest.raises(ValueError):
            load_config(path)


class TestEnvOverrides:
    """Tests for FLEETSYNC_* environment variables."""

    def test_overrides_file(self, config_file, monkeypatch):
        monkeypatch.setenv("FLEETSYNC_NODE_ID", "from-env")
        monkeypatch.setenv("FLEETSYNC_SERVER_URL", "file:///srv")
        monkeypatch.setenv("FLEETSYNC_SYNC_MODE", "PULL")
        monkeypatch.setenv("FLEETSYNC_SYNC_ISOLATE_FAILURES", "yes")
        monkeypatch.setenv("FLEETSYNC_REPOSITORY_NAMES", "a, b,")
        monkeypatch.setenv("FLEETSYNC_REPOSITORY_LIMIT", "none")
        monkeypatch.setenv("FLEETSYNC_REPLICATION_INTERVAL", "30")

        config = load_config(config_file)

        assert config.node.id == "from-env"
        assert config.server.url == "file:///srv"
        assert config.log_sync.mode == "pull"
        assert config.log_sync.isolate_failures is True
        assert config.repository.names == ["a", "b"]
        assert config.repository.limit is None
        assert config.replication.interval_seconds == 30

    def test_overrides_without_file(self, monkeypatch):
        monkeypatch.setenv("FLEETSYNC_SERVER_PORT", "8181")
        monkeypatch.setenv("FLEETSYNC_SYNC_ENABLED", "false")

        config = load_config()

        assert config.server.port == 8181
        assert config.log_sync.enabled is False

    def test_invalid_env_mode(self, monkeypatch):
        monkeypatch.setenv("FLEETSYNC_SYNC_MODE", "both")

        with pytest.raises(ValueError):
            load_config()


class TestDiscovery:
    """Tests for static discovery and identification."""

    def test_static_discovery(self):
        discovery = StaticDiscovery("http://server")
        assert discovery.discover() == "http://server"

        discovery.set_url("")
        assert discovery.discover() is None

    def test_static_identification(self):
        assert StaticIdentification("gw-1").get_id() == "gw-1"
        with pytest.raises(ValueError):
            StaticIdentification("")

    @pytest.mark.parametrize(
        "url,expected",
        [
            ("http://server:8080", True),
            ("https://server", True),
            ("file:///var/lib/fleetsync", False),
            ("FILE:/tmp", False),
            ("", False),
            (None, False),
        ],
    )
    def test_is_network_url(self, url, expected):
        assert is_network_url(url) is expected
