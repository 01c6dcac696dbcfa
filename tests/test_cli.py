"""Tests for CLI commands."""

import pytest
from click.testing import CliRunner

from devsync.cli import main
from devsync.config import DevSyncConfig


@pytest.fixture
def runner():
    """Create CLI runner."""
    return CliRunner()


@pytest.fixture
def local_config(temp_dir, monkeypatch):
    """Point the CLI at a config using a temp database."""
    monkeypatch.setattr("devsync.config.DEFAULT_CONFIG_DIR", temp_dir)
    monkeypatch.setattr("devsync.config.DEFAULT_CONFIG_FILE", temp_dir / "devsync.yaml")

    config = DevSyncConfig()
    config.store.db_path = str(temp_dir / "devices.db")
    monkeypatch.setattr("devsync.cli.load_config", lambda: config)
    return config


@pytest.fixture
def seeded(local_config):
    from devsync.storage.documents import SQLiteDocumentStore

    store = SQLiteDocumentStore(local_config.store.resolve_db_path())
    store._upsert_batch_sync("devices_intune", [
        {"id": "a1", "azureADDeviceId": "K1", "deviceName": "LAPTOP-1"},
        {"id": "a2", "azureADDeviceId": "K2", "deviceName": "LAPTOP-2"},
    ])
    store._upsert_batch_sync("devices_defender", [
        {"id": "b1", "aadDeviceId": "K1", "computerDnsName": "laptop-1.corp"},
    ])
    return store


def test_cli_version(runner):
    """Test --version flag."""
    result = runner.invoke(main, ["--version"])
    assert result.exit_code == 0
    assert "devsync" in result.output.lower()


def test_cli_help(runner):
    """Test --help flag."""
    result = runner.invoke(main, ["--help"])
    assert result.exit_code == 0
    assert "DEVSYNC" in result.output
    for command in ("serve", "status", "sync", "devices", "ingest", "config"):
        assert command in result.output


def test_cli_init(runner, temp_dir, monkeypatch):
    """Test init command."""
    monkeypatch.setattr("devsync.config.DEFAULT_CONFIG_DIR", temp_dir)
    monkeypatch.setattr("devsync.config.DEFAULT_CONFIG_FILE", temp_dir / "devsync.yaml")

    result = runner.invoke(main, ["init"])
    assert result.exit_code == 0
    assert "initialized" in result.output.lower()
    assert (temp_dir / "devsync.yaml").exists()


def test_cli_status_no_daemon(runner, monkeypatch):
    """Test status when daemon is not running."""
    monkeypatch.setattr("devsync.cli.DEFAULT_API_URL", "http://127.0.0.1:1")
    result = runner.invoke(main, ["status"])
    assert "not running" in result.output.lower()


def test_cli_sync_local(runner, seeded):
    """Test a local cross-sync run prints the summary."""
    result = runner.invoke(main, ["sync"])

    assert result.exit_code == 0, result.output
    assert "Cross-sync success" in result.output
    assert "matched" in result.output
    assert seeded.get_stats()["devices_all"] == 2


def test_cli_sync_json(runner, seeded):
    """Test JSON output of a local run."""
    result = runner.invoke(main, ["sync", "--json"])

    assert result.exit_code == 0, result.output
    assert '"status": "success"' in result.output


def test_cli_devices(runner, seeded):
    """Test listing synced devices after a run."""
    runner.invoke(main, ["sync"])

    result = runner.invoke(main, ["devices", "--state", "matched"])

    assert result.exit_code == 0, result.output
    assert "K1" in result.output
    assert "K2" not in result.output


def test_cli_devices_bad_page_size(runner, local_config):
    """Test invalid page size is reported."""
    result = runner.invoke(main, ["devices", "--page-size", "500"])

    assert result.exit_code == 1
    assert "pageSize" in result.output


def test_cli_ingest_without_credentials(runner, local_config, monkeypatch):
    """Test ingest fails cleanly without API credentials."""
    local_config.sources.defender.tenant_id = None
    local_config.sources.defender.client_id = None
    local_config.sources.defender.client_secret = None

    result = runner.invoke(main, ["ingest", "defender"])

    assert result.exit_code == 1
    assert "Missing credentials" in result.output


def test_cli_config_get_set(runner, temp_dir, monkeypatch):
    """Test config set then get."""
    monkeypatch.setattr("devsync.config.DEFAULT_CONFIG_DIR", temp_dir)
    monkeypatch.setattr("devsync.config.DEFAULT_CONFIG_FILE", temp_dir / "devsync.yaml")

    result = runner.invoke(main, ["config", "set", "cross_sync.batch_size", "40"])
    assert result.exit_code == 0
    assert "Set cross_sync.batch_size = 40" in result.output

    result = runner.invoke(main, ["config", "get", "cross_sync.batch_size"])
    assert "cross_sync.batch_size = 40" in result.output


def test_cli_config_show(runner, temp_dir, monkeypatch):
    """Test config show."""
    monkeypatch.setattr("devsync.config.DEFAULT_CONFIG_DIR", temp_dir)
    monkeypatch.setattr("devsync.config.DEFAULT_CONFIG_FILE", temp_dir / "devsync.yaml")

    result = runner.invoke(main, ["config"])
    assert result.exit_code == 0
    assert "devices_all" in result.output
