"""Tests for the PressBox CLI commands."""

import json
from unittest.mock import MagicMock, patch

import pytest
import yaml
from click.testing import CliRunner

from pressbox.cli import cli
from pressbox.models import ServiceSwapResult, ServiceTarget, SwapTransaction, TransactionState
from pressbox.registry import SiteRegistry
from pressbox.services.snapshot_service import ConfigSnapshotStore


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_file(tmp_path, config):
    """config.yaml pointing every directory into tmp_path."""
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "data_dir": str(config.data_dir),
                "configs_dir": str(config.configs_dir),
                "run_dir": str(config.run_dir),
                "log_dir": str(config.log_dir),
                "certs_dir": str(config.certs_dir),
                "db_path": str(config.db_path),
            }
        )
    )
    return path


@pytest.fixture
def registry(config, site):
    registry = SiteRegistry(config)
    registry.save(site)
    return registry


@pytest.fixture
def mock_engine():
    engine = MagicMock()
    with patch("pressbox.commands.server.build_engine", return_value=engine), patch(
        "pressbox.commands.php.build_engine", return_value=engine
    ), patch("pressbox.commands.site.build_engine", return_value=engine), patch(
        "pressbox.commands.server.get_db"
    ), patch("pressbox.commands.php.get_db"), patch("pressbox.commands.site.get_db"):
        yield engine


def invoke(runner, config_file, *args):
    return runner.invoke(cli, ["--json", "--config", str(config_file), *args])


class TestServerSwap:
    """Tests for 'pressbox server swap'."""

    def test_success_updates_registry(self, runner, config_file, registry, mock_engine):
        mock_engine.swap_web_server.return_value = ServiceSwapResult(
            success=True,
            duration=1200,
            old_server="nginx",
            new_server="apache",
            web_server="apache",
            php_version="8.1",
            state="committed",
        )

        result = invoke(runner, config_file, "server", "swap", "s1", "apache")

        assert result.exit_code == 0
        output = json.loads(result.stdout)
        assert output["success"] is True
        assert output["data"]["new_server"] == "apache"
        assert registry.get("s1").web_server.value == "apache"

        options = mock_engine.swap_web_server.call_args[0][1]
        assert options.from_server.value == "nginx"
        assert options.preserve_config is True
        assert options.backup_configs is True

    def test_flags(self, runner, config_file, registry, mock_engine):
        mock_engine.swap_web_server.return_value = ServiceSwapResult(
            success=True, duration=10, web_server="apache", php_version="8.1"
        )

        invoke(
            runner, config_file, "server", "swap", "s1", "apache",
            "--no-preserve", "--no-certs", "--no-backup", "--url", "https://blog.test",
        )

        options = mock_engine.swap_web_server.call_args[0][1]
        assert options.preserve_config is False
        assert options.migrate_ssl_certs is False
        assert options.backup_configs is False
        assert options.new_url == "https://blog.test"
        assert registry.get("s1").domain == "blog.test"

    def test_rolled_back(self, runner, config_file, registry, mock_engine):
        mock_engine.swap_web_server.return_value = ServiceSwapResult(
            success=False,
            duration=800,
            errors=["apache failed to start: port in use (8080)"],
            web_server="nginx",
            php_version="8.1",
            state="rolled_back",
        )

        result = invoke(runner, config_file, "server", "swap", "s1", "apache")

        assert result.exit_code == 1
        output = json.loads(result.stdout)
        assert output["error"]["code"] == "SWAP_FAILED"
        assert "port in use" in output["error"]["message"]
        assert output["data"]["state"] == "rolled_back"
        assert registry.get("s1").web_server.value == "nginx"

    def test_fatal(self, runner, config_file, registry, mock_engine):
        mock_engine.swap_web_server.return_value = ServiceSwapResult(
            success=False, duration=800, errors=["Rollback: restore failed"], fatal=True
        )

        result = invoke(runner, config_file, "server", "swap", "s1", "apache")

        assert result.exit_code == 1
        assert json.loads(result.stdout)["error"]["code"] == "SWAP_FAILED_FATAL"

    def test_unknown_site(self, runner, config_file, mock_engine):
        result = invoke(runner, config_file, "server", "swap", "nope", "apache")

        assert result.exit_code == 1
        assert json.loads(result.stdout)["error"]["code"] == "SITE_NOT_FOUND"
        mock_engine.swap_web_server.assert_not_called()

    def test_unknown_server(self, runner, config_file, registry):
        result = invoke(runner, config_file, "server", "swap", "s1", "lighttpd")

        assert result.exit_code == 2


class TestServerStatus:
    """Tests for 'pressbox server status' and 'stats'."""

    def test_status_stopped(self, runner, config_file, registry):
        result = invoke(runner, config_file, "server", "status", "s1")

        assert result.exit_code == 0
        data = json.loads(result.stdout)["data"]
        assert data["site"]["web_server"] == "nginx"
        assert data["web_server"]["status"] == "stopped"
        assert data["php_fpm"]["target"] == "php-fpm 8.1"

    def test_stats_stopped(self, runner, config_file, registry):
        result = invoke(runner, config_file, "server", "stats", "s1")

        assert result.exit_code == 0
        rows = json.loads(result.stdout)["data"]
        assert [r["target"] for r in rows] == ["nginx", "php-fpm 8.1"]
        assert rows[0]["uptime"] == "stopped"


class TestPHPCommands:
    """Tests for 'pressbox php'."""

    def test_change(self, runner, config_file, registry, mock_engine):
        mock_engine.change_php_version.return_value = ServiceSwapResult(
            success=True,
            duration=900,
            old_version="8.1",
            new_version="8.2",
            web_server="nginx",
            php_version="8.2",
            state="committed",
        )

        result = invoke(runner, config_file, "php", "change", "s1", "8.2", "--no-restart")

        assert result.exit_code == 0
        options = mock_engine.change_php_version.call_args[0][1]
        assert options.new_version == "8.2"
        assert options.restart_services is False
        assert options.migrate_extensions is True
        assert registry.get("s1").php_version == "8.2"

    def test_change_failed(self, runner, config_file, registry, mock_engine):
        mock_engine.change_php_version.return_value = ServiceSwapResult(
            success=False, duration=10, errors=["Unsupported PHP version: 5.6"], state="failed"
        )

        result = invoke(runner, config_file, "php", "change", "s1", "5.6")

        assert result.exit_code == 1
        assert json.loads(result.stdout)["error"]["code"] == "PHP_VERSION_CHANGE_FAILED"
        assert registry.get("s1").php_version == "8.1"

    def test_versions(self, runner, config_file):
        result = invoke(runner, config_file, "php", "versions")

        assert result.exit_code == 0
        rows = json.loads(result.stdout)["data"]
        assert [r["version"] for r in rows] == ["7.4", "8.0", "8.1", "8.2", "8.3"]
        assert rows[0]["fpm"] == "php-fpm7.4"


class TestSiteCommands:
    """Tests for 'pressbox site'."""

    def test_url(self, runner, config_file, registry, mock_engine):
        mock_engine.update_site_url.return_value = ServiceSwapResult(
            success=True, duration=1500, web_server="nginx", php_version="8.1", state="committed"
        )

        result = invoke(runner, config_file, "site", "url", "s1", "http://blog.test", "--skip-database")

        assert result.exit_code == 0
        output = json.loads(result.stdout)
        assert output["message"] == "Site URL updated successfully to http://blog.test"
        assert mock_engine.update_site_url.call_args.kwargs["update_database"] is False
        assert registry.get("s1").domain == "blog.test"

    def test_url_failed(self, runner, config_file, registry, mock_engine):
        mock_engine.update_site_url.return_value = ServiceSwapResult(
            success=False, duration=5, errors=["INVALID_URL: Invalid URL format: ::"], state="failed"
        )

        result = invoke(runner, config_file, "site", "url", "s1", "::")

        assert result.exit_code == 1
        assert json.loads(result.stdout)["error"]["code"] == "URL_UPDATE_FAILED"

    def test_history(self, runner, config_file, audit_db):
        audit_db.record_transaction(
            SwapTransaction(
                id="t1",
                site_id="s1",
                from_target=ServiceTarget.web_server("nginx"),
                to_target=ServiceTarget.web_server("apache"),
                state=TransactionState.ROLLED_BACK,
                errors=["apache failed health check after 3 attempts"],
            )
        )

        with patch("pressbox.commands.site.get_db", return_value=audit_db):
            result = invoke(runner, config_file, "site", "history", "s1")

        assert result.exit_code == 0
        rows = json.loads(result.stdout)["data"]
        assert rows[0]["state"] == "rolled_back"
        assert rows[0]["errors"] == "apache failed health check after 3 attempts"


class TestBackupCommands:
    """Tests for 'pressbox backup'."""

    def test_list_empty(self, runner, config_file):
        result = runner.invoke(cli, ["--config", str(config_file), "backup", "list", "s1"])

        assert result.exit_code == 0
        assert "No data to display" in result.stdout

    def test_list_and_show(self, runner, config_file, config, prepared_site):
        store = ConfigSnapshotStore(config)
        snapshot = store.capture(prepared_site)
        store.discard(snapshot, retain=True)

        listed = json.loads(invoke(runner, config_file, "backup", "list", "s1").stdout)
        assert [b["id"] for b in listed["data"]] == [snapshot.id]

        shown = json.loads(invoke(runner, config_file, "backup", "show", "s1", snapshot.id).stdout)
        assert shown["data"]["backup"]["site"] == "s1"
        assert len(shown["data"]["php_fpm_config"]) == 2

    def test_show_missing(self, runner, config_file):
        result = invoke(runner, config_file, "backup", "show", "s1", "nginx-missing")

        assert result.exit_code == 1
        assert json.loads(result.stdout)["error"]["code"] == "BACKUP_NOT_FOUND"
