"""Tests for the command-line interface."""

import os
import time

import pytest
import yaml
from click.testing import CliRunner

from recipedb.cli import cli
from recipedb.config import MonitoringConfig
from recipedb.monitoring import MonitoringService

from conftest import FakeCatalog, FakeNotifier, make_config_data


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def config_file(temp_directory):
    path = temp_directory / "config.yaml"
    path.write_text(yaml.safe_dump(make_config_data(temp_directory)))
    return path


@pytest.fixture
def backup_dir(temp_directory):
    directory = temp_directory / "backup"
    directory.mkdir(exist_ok=True)
    return directory


def invoke(runner, config_file, *args, **kwargs):
    return runner.invoke(cli, ["--config", str(config_file), *args], **kwargs)


class TestConfigHandling:
    def test_missing_config(self, runner, temp_directory):
        result = runner.invoke(cli, ["--config", str(temp_directory / "nope.yaml"), "migrate", "status"])

        assert result.exit_code == 1
        assert "Error loading configuration" in result.output

    def test_config_template_needs_no_config(self, runner, temp_directory):
        output = temp_directory / "generated.yaml"

        result = runner.invoke(cli, ["--config", "missing.yaml", "config-template", "-o", str(output)])

        assert result.exit_code == 0
        data = yaml.safe_load(output.read_text())
        assert data["admin"]["port"] == 3002
        assert data["backup"]["keep_days"] == 30


class TestDatabaseCommands:
    """Test init, migrate and seed."""

    def test_init(self, runner, config_file, temp_directory):
        result = invoke(runner, config_file, "init")

        assert result.exit_code == 0, result.output
        assert "Applied 3 migration(s)" in result.output
        assert (temp_directory / "monitoring").is_dir()

    def test_migrate_status_up_down(self, runner, config_file):
        status = invoke(runner, config_file, "migrate", "status")
        assert status.exit_code == 0
        assert "Pending: 3" in status.output

        up = invoke(runner, config_file, "migrate", "up", "--steps", "2")
        assert "Applied migration 001" in up.output
        assert "Applied migration 002" in up.output

        down = invoke(runner, config_file, "migrate", "down")
        assert "Reverted migration 002" in down.output

        again = invoke(runner, config_file, "migrate", "up")
        assert "Applied migration 002" in again.output
        assert "Applied migration 003" in again.output

        noop = invoke(runner, config_file, "migrate", "up")
        assert "Database is up to date" in noop.output

    def test_seed_and_clear(self, runner, config_file):
        invoke(runner, config_file, "init")

        seeded = invoke(runner, config_file, "seed")
        assert seeded.exit_code == 0, seeded.output
        assert "books: 5" in seeded.output

        cleared = invoke(runner, config_file, "seed", "--clear")
        assert "Demo data removed" in cleared.output


class TestBackupCommands:
    """Test backup list/clean and the restore flow."""

    def _write(self, directory, name, content="CREATE TABLE t (id int);\n", age_days=0):
        path = directory / name
        path.write_text(content)
        if age_days:
            stamp = time.time() - age_days * 86400
            os.utime(path, (stamp, stamp))
        return path

    def test_list_empty(self, runner, config_file, backup_dir):
        result = invoke(runner, config_file, "backup", "list")

        assert result.exit_code == 0
        assert "No backup files found" in result.output

    def test_list(self, runner, config_file, backup_dir):
        self._write(backup_dir, "backup-one.sql")

        result = invoke(runner, config_file, "backup", "list")

        assert "backup-one.sql" in result.output

    def test_clean(self, runner, config_file, backup_dir):
        self._write(backup_dir, "backup-old.sql", age_days=10)
        self._write(backup_dir, "backup-new.sql")

        result = invoke(runner, config_file, "backup", "clean", "--keep-days", "7")

        assert "Removed 1 old backup(s)" in result.output
        assert not (backup_dir / "backup-old.sql").exists()
        assert (backup_dir / "backup-new.sql").exists()

    def test_create_requires_postgresql(self, runner, config_file):
        result = invoke(runner, config_file, "backup", "create")

        assert result.exit_code == 1
        assert "Backup failed" in result.output

    def test_schedule_without_cron(self, runner, config_file):
        result = invoke(runner, config_file, "backup", "schedule")

        assert result.exit_code == 1

    def test_restore_dry_run(self, runner, config_file, backup_dir):
        path = self._write(backup_dir, "backup-ok.sql")

        result = invoke(runner, config_file, "restore", "--file", str(path), "--dry-run")

        assert result.exit_code == 0
        assert "Backup file validated" in result.output
        assert "Dry run" in result.output

    def test_restore_rejects_empty_file(self, runner, config_file, backup_dir):
        path = self._write(backup_dir, "backup-empty.sql", content="")

        result = invoke(runner, config_file, "restore", "--file", str(path), "--force")

        assert result.exit_code == 1
        assert "empty" in result.output

    def test_restore_interactive_cancel(self, runner, config_file, backup_dir):
        self._write(backup_dir, "backup-ok.sql")

        result = invoke(runner, config_file, "restore", input="1\nn\n")

        assert result.exit_code == 0
        assert "Restore cancelled" in result.output

    def test_restore_without_backups(self, runner, config_file, backup_dir):
        result = invoke(runner, config_file, "restore")

        assert result.exit_code == 1
        assert "No backup files found" in result.output

    def test_restore_failure_reports_tips(self, runner, config_file, backup_dir):
        path = self._write(backup_dir, "backup-ok.sql")

        result = invoke(runner, config_file, "restore", "--file", str(path), "--force")

        assert result.exit_code == 1
        assert "Could not create restore point" in result.output
        assert "Restore failed" in result.output


class TestMonitorCommand:
    @pytest.fixture(autouse=True)
    def small_disk(self, monkeypatch):
        monkeypatch.setattr("recipedb.monitoring.psutil.disk_usage",
                            lambda path: type("usage", (), {"percent": 10.0, "free": 10 ** 10})())

    @pytest.fixture
    def monitoring_config(self, temp_directory):
        return MonitoringConfig(data_dir=str(temp_directory / "monitoring"),
                                reports_dir=str(temp_directory / "reports"))

    def test_monitor_once(self, runner, config_file, monitoring_config, monkeypatch):
        notifier = FakeNotifier()
        service = MonitoringService(FakeCatalog(), notifier, monitoring_config)
        monkeypatch.setattr(MonitoringService, "from_config",
                            classmethod(lambda cls, config, engine=None: service))

        result = invoke(runner, config_file, "monitor", "--once")

        assert result.exit_code == 0, result.output
        assert "Metrics collected: 10 active connections" in result.output
        assert "database_connectivity: healthy" in result.output

    def test_monitor_once_unhealthy(self, runner, config_file, monitoring_config, monkeypatch):
        notifier = FakeNotifier()
        service = MonitoringService(FakeCatalog(reachable=False), notifier, monitoring_config)
        monkeypatch.setattr(MonitoringService, "from_config",
                            classmethod(lambda cls, config, engine=None: service))

        result = invoke(runner, config_file, "monitor", "--once")

        assert result.exit_code == 1
        assert notifier.alerts[0][0] == 'Health Check Failed'
