"""Pytest configuration and shared fixtures for RecipeDB tests."""

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional, Tuple

import pytest
from sqlalchemy.orm import Session

import recipedb.config
from recipedb.config import RecipeDBConfig
from recipedb.database import DatabaseManager
from recipedb.migrations import MigrationRunner
from recipedb.monitoring import MetricsSnapshot


def make_config_data(root: Path) -> Dict[str, Any]:
    """Configuration mapping with every directory under ``root``."""
    return {
        "database": {
            "type": "sqlite",
            "sqlite": {"path": str(root / "recipedb.db")},
        },
        "monitoring": {
            "data_dir": str(root / "monitoring"),
            "reports_dir": str(root / "reports"),
            "history_size": 10,
            "api_history_size": 5,
        },
        "backup": {
            "directory": str(root / "backup"),
            "timeout_seconds": 5,
            "keep_days": 30,
        },
        "admin": {
            "environment": "test",
            "rate_limit_requests": 1000,
        },
        "notifications": {
            "email": {
                "enabled": False,
                "smtp_server": "smtp.test.com",
                "username": "test@test.com",
                "password": "test_password",
                "from_address": "test@test.com",
                "alert_addresses": ["dba@test.com"],
                "report_addresses": ["team@test.com"],
            }
        },
        "logging": {
            "level": "DEBUG",
            "file_handler": {"enabled": False, "directory": str(root / "logs")},
            "console_handler": {"enabled": False},
        },
    }


@pytest.fixture
def temp_directory(tmp_path) -> Path:
    """Isolated directory for test files."""
    return tmp_path


@pytest.fixture
def test_config(temp_directory) -> Generator[RecipeDBConfig, None, None]:
    """Test configuration backed by a SQLite file in a temporary directory."""
    config = RecipeDBConfig(**make_config_data(temp_directory))
    config.ensure_directories()
    recipedb.config._config = config
    yield config
    recipedb.config._config = None


@pytest.fixture
def db_manager(test_config) -> Generator[DatabaseManager, None, None]:
    """Database manager for the test SQLite database (no tables yet)."""
    manager = DatabaseManager(test_config.get_database_url())
    yield manager
    manager.close()


@pytest.fixture
def migrated_db(db_manager) -> DatabaseManager:
    """Database manager with every migration applied."""
    MigrationRunner(db_manager.engine).up()
    return db_manager


@pytest.fixture
def test_db_session(migrated_db) -> Generator[Session, None, None]:
    """Session on the migrated test database."""
    session = migrated_db.get_session()
    try:
        yield session
    finally:
        session.close()


class FakeNotifier:
    """Records alerts and reports instead of sending email."""

    def __init__(self):
        self.alerts: List[Tuple[str, Any]] = []
        self.reports: List[Dict[str, Any]] = []

    def send_alert(self, title: str, details: Any) -> bool:
        self.alerts.append((title, details))
        return True

    def send_daily_report(self, report: Dict[str, Any]) -> bool:
        self.reports.append(report)
        return True


class FakeCatalog:
    """In-memory stand-in for the PostgreSQL statistics views."""

    def __init__(self, snapshots: Optional[List[MetricsSnapshot]] = None, tables: int = 13,
                 replicas: Optional[int] = None, reachable: bool = True):
        self.snapshots = list(snapshots or [])
        self.tables = tables
        self.replicas = replicas
        self.reachable = reachable
        self.fail_with: Optional[Exception] = None

    def snapshot(self) -> MetricsSnapshot:
        if self.fail_with is not None:
            raise self.fail_with
        if self.snapshots:
            return self.snapshots.pop(0)
        return make_snapshot()

    def ping(self) -> bool:
        if not self.reachable:
            raise ConnectionError("connection refused")
        return True

    def table_count(self) -> int:
        return self.tables

    def replica_count(self) -> Optional[int]:
        return self.replicas

    def performance_stats(self) -> Dict[str, Any]:
        return {'slow_queries': [], 'table_stats': [], 'index_usage': []}


def make_snapshot(active: int = 10, slow: int = 0, size_bytes: int = 1024 ** 2, **kwargs) -> MetricsSnapshot:
    return MetricsSnapshot(
        timestamp=kwargs.pop('timestamp', datetime.now(timezone.utc)),
        active_connections=active,
        slow_queries=slow,
        database_size_bytes=size_bytes,
        **kwargs
    )


class FakeClock:
    """Manually advanced clock for cooldown tests."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def catalog() -> FakeCatalog:
    return FakeCatalog()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
