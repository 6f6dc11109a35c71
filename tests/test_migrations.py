"""Tests for the schema migration runner against SQLite."""

import pytest
from sqlalchemy import inspect

from recipedb.exceptions import MigrationError
from recipedb.migrations import MIGRATIONS, MigrationRunner


def _tables(engine):
    return set(inspect(engine).get_table_names())


class BrokenMigration:
    VERSION = "004"
    DESCRIPTION = "always fails"

    @staticmethod
    def up(connection):
        raise RuntimeError("syntax error at or near \"TABEL\"")

    @staticmethod
    def down(connection):
        pass


class TestMigrationRunner:
    """Test applying, reverting and reporting migrations."""

    def test_fresh_database_has_everything_pending(self, db_manager):
        runner = MigrationRunner(db_manager.engine)

        status = runner.status()

        assert [s['version'] for s in status] == ["001", "002", "003"]
        assert not any(s['applied'] for s in status)
        assert len(runner.pending()) == len(MIGRATIONS)

    def test_up_applies_all(self, db_manager):
        runner = MigrationRunner(db_manager.engine)

        applied = runner.up()

        assert applied == ["001", "002", "003"]
        tables = _tables(db_manager.engine)
        assert {"users", "books", "reviews", "tags", "notes", "activity_logs", "schema_migrations"} <= tables
        assert all(s['applied'] and s['applied_at'] for s in runner.status())

    def test_up_is_idempotent(self, db_manager):
        runner = MigrationRunner(db_manager.engine)
        runner.up()

        assert runner.up() == []

    def test_up_with_steps(self, db_manager):
        runner = MigrationRunner(db_manager.engine)

        assert runner.up(steps=1) == ["001"]
        assert [m.VERSION for m in runner.pending()] == ["002", "003"]
        assert "reviews" not in _tables(db_manager.engine)

    def test_down_reverts_latest(self, db_manager):
        runner = MigrationRunner(db_manager.engine)
        runner.up()

        assert runner.down() == ["003"]
        tables = _tables(db_manager.engine)
        assert "activity_logs" not in tables
        assert "reviews" in tables
        assert [m.VERSION for m in runner.pending()] == ["003"]

    def test_down_all(self, db_manager):
        runner = MigrationRunner(db_manager.engine)
        runner.up()

        assert runner.down(steps=10) == ["003", "002", "001"]
        assert _tables(db_manager.engine) == {"schema_migrations"}

    def test_down_rejects_non_positive_steps(self, db_manager):
        with pytest.raises(MigrationError):
            MigrationRunner(db_manager.engine).down(steps=0)

    def test_failed_migration_is_not_recorded(self, db_manager):
        runner = MigrationRunner(db_manager.engine, migrations=MIGRATIONS + [BrokenMigration])

        with pytest.raises(MigrationError) as exc_info:
            runner.up()

        assert exc_info.value.version == "004"
        assert set(runner.applied()) == {"001", "002", "003"}
        assert [m.VERSION for m in runner.pending()] == ["004"]

    def test_run_dispatch(self, db_manager):
        runner = MigrationRunner(db_manager.engine)

        assert runner.run('up', 2) == ["001", "002"]
        assert runner.run('down') == ["002"]
        with pytest.raises(MigrationError, match="Unknown migration direction"):
            runner.run('sideways')
