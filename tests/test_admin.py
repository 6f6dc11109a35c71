"""Tests for DatabaseAdmin against the SQLite test database."""

import pytest

from recipedb.admin import DatabaseAdmin
from recipedb.exceptions import DatabaseError, UnsafeQueryError
from recipedb.seeds import seed_database


@pytest.fixture
def admin(test_config, migrated_db) -> DatabaseAdmin:
    return DatabaseAdmin(test_config, migrated_db)


@pytest.fixture
def seeded_admin(admin, test_db_session) -> DatabaseAdmin:
    seed_database(test_db_session)
    return admin


class TestDatabaseInfo:
    """Test connection and catalog information."""

    def test_test_connection(self, admin):
        assert admin.test_connection() is True

    def test_database_info(self, admin):
        info = admin.get_database_info()

        assert info['database'] == 'recipedb'
        assert info['version'].startswith("SQLite ")
        assert info['table_count'] >= 13
        assert 'timestamp' in info

    def test_table_statistics(self, seeded_admin):
        stats = {s['tablename']: s for s in seeded_admin.get_table_statistics()}

        assert stats['categories']['live_rows'] == 10
        assert stats['books']['live_rows'] == 5

    def test_row_counts(self, seeded_admin):
        counts = seeded_admin.get_table_row_counts()

        assert counts['users'] == 5
        assert counts['schema_migrations'] == 3


class TestExecuteQuery:
    """Test the restricted query path."""

    def test_select(self, seeded_admin):
        result = seeded_admin.execute_query(
            "SELECT title FROM books WHERE genre = :genre", {'genre': 'Comfort Food'}
        )

        assert result['rows'] == [{'title': 'Princess Mononoke Wild Game Cookbook'}]
        assert result['row_count'] == 1
        assert result['duration_ms'] >= 0

    def test_update_with_where(self, seeded_admin):
        result = seeded_admin.execute_query(
            "UPDATE tags SET description = 'Fast' WHERE name = :name", {'name': 'quick'}
        )

        assert result['rows'] == []
        assert result['row_count'] == 1

    def test_long_query_is_truncated_in_result(self, seeded_admin):
        query = "SELECT count(*) AS n FROM books WHERE title <> '" + "x" * 200 + "'"

        result = seeded_admin.execute_query(query)

        assert result['query'] == query[:100] + "..."
        assert result['rows'] == [{'n': 5}]

    def test_unsafe_query_never_reaches_database(self, seeded_admin):
        with pytest.raises(UnsafeQueryError):
            seeded_admin.execute_query("DROP TABLE books")

        assert seeded_admin.get_table_row_counts()['books'] == 5

    def test_database_error(self, admin):
        with pytest.raises(DatabaseError, match="Query failed"):
            admin.execute_query("SELECT * FROM no_such_table")


class TestMaintenanceAndStatistics:
    """Test migrations, optimize and the statistics summaries."""

    def test_migration_status(self, admin):
        status = admin.get_migration_status()

        assert status['applied_count'] == 3
        assert status['pending_count'] == 0
        assert status['last_migration']['version'] == "003"

    def test_run_migrations(self, admin):
        assert admin.run_migrations('down') == {'direction': 'down', 'versions': ["003"]}
        assert admin.get_migration_status()['pending_count'] == 1
        assert admin.run_migrations('up')['versions'] == ["003"]

    def test_optimize(self, admin):
        result = admin.optimize_database()

        assert result['success'] is True
        assert "Updated database statistics" in result['results']

    def test_user_statistics(self, seeded_admin):
        stats = seeded_admin.get_user_statistics()

        assert stats['total_users'] == 5
        assert stats['active_users'] == 5
        assert stats['admin_users'] == 1
        assert stats['users_by_role'][0] == {'role': 'user', 'count': 3}

    def test_analytics_summary(self, seeded_admin):
        summary = seeded_admin.get_analytics_summary()

        assert summary['books']['total_books'] == 5
        assert summary['books']['visible_books'] == 5
        assert summary['library']['total_entries'] == 0
        assert len(summary['popular_genres']) == 5
