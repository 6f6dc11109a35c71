"""Administrative operations over the recipe database.

``DatabaseAdmin`` backs both the HTTP admin API and the CLI. Catalog queries
that only exist on PostgreSQL fall back to portable equivalents on SQLite so
the toolkit can be exercised against a local file database.
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import case, func, inspect, select, text
from sqlalchemy.exc import SQLAlchemyError

from .backup import BackupService
from .config import RecipeDBConfig
from .database import Book, DatabaseManager, User, UserBook
from .exceptions import DatabaseError
from .migrations import MigrationRunner
from .query_safety import check_query

logger = logging.getLogger(__name__)

QUERY_PREVIEW_LENGTH = 100


def _preview(query: str) -> str:
    if len(query) > QUERY_PREVIEW_LENGTH:
        return query[:QUERY_PREVIEW_LENGTH] + "..."
    return query


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


class DatabaseAdmin:
    """Database information, restricted queries, maintenance and statistics."""

    def __init__(self, config: RecipeDBConfig, db_manager: DatabaseManager,
                 backup_service: Optional[BackupService] = None,
                 migration_runner: Optional[MigrationRunner] = None):
        self.config = config
        self.db_manager = db_manager
        self.engine = db_manager.engine
        self.backups = backup_service or BackupService(config, self.engine)
        self.migrations = migration_runner or MigrationRunner(self.engine)
        self.logger = logging.getLogger(__name__ + '.DatabaseAdmin')

    @property
    def is_postgresql(self) -> bool:
        return self.engine.dialect.name == 'postgresql'

    def test_connection(self) -> bool:
        """Run a trivial query; raises DatabaseError when the database is unreachable."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            self.logger.error(f"Database connection failed: {e}")
            raise DatabaseError(f"Database connection failed: {e}") from e

    def get_database_info(self) -> Dict[str, Any]:
        info = {
            'database': self.config.get_database_name(),
            'host': self.config.get_database_host(),
            'port': self.config.database.postgresql.port if self.is_postgresql else None,
        }
        with self.engine.connect() as conn:
            if self.is_postgresql:
                info['version'] = conn.execute(text("SELECT version()")).scalar()
                info['size'] = conn.execute(text(
                    "SELECT pg_size_pretty(pg_database_size(current_database()))"
                )).scalar()
                info['active_connections'] = conn.execute(text(
                    "SELECT count(*) FROM pg_stat_activity WHERE state = 'active'"
                )).scalar()
                info['table_count'] = conn.execute(text(
                    "SELECT count(*) FROM information_schema.tables WHERE table_schema = 'public'"
                )).scalar()
            else:
                info['version'] = "SQLite " + conn.execute(text("SELECT sqlite_version()")).scalar()
                page_count = conn.execute(text("PRAGMA page_count")).scalar() or 0
                page_size = conn.execute(text("PRAGMA page_size")).scalar() or 0
                info['size'] = f"{page_count * page_size} bytes"
                info['active_connections'] = 1
                info['table_count'] = len(inspect(conn).get_table_names())
        info['timestamp'] = datetime.now(timezone.utc).isoformat()
        return info

    def get_table_statistics(self) -> List[Dict[str, Any]]:
        with self.engine.connect() as conn:
            if self.is_postgresql:
                rows = conn.execute(text("""
                    SELECT
                        schemaname,
                        relname AS tablename,
                        n_tup_ins AS inserts,
                        n_tup_upd AS updates,
                        n_tup_del AS deletes,
                        n_live_tup AS live_rows,
                        n_dead_tup AS dead_rows,
                        last_vacuum,
                        last_autovacuum,
                        last_analyze,
                        last_autoanalyze,
                        pg_size_pretty(pg_total_relation_size(relid)) AS size
                    FROM pg_stat_user_tables
                    ORDER BY n_live_tup DESC
                """))
                return [dict(row._mapping) for row in rows]

            stats = []
            for name in inspect(conn).get_table_names():
                count = conn.execute(text(f"SELECT count(*) FROM {_quote(name)}")).scalar()
                stats.append({'schemaname': 'main', 'tablename': name, 'live_rows': count})
            return sorted(stats, key=lambda s: s['live_rows'], reverse=True)

    def get_table_row_counts(self) -> Dict[str, int]:
        """Exact row count per table, used for post-restore summaries."""
        with self.engine.connect() as conn:
            names = inspect(conn).get_table_names()
            return {
                name: conn.execute(text(f"SELECT count(*) FROM {_quote(name)}")).scalar()
                for name in names
            }

    def execute_query(self, query: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Run a statement that passes the query filter.

        Bind parameters use the ``:name`` style and are passed as a mapping.

        Raises:
            UnsafeQueryError: when the statement is rejected by the filter.
            DatabaseError: when the database reports an error.
        """
        check_query(query)
        start = time.perf_counter()
        try:
            with self.engine.begin() as conn:
                result = conn.execute(text(query), params or {})
                if result.returns_rows:
                    rows = [dict(row._mapping) for row in result]
                    row_count = len(rows)
                else:
                    rows = []
                    row_count = result.rowcount
        except SQLAlchemyError as e:
            self.logger.error(f"Query failed: {_preview(query)}: {e}")
            raise DatabaseError(f"Query failed: {getattr(e, 'orig', None) or e}") from e
        duration_ms = round((time.perf_counter() - start) * 1000, 2)
        self.logger.info(f"Executed query in {duration_ms}ms: {_preview(query)}")
        return {
            'rows': rows,
            'row_count': row_count,
            'duration_ms': duration_ms,
            'query': _preview(query),
        }

    def get_migration_status(self) -> Dict[str, Any]:
        status = self.migrations.status()
        applied = [m for m in status if m['applied']]
        return {
            'migrations': status,
            'applied_count': len(applied),
            'pending_count': len(status) - len(applied),
            'last_migration': applied[-1] if applied else None,
        }

    def run_migrations(self, direction: str = 'up', steps: Optional[int] = None) -> Dict[str, Any]:
        versions = self.migrations.run(direction, steps)
        return {'direction': direction, 'versions': versions}

    def optimize_database(self) -> Dict[str, Any]:
        """VACUUM ANALYZE every table, then refresh planner statistics."""
        results = []
        # VACUUM cannot run inside a transaction block
        with self.engine.connect().execution_options(isolation_level="AUTOCOMMIT") as conn:
            if self.is_postgresql:
                tables = [row[0] for row in conn.execute(text(
                    "SELECT tablename FROM pg_tables WHERE schemaname = 'public'"
                ))]
                for table in tables:
                    conn.execute(text(f"VACUUM ANALYZE {_quote(table)}"))
                    results.append(f"Optimized table: {table}")
            else:
                conn.execute(text("VACUUM"))
                results.append("Vacuumed database file")
            conn.execute(text("ANALYZE"))
            results.append("Updated database statistics")

        self.logger.info(f"Database optimization finished: {len(results)} steps")
        return {
            'success': True,
            'results': results,
            'timestamp': datetime.now(timezone.utc).isoformat(),
        }

    def get_user_statistics(self) -> Dict[str, Any]:
        since = datetime.now(timezone.utc) - timedelta(days=30)
        with self.db_manager.get_session() as session:
            total = session.scalar(select(func.count(User.id)))
            active = session.scalar(select(func.count(User.id)).where(User.is_active.is_(True)))
            admins = session.scalar(select(func.count(User.id)).where(User.role == 'admin'))
            recent = session.scalar(select(func.count(User.id)).where(User.created_at >= since))
            by_role = session.execute(
                select(User.role, func.count(User.id).label('count'))
                .group_by(User.role)
                .order_by(func.count(User.id).desc())
            ).all()
        return {
            'total_users': total,
            'active_users': active,
            'admin_users': admins,
            'recent_users': recent,
            'users_by_role': [{'role': role, 'count': count} for role, count in by_role],
        }

    def get_analytics_summary(self) -> Dict[str, Any]:
        week_ago = datetime.now(timezone.utc) - timedelta(days=7)
        with self.db_manager.get_session() as session:
            books = session.execute(select(
                func.count(Book.id).label('total_books'),
                func.count(case((Book.visibility.is_(True), 1))).label('visible_books'),
                func.avg(Book.average_rating).label('avg_rating'),
                func.count(case((Book.created_at >= week_ago, 1))).label('books_this_week'),
            )).one()
            library = session.execute(select(
                func.count(UserBook.id).label('total_entries'),
                func.count(case((UserBook.status == 'read', 1))).label('books_read'),
                func.count(case((UserBook.status == 'reading', 1))).label('books_reading'),
                func.avg(UserBook.rating).label('avg_user_rating'),
            )).one()
            genres = session.execute(
                select(
                    Book.genre,
                    func.count(Book.id).label('count'),
                    func.avg(Book.average_rating).label('avg_rating'),
                )
                .where(Book.visibility.is_(True))
                .group_by(Book.genre)
                .order_by(func.count(Book.id).desc())
                .limit(10)
            ).all()
        return {
            'books': dict(books._mapping),
            'library': dict(library._mapping),
            'popular_genres': [dict(row._mapping) for row in genres],
        }
