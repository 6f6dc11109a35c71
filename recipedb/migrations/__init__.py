"""Ordered schema migrations tracked in the ``schema_migrations`` table.

Each migration module exposes ``VERSION``, ``DESCRIPTION``, ``up(connection)``
and ``down(connection)``. Modules are applied in the order listed in
``MIGRATIONS``; each one runs in its own transaction together with the
bookkeeping row so a failed migration leaves no trace.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select, delete, insert
from sqlalchemy.engine import Engine

from ..database import SchemaMigration
from ..exceptions import MigrationError
from . import v001_initial_tables, v002_reviews_and_tags, v003_activity_tables

logger = logging.getLogger(__name__)

MIGRATIONS = [
    v001_initial_tables,
    v002_reviews_and_tags,
    v003_activity_tables,
]

_migrations_table = SchemaMigration.__table__


class MigrationRunner:
    """Apply and revert migrations against a single engine."""

    def __init__(self, engine: Engine, migrations: Optional[List[Any]] = None):
        self.engine = engine
        self.migrations = list(migrations if migrations is not None else MIGRATIONS)
        self.logger = logging.getLogger(__name__ + '.MigrationRunner')

    def _ensure_table(self) -> None:
        _migrations_table.create(self.engine, checkfirst=True)

    def applied(self) -> Dict[str, datetime]:
        """Return applied versions mapped to the time they were applied."""
        self._ensure_table()
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_migrations_table.c.version, _migrations_table.c.applied_at)
                .order_by(_migrations_table.c.version)
            ).all()
        return {row.version: row.applied_at for row in rows}

    def status(self) -> List[Dict[str, Any]]:
        """Report every known migration and whether it has been applied."""
        applied = self.applied()
        return [
            {
                'version': migration.VERSION,
                'description': migration.DESCRIPTION,
                'applied': migration.VERSION in applied,
                'applied_at': applied[migration.VERSION].isoformat() if migration.VERSION in applied else None,
            }
            for migration in self.migrations
        ]

    def pending(self) -> List[Any]:
        applied = self.applied()
        return [m for m in self.migrations if m.VERSION not in applied]

    def up(self, steps: Optional[int] = None) -> List[str]:
        """Apply pending migrations, all of them unless ``steps`` is given."""
        pending = self.pending()
        if steps is not None:
            pending = pending[:steps]

        done = []
        for migration in pending:
            self.logger.info(f"Applying migration {migration.VERSION}: {migration.DESCRIPTION}")
            try:
                with self.engine.begin() as conn:
                    migration.up(conn)
                    conn.execute(insert(_migrations_table).values(
                        version=migration.VERSION,
                        applied_at=datetime.now(timezone.utc),
                    ))
            except Exception as e:
                self.logger.error(f"Migration {migration.VERSION} failed: {e}")
                raise MigrationError(f"Migration {migration.VERSION} failed: {e}", version=migration.VERSION) from e
            done.append(migration.VERSION)

        if not done:
            self.logger.info("No pending migrations")
        return done

    def down(self, steps: int = 1) -> List[str]:
        """Revert the most recently applied ``steps`` migrations."""
        if steps < 1:
            raise MigrationError("steps must be a positive integer")
        applied = self.applied()
        to_revert = [m for m in reversed(self.migrations) if m.VERSION in applied][:steps]

        done = []
        for migration in to_revert:
            self.logger.info(f"Reverting migration {migration.VERSION}: {migration.DESCRIPTION}")
            try:
                with self.engine.begin() as conn:
                    migration.down(conn)
                    conn.execute(delete(_migrations_table).where(
                        _migrations_table.c.version == migration.VERSION
                    ))
            except Exception as e:
                self.logger.error(f"Reverting {migration.VERSION} failed: {e}")
                raise MigrationError(f"Reverting {migration.VERSION} failed: {e}", version=migration.VERSION) from e
            done.append(migration.VERSION)
        return done

    def run(self, direction: str = 'up', steps: Optional[int] = None) -> List[str]:
        """Dispatch to ``up`` or ``down``."""
        if direction == 'up':
            return self.up(steps)
        elif direction == 'down':
            return self.down(steps or 1)
        raise MigrationError(f"Unknown migration direction: {direction}")
