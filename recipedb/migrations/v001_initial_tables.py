"""Create users, books, user_books and categories."""

from sqlalchemy import text

from ..database import Base

VERSION = "001"
DESCRIPTION = "create initial tables"

TABLES = ['users', 'books', 'user_books', 'categories']

_UPDATED_AT_FUNCTION = """
CREATE OR REPLACE FUNCTION update_updated_at_column()
RETURNS TRIGGER AS $$
BEGIN
    NEW.updated_at = NOW();
    RETURN NEW;
END;
$$ language 'plpgsql'
"""


def up(connection):
    for name in TABLES:
        Base.metadata.tables[name].create(connection, checkfirst=True)

    if connection.dialect.name == 'postgresql':
        connection.execute(text('CREATE EXTENSION IF NOT EXISTS "pg_trgm"'))
        connection.execute(text(_UPDATED_AT_FUNCTION))
        for name in ('users', 'books', 'user_books', 'categories'):
            connection.execute(text(f"DROP TRIGGER IF EXISTS update_{name}_updated_at ON {name}"))
            connection.execute(text(
                f"CREATE TRIGGER update_{name}_updated_at BEFORE UPDATE ON {name} "
                f"FOR EACH ROW EXECUTE FUNCTION update_updated_at_column()"
            ))
        connection.execute(text(
            "CREATE INDEX IF NOT EXISTS idx_books_search_gin ON books "
            "USING gin((title || ' ' || author || ' ' || COALESCE(description, '')) gin_trgm_ops)"
        ))


def down(connection):
    if connection.dialect.name == 'postgresql':
        connection.execute(text("DROP INDEX IF EXISTS idx_books_search_gin"))
    for name in reversed(TABLES):
        Base.metadata.tables[name].drop(connection, checkfirst=True)
    if connection.dialect.name == 'postgresql':
        connection.execute(text("DROP FUNCTION IF EXISTS update_updated_at_column() CASCADE"))
