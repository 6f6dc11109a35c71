"""Create reading sessions, recommendations and the activity log."""

from ..database import Base

VERSION = "003"
DESCRIPTION = "create activity tables"

TABLES = ['reading_sessions', 'recommendations', 'activity_logs']


def up(connection):
    for name in TABLES:
        Base.metadata.tables[name].create(connection, checkfirst=True)


def down(connection):
    for name in reversed(TABLES):
        Base.metadata.tables[name].drop(connection, checkfirst=True)
