"""Create reviews, tags, notes and the book link tables."""

from sqlalchemy import text

from ..database import Base

VERSION = "002"
DESCRIPTION = "create reviews and tags"

TABLES = ['book_categories', 'reviews', 'tags', 'book_tags', 'notes']

# Keeps books.average_rating and books.rating_count in step with public reviews
_BOOK_RATING_FUNCTION = """
CREATE OR REPLACE FUNCTION update_book_rating()
RETURNS TRIGGER AS $$
BEGIN
    UPDATE books
    SET
        average_rating = (
            SELECT COALESCE(AVG(rating::decimal), 0)
            FROM reviews
            WHERE book_id = COALESCE(NEW.book_id, OLD.book_id)
            AND is_public = true
        ),
        rating_count = (
            SELECT COUNT(*)
            FROM reviews
            WHERE book_id = COALESCE(NEW.book_id, OLD.book_id)
            AND is_public = true
        )
    WHERE id = COALESCE(NEW.book_id, OLD.book_id);
    RETURN COALESCE(NEW, OLD);
END;
$$ language 'plpgsql'
"""

_TAG_USAGE_FUNCTION = """
CREATE OR REPLACE FUNCTION update_tag_usage_count()
RETURNS TRIGGER AS $$
BEGIN
    UPDATE tags
    SET usage_count = (
        SELECT COUNT(*) FROM book_tags WHERE tag_id = COALESCE(NEW.tag_id, OLD.tag_id)
    )
    WHERE id = COALESCE(NEW.tag_id, OLD.tag_id);
    RETURN COALESCE(NEW, OLD);
END;
$$ language 'plpgsql'
"""


def up(connection):
    for name in TABLES:
        Base.metadata.tables[name].create(connection, checkfirst=True)

    if connection.dialect.name == 'postgresql':
        connection.execute(text(_BOOK_RATING_FUNCTION))
        connection.execute(text("DROP TRIGGER IF EXISTS update_book_rating_on_review ON reviews"))
        connection.execute(text(
            "CREATE TRIGGER update_book_rating_on_review AFTER INSERT OR UPDATE OR DELETE ON reviews "
            "FOR EACH ROW EXECUTE FUNCTION update_book_rating()"
        ))
        connection.execute(text(_TAG_USAGE_FUNCTION))
        connection.execute(text("DROP TRIGGER IF EXISTS update_tag_usage_count_trigger ON book_tags"))
        connection.execute(text(
            "CREATE TRIGGER update_tag_usage_count_trigger AFTER INSERT OR DELETE ON book_tags "
            "FOR EACH ROW EXECUTE FUNCTION update_tag_usage_count()"
        ))


def down(connection):
    for name in reversed(TABLES):
        Base.metadata.tables[name].drop(connection, checkfirst=True)
    if connection.dialect.name == 'postgresql':
        connection.execute(text("DROP FUNCTION IF EXISTS update_book_rating() CASCADE"))
        connection.execute(text("DROP FUNCTION IF EXISTS update_tag_usage_count() CASCADE"))
