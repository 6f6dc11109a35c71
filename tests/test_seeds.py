"""Tests for demo data seeding."""

from sqlalchemy import func, select

from recipedb.database import Book, BookCategory, BookTag, Category, Tag, User
from recipedb.seeds import (
    BOOKS, CATEGORIES, PBKDF2_ITERATIONS, TAGS, USERS, clear_seed_data, hash_password, seed_database
)


def _count(session, model):
    return session.scalar(select(func.count()).select_from(model))


class TestSeedDatabase:
    """Test seeding a migrated database."""

    def test_seed_inserts_demo_rows(self, test_db_session):
        inserted = seed_database(test_db_session)

        assert inserted == {'categories': len(CATEGORIES), 'users': len(USERS),
                            'books': len(BOOKS), 'tags': len(TAGS)}
        assert _count(test_db_session, Book) == 5
        assert _count(test_db_session, BookCategory) == 5
        assert _count(test_db_session, BookTag) == 10

    def test_seed_is_idempotent(self, test_db_session):
        seed_database(test_db_session)

        second = seed_database(test_db_session)

        assert second == {'categories': 0, 'users': 0, 'books': 0, 'tags': 0}
        assert _count(test_db_session, User) == len(USERS)

    def test_relationships(self, test_db_session):
        seed_database(test_db_session)

        book = test_db_session.scalar(select(Book).where(Book.isbn == '978-1-23456-789-0'))
        assert book.owner.email == 'admin@ghiblifood.com'
        assert book.ingredients[0] == 'Rice'

        magical = test_db_session.scalar(select(Tag).where(Tag.name == 'magical'))
        assert magical.usage_count == 2

    def test_passwords_are_hashed(self, test_db_session):
        seed_database(test_db_session)

        admin = test_db_session.scalar(select(User).where(User.role == 'admin'))
        assert admin.password.startswith(f"pbkdf2_sha256${PBKDF2_ITERATIONS}$")
        assert 'admin123' not in admin.password

    def test_clear_seed_data(self, test_db_session):
        seed_database(test_db_session)

        clear_seed_data(test_db_session)

        assert _count(test_db_session, Book) == 0
        assert _count(test_db_session, BookTag) == 0
        assert _count(test_db_session, Category) == 0
        assert _count(test_db_session, User) == 0


class TestHashPassword:
    def test_salted(self):
        assert hash_password("user123") != hash_password("user123")

    def test_deterministic_with_salt(self):
        salt = b"0123456789abcdef"
        assert hash_password("user123", salt) == hash_password("user123", salt)
