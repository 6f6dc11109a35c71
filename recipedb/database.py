"""Database models and setup for RecipeDB."""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import (
    create_engine, Column, Integer, String, DateTime, Date, Boolean, Text,
    Numeric, ForeignKey, Index, UniqueConstraint, CheckConstraint, Enum, JSON, Uuid,
    event
)
from sqlalchemy.orm import declarative_base, sessionmaker, relationship, Session
from sqlalchemy.pool import StaticPool

from .config import get_config

logger = logging.getLogger(__name__)

Base = declarative_base()

USER_ROLES = ('user', 'admin', 'guest')
DIFFICULTY_LEVELS = ('easy', 'medium', 'hard')
LIBRARY_STATUSES = ('unread', 'reading', 'read', 'want_to_read')


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _recommendation_expiry() -> datetime:
    return _utcnow() + timedelta(days=30)


class User(Base):
    """Registered application user."""
    __tablename__ = 'users'

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    password = Column(String(255), nullable=False)
    role = Column(Enum(*USER_ROLES, name='user_role'), default='user', nullable=False)
    profile_picture_url = Column(Text)
    bio = Column(Text)
    is_active = Column(Boolean, default=True, nullable=False)
    email_verified = Column(Boolean, default=False, nullable=False)
    last_login = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    # Relationships
    books = relationship("Book", back_populates="owner")
    library = relationship("UserBook", back_populates="user", cascade="all, delete-orphan")
    reviews = relationship("Review", back_populates="user", cascade="all, delete-orphan")

    __table_args__ = (
        Index('idx_users_role', 'role'),
        Index('idx_users_active', 'is_active'),
    )


class Book(Base):
    """Recipe book in the catalog."""
    __tablename__ = 'books'

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    title = Column(String(255), nullable=False)
    author = Column(String(255), nullable=False)
    isbn = Column(String(20), unique=True)
    genre = Column(String(100), nullable=False)
    description = Column(Text)
    published_date = Column(Date)
    book_cover_url = Column(Text)
    cuisine_type = Column(String(100))
    dietary_category = Column(String(100))
    difficulty_level = Column(Enum(*DIFFICULTY_LEVELS, name='difficulty_level'))
    ingredients = Column(JSON)
    sample_recipes = Column(Text)
    author_bio = Column(Text)
    visibility = Column(Boolean, default=True, nullable=False)
    average_rating = Column(Numeric(3, 2), default=0)
    rating_count = Column(Integer, default=0)
    user_id = Column(Uuid, ForeignKey('users.id', ondelete='SET NULL'))
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    # Relationships
    owner = relationship("User", back_populates="books")
    reviews = relationship("Review", back_populates="book", cascade="all, delete-orphan")

    __table_args__ = (
        Index('idx_books_title', 'title'),
        Index('idx_books_author', 'author'),
        Index('idx_books_genre_rating', 'genre', 'average_rating'),
        Index('idx_books_visibility', 'visibility'),
        Index('idx_books_user_id', 'user_id'),
    )


class UserBook(Base):
    """A book in a user's personal library."""
    __tablename__ = 'user_books'

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    book_id = Column(Uuid, ForeignKey('books.id', ondelete='CASCADE'), nullable=False)
    status = Column(Enum(*LIBRARY_STATUSES, name='library_status'), default='unread')
    rating = Column(Integer)
    review = Column(Text)
    notes = Column(Text)
    date_added = Column(DateTime(timezone=True), default=_utcnow)
    date_started = Column(DateTime(timezone=True))
    date_completed = Column(DateTime(timezone=True))
    is_favorite = Column(Boolean, default=False)
    progress = Column(Integer, default=0)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    user = relationship("User", back_populates="library")
    book = relationship("Book")

    __table_args__ = (
        UniqueConstraint('user_id', 'book_id', name='uq_user_book'),
        CheckConstraint('rating >= 1 AND rating <= 5', name='ck_user_books_rating'),
        CheckConstraint('progress >= 0 AND progress <= 100', name='ck_user_books_progress'),
        Index('idx_user_books_user_status', 'user_id', 'status'),
        Index('idx_user_books_book_id', 'book_id'),
    )


class Category(Base):
    """Recipe category with display icon and colour."""
    __tablename__ = 'categories'

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(100), unique=True, nullable=False)
    description = Column(Text)
    icon = Column(String(50))
    color = Column(String(7))  # hex colour code
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class BookCategory(Base):
    __tablename__ = 'book_categories'

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    book_id = Column(Uuid, ForeignKey('books.id', ondelete='CASCADE'), nullable=False)
    category_id = Column(Uuid, ForeignKey('categories.id', ondelete='CASCADE'), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint('book_id', 'category_id', name='uq_book_category'),
    )


class Review(Base):
    """Public or private review of a book, one per user and book."""
    __tablename__ = 'reviews'

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    book_id = Column(Uuid, ForeignKey('books.id', ondelete='CASCADE'), nullable=False)
    rating = Column(Integer, nullable=False)
    title = Column(String(255))
    content = Column(Text)
    is_public = Column(Boolean, default=True)
    is_verified = Column(Boolean, default=False)
    helpful_count = Column(Integer, default=0)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    user = relationship("User", back_populates="reviews")
    book = relationship("Book", back_populates="reviews")

    __table_args__ = (
        UniqueConstraint('user_id', 'book_id', name='uq_review_user_book'),
        CheckConstraint('rating >= 1 AND rating <= 5', name='ck_reviews_rating'),
        Index('idx_reviews_book_rating', 'book_id', 'rating'),
    )


class Tag(Base):
    __tablename__ = 'tags'

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(50), unique=True, nullable=False)
    description = Column(Text)
    usage_count = Column(Integer, default=0)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class BookTag(Base):
    __tablename__ = 'book_tags'

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    book_id = Column(Uuid, ForeignKey('books.id', ondelete='CASCADE'), nullable=False)
    tag_id = Column(Uuid, ForeignKey('tags.id', ondelete='CASCADE'), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint('book_id', 'tag_id', name='uq_book_tag'),
    )


class Note(Base):
    """User note, optionally attached to a book."""
    __tablename__ = 'notes'

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    book_id = Column(Uuid, ForeignKey('books.id', ondelete='CASCADE'))
    title = Column(String(255))
    content = Column(Text, nullable=False)
    is_archived = Column(Boolean, default=False)
    is_private = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index('idx_notes_user_id', 'user_id'),
        Index('idx_notes_book_id', 'book_id'),
    )


class ReadingSession(Base):
    __tablename__ = 'reading_sessions'

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    book_id = Column(Uuid, ForeignKey('books.id', ondelete='CASCADE'), nullable=False)
    start_time = Column(DateTime(timezone=True), default=_utcnow)
    end_time = Column(DateTime(timezone=True))
    duration_minutes = Column(Integer)
    pages_read = Column(Integer, default=0)
    notes = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class Recommendation(Base):
    """Scored book recommendation that expires after thirty days."""
    __tablename__ = 'recommendations'

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    book_id = Column(Uuid, ForeignKey('books.id', ondelete='CASCADE'), nullable=False)
    score = Column(Numeric(5, 4), nullable=False)
    reason = Column(Text)
    recommendation_type = Column(String(50))  # content_based, collaborative, hybrid
    is_dismissed = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    expires_at = Column(DateTime(timezone=True), default=_recommendation_expiry)

    __table_args__ = (
        Index('idx_recommendations_user_id', 'user_id'),
        Index('idx_recommendations_expires_at', 'expires_at'),
    )


class ActivityLog(Base):
    """Audit trail of user actions."""
    __tablename__ = 'activity_logs'

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey('users.id', ondelete='SET NULL'))
    action = Column(String(100), nullable=False)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(Uuid)
    old_values = Column(JSON)
    new_values = Column(JSON)
    ip_address = Column(String(45))
    user_agent = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class SchemaMigration(Base):
    """Applied migration versions."""
    __tablename__ = 'schema_migrations'

    version = Column(String(255), primary_key=True)
    applied_at = Column(DateTime(timezone=True), default=_utcnow)


class DatabaseManager:
    """Database connection and session management."""

    def __init__(self, database_url: Optional[str] = None, pool_size: Optional[int] = None,
                 pool_timeout: Optional[float] = None, max_overflow: Optional[int] = None):
        if database_url is None:
            config = get_config()
            database_url = config.get_database_url()
            pool_size = pool_size or config.database.pool_size
            pool_timeout = pool_timeout or config.database.pool_timeout
            if max_overflow is None:
                max_overflow = config.database.max_overflow

        self.database_url = database_url

        # Configure engine based on database type
        if database_url.startswith('sqlite'):
            self.engine = create_engine(
                database_url,
                poolclass=StaticPool,
                connect_args={'check_same_thread': False},
                echo=False
            )
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)
        else:
            # A checkout blocks for at most pool_timeout seconds once the pool is exhausted
            self.engine = create_engine(
                database_url,
                pool_size=pool_size or 20,
                max_overflow=max_overflow or 0,
                pool_timeout=pool_timeout or 2.0,
                pool_pre_ping=True,
                echo=False
            )

        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

        logger.info(f"Database manager initialized with URL: {self.engine.url!r}")

    def get_session(self) -> Session:
        """Get a new database session."""
        return self.SessionLocal()

    def close(self):
        """Close the database connection."""
        self.engine.dispose()
        logger.info("Database connection closed")


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()

