"""Demo data for a fresh recipe catalog.

Seeding is idempotent: rows whose natural key (category name, user email,
book ISBN, tag name) already exists are left untouched.
"""

import hashlib
import logging
import os
from datetime import date
from typing import Dict

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from .database import Book, BookCategory, BookTag, Category, Tag, User

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 260000

CATEGORIES = [
    {'name': 'Japanese Cuisine', 'description': 'Traditional and modern Japanese cooking recipes', 'icon': '🍱', 'color': '#ff6b6b'},
    {'name': 'Desserts & Sweets', 'description': 'Delightful desserts and sweet treats', 'icon': '🍰', 'color': '#feca57'},
    {'name': 'Comfort Food', 'description': 'Hearty, comforting meals for the soul', 'icon': '🍲', 'color': '#48dbfb'},
    {'name': 'Healthy & Light', 'description': 'Nutritious and light meal options', 'icon': '🥗', 'color': '#0abde3'},
    {'name': 'Vegetarian', 'description': 'Plant-based and vegetarian recipes', 'icon': '🥬', 'color': '#10ac84'},
    {'name': 'Breakfast & Brunch', 'description': 'Morning meals and brunch favorites', 'icon': '🥞', 'color': '#ee5a24'},
    {'name': 'Soups & Stews', 'description': 'Warming soups and hearty stews', 'icon': '🍜', 'color': '#5f27cd'},
    {'name': 'Seafood', 'description': 'Fresh seafood and fish recipes', 'icon': '🐟', 'color': '#54a0ff'},
    {'name': 'Baking & Bread', 'description': 'Baked goods, breads, and pastries', 'icon': '🍞', 'color': '#f0932b'},
    {'name': 'International', 'description': 'Recipes from around the world', 'icon': '🌍', 'color': '#eb4d4b'},
]

USERS = [
    {'name': 'Admin User', 'email': 'admin@ghiblifood.com', 'password': 'admin123', 'role': 'admin',
     'bio': 'Administrator of the Ghibli Food Recipe platform', 'email_verified': True},
    {'name': 'Chihiro Ogino', 'email': 'chihiro@spiritedaway.com', 'password': 'user123', 'role': 'user',
     'bio': 'Loves discovering magical recipes and sharing culinary adventures', 'email_verified': True},
    {'name': 'Howl Jenkins', 'email': 'howl@movingcastle.com', 'password': 'user123', 'role': 'user',
     'bio': 'Wizard chef who creates beautiful and magical dishes', 'email_verified': True},
    {'name': 'Sophie Hatter', 'email': 'sophie@movingcastle.com', 'password': 'user123', 'role': 'user',
     'bio': 'Baker extraordinaire with a passion for hearty comfort foods', 'email_verified': True},
    {'name': 'Totoro Guest', 'email': 'guest@totoro.com', 'password': 'user123', 'role': 'guest',
     'bio': 'Temporary user exploring Ghibli-inspired recipes', 'email_verified': False},
]

BOOKS = [
    {
        'title': "Spirited Away Kitchen Secrets",
        'author': "Yubaba's Kitchen Staff",
        'isbn': '978-1-23456-789-0',
        'genre': 'Japanese Cuisine',
        'description': "Discover the magical recipes from the bathhouse kitchen, including the famous "
                       "river spirit's feast and No-Face's favorite snacks.",
        'published_date': date(2020, 7, 20),
        'cuisine_type': 'Japanese',
        'dietary_category': 'Omnivore',
        'difficulty_level': 'medium',
        'ingredients': ['Rice', 'Seaweed', 'Fresh Fish', 'Soy Sauce', 'Miso Paste',
                        'Green Onions', 'Ginger', 'Sake', 'Mirin', 'Dashi Stock'],
        'sample_recipes': 'River Spirit Dumplings, No-Face Onigiri, Bathhouse Feast Bento',
        'author_bio': "The kitchen staff of Yubaba's bathhouse, masters of magical cuisine.",
        'owner': 'admin@ghiblifood.com',
        'tags': ['magical', 'traditional'],
    },
    {
        'title': "Howl's Moving Castle Breakfast Collection",
        'author': 'Calcifer & Sophie',
        'isbn': '978-1-23456-790-6',
        'genre': 'Breakfast & Brunch',
        'description': "Start your day with magical breakfast recipes inspired by the moving castle's "
                       "kitchen, featuring Calcifer's flame-cooked specialties.",
        'published_date': date(2021, 3, 15),
        'cuisine_type': 'European',
        'dietary_category': 'Vegetarian',
        'difficulty_level': 'easy',
        'ingredients': ['Eggs', 'Bacon', 'Bread', 'Butter', 'Fresh Herbs',
                        'Milk', 'Cheese', 'Potatoes', 'Tomatoes', 'Mushrooms'],
        'sample_recipes': "Calcifer's Flame Eggs, Castle Toast, Sophie's Garden Omelet",
        'author_bio': "Calcifer, the fire demon, and Sophie Hatter, the castle's baker.",
        'owner': 'chihiro@spiritedaway.com',
        'tags': ['magical', 'quick'],
    },
    {
        'title': "Totoro's Forest Feast",
        'author': 'Satsuki & Mei Kusakabe',
        'isbn': '978-1-23456-791-3',
        'genre': 'Healthy & Light',
        'description': 'Wholesome recipes inspired by the forest spirits and the simple country life '
                       'of the Kusakabe family.',
        'published_date': date(2021, 6, 10),
        'cuisine_type': 'Japanese',
        'dietary_category': 'Vegetarian',
        'difficulty_level': 'easy',
        'ingredients': ['Fresh Vegetables', 'Rice', 'Tofu', 'Mushrooms', 'Herbs',
                        'Seasonal Fruits', 'Green Tea', 'Honey', 'Nuts', 'Seeds'],
        'sample_recipes': "Totoro's Acorn Cookies, Forest Vegetable Soup, Catbus Bento",
        'author_bio': 'Two sisters sharing their love for nature-inspired cooking.',
        'owner': 'howl@movingcastle.com',
        'tags': ['family-friendly', 'seasonal'],
    },
    {
        'title': 'Princess Mononoke Wild Game Cookbook',
        'author': 'Lady Eboshi & Iron Town Chefs',
        'isbn': '978-1-23456-792-0',
        'genre': 'Comfort Food',
        'description': 'Hearty recipes from Iron Town, featuring wild game and foraged ingredients '
                       'from the ancient forest.',
        'published_date': date(2022, 1, 20),
        'cuisine_type': 'Japanese',
        'dietary_category': 'Omnivore',
        'difficulty_level': 'hard',
        'ingredients': ['Wild Boar', 'Venison', 'Forest Mushrooms', 'Wild Herbs',
                        'Root Vegetables', 'Game Birds', 'Wild Rice', 'Berries'],
        'sample_recipes': 'Iron Town Stew, Forest Spirit Broth, Wild Boar Ramen',
        'author_bio': 'Chefs from Iron Town, specializing in wild game and foraged foods.',
        'owner': 'admin@ghiblifood.com',
        'tags': ['traditional', 'seasonal'],
    },
    {
        'title': "Kiki's Delivery Service Bakery Treats",
        'author': 'Osono & Kiki',
        'isbn': '978-1-23456-793-7',
        'genre': 'Baking & Bread',
        'description': "Delightful pastries and baked goods from Osono's bakery, perfect for any "
                       "aspiring witch or baker.",
        'published_date': date(2021, 9, 5),
        'cuisine_type': 'European',
        'dietary_category': 'Vegetarian',
        'difficulty_level': 'medium',
        'ingredients': ['Flour', 'Butter', 'Sugar', 'Eggs', 'Yeast',
                        'Milk', 'Vanilla', 'Chocolate', 'Fruits', 'Nuts'],
        'sample_recipes': "Kiki's Flying Croissants, Osono's Daily Bread, Witch Hat Cookies",
        'author_bio': 'Osono, master baker, and Kiki, the delivery witch with a sweet tooth.',
        'owner': 'sophie@movingcastle.com',
        'tags': ['family-friendly', 'quick'],
    },
]

TAGS = [
    {'name': 'magical', 'description': 'Recipes with a touch of magic'},
    {'name': 'quick', 'description': 'Quick and easy recipes'},
    {'name': 'family-friendly', 'description': 'Perfect for family meals'},
    {'name': 'seasonal', 'description': 'Uses seasonal ingredients'},
    {'name': 'traditional', 'description': 'Traditional cooking methods'},
]


def hash_password(password: str, salt: bytes = None) -> str:
    """Hash a password as ``pbkdf2_sha256$iterations$salt$digest``."""
    salt = salt or os.urandom(16)
    digest = hashlib.pbkdf2_hmac('sha256', password.encode('utf-8'), salt, PBKDF2_ITERATIONS)
    return f"pbkdf2_sha256${PBKDF2_ITERATIONS}${salt.hex()}${digest.hex()}"


def seed_database(session: Session) -> Dict[str, int]:
    """Insert demo categories, users, books and tags.

    Returns:
        Number of rows inserted per table
    """
    inserted = {'categories': 0, 'users': 0, 'books': 0, 'tags': 0}

    categories = {c.name: c for c in session.scalars(select(Category))}
    for data in CATEGORIES:
        if data['name'] not in categories:
            categories[data['name']] = Category(**data)
            session.add(categories[data['name']])
            inserted['categories'] += 1

    users = {u.email: u for u in session.scalars(select(User))}
    for data in USERS:
        if data['email'] in users:
            continue
        fields = dict(data)
        fields['password'] = hash_password(fields.pop('password'))
        users[data['email']] = User(is_active=True, **fields)
        session.add(users[data['email']])
        inserted['users'] += 1

    tags = {t.name: t for t in session.scalars(select(Tag))}
    for data in TAGS:
        if data['name'] not in tags:
            tags[data['name']] = Tag(usage_count=0, **data)
            session.add(tags[data['name']])
            inserted['tags'] += 1

    session.flush()

    existing_isbns = set(session.scalars(select(Book.isbn)))
    for data in BOOKS:
        if data['isbn'] in existing_isbns:
            continue
        fields = {k: v for k, v in data.items() if k not in ('owner', 'tags')}
        book = Book(visibility=True, owner=users[data['owner']], **fields)
        session.add(book)
        session.flush()

        category = categories.get(data['genre'])
        if category is not None:
            session.add(BookCategory(book_id=book.id, category_id=category.id))
        for tag_name in data['tags']:
            session.add(BookTag(book_id=book.id, tag_id=tags[tag_name].id))
            tags[tag_name].usage_count = (tags[tag_name].usage_count or 0) + 1
        inserted['books'] += 1

    session.commit()
    logger.info(f"Seeded demo data: {inserted}")
    return inserted


def clear_seed_data(session: Session) -> None:
    """Remove the demo rows inserted by ``seed_database``."""
    session.execute(delete(Book).where(Book.isbn.in_([b['isbn'] for b in BOOKS])))
    session.execute(delete(Tag).where(Tag.name.in_([t['name'] for t in TAGS])))
    session.execute(delete(User).where(User.email.in_([u['email'] for u in USERS])))
    session.execute(delete(Category).where(Category.name.in_([c['name'] for c in CATEGORIES])))
    session.commit()
    logger.info("Demo data removed")
