"""Demo accounts and inventory for a fresh installation."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from circulation.library import Library
from circulation.models import BookCategory, UserRole, utcnow

logger = logging.getLogger(__name__)

DEMO_USERS = [
    {"email": "admin@library.com", "name": "Admin User", "role": UserRole.ADMIN, "password": "admin123"},
    {"email": "librarian@library.com", "name": "Librarian User", "role": UserRole.LIBRARIAN, "password": "librarian123"},
    {"email": "sarah.johnson@library.com", "name": "Sarah Johnson", "role": UserRole.LIBRARIAN, "password": None},
    {"email": "michael.smith@library.com", "name": "Michael Smith", "role": UserRole.LIBRARIAN, "password": None},
]

DEMO_BOOKS = [
    {"title": "Introduction to Human Biology", "author": "Sarah Johnson", "category": BookCategory.HUMAN_SCIENCE, "total_copies": 5, "isbn": "9781234567897", "published_year": 2020, "publisher": "Academic Press"},
    {"title": "Advanced Calculus", "author": "Robert Smith", "category": BookCategory.MATHS, "total_copies": 8, "isbn": "9789876543210", "published_year": 2018, "publisher": "Math Publishers"},
    {"title": "Organic Chemistry Fundamentals", "author": "Emily Chen", "category": BookCategory.CHEMISTRY, "total_copies": 10, "isbn": "9785678901234", "published_year": 2019, "publisher": "Science Books"},
    {"title": "Quantum Physics Explained", "author": "Michael Brown", "category": BookCategory.PHYSICS, "total_copies": 4, "isbn": "9783456789012", "published_year": 2021, "publisher": "Physics Press"},
    {"title": "Pride and Prejudice", "author": "Jane Austen", "category": BookCategory.NOVELS, "total_copies": 15, "isbn": "9780141439518", "published_year": 1813, "publisher": "Penguin Classics"},
]

# (borrower email, book title, days ago borrowed, loan days, days ago returned)
DEMO_LOANS = [
    ("sarah.johnson@library.com", "Introduction to Human Biology", 5, 14, None),
    ("michael.smith@library.com", "Advanced Calculus", 20, 14, None),
    ("librarian@library.com", "Quantum Physics Explained", 30, 14, 18),
    ("sarah.johnson@library.com", "Pride and Prejudice", 25, 14, None),
]


def seed_demo_data(library: Library, now: Optional[datetime] = None) -> None:
    now = now or utcnow()
    users = {}
    for entry in DEMO_USERS:
        fields = dict(entry)
        password = fields.pop("password")
        user = library.directory.add_user(fields)
        if password:
            library.sessions.set_password(user.id, password)
        users[user.email] = user

    books = {}
    for entry in DEMO_BOOKS:
        book = library.catalog.add_book(entry)
        books[book.title] = book

    for email, title, borrowed_ago, loan_days, returned_ago in DEMO_LOANS:
        borrow_date = now - timedelta(days=borrowed_ago)
        transaction = library.engine.borrow(
            users[email].id,
            books[title].id,
            borrow_date,
            borrow_date + timedelta(days=loan_days),
        )
        if returned_ago is not None:
            library.engine.record_return(transaction.id, now - timedelta(days=returned_ago))

    logger.info(f"Seeded {len(users)} users, {len(books)} books and {len(DEMO_LOANS)} loans")


def seed_demo_credentials(library: Library) -> int:
    """Restore demo passwords for demo accounts loaded from the row store."""
    restored = 0
    for entry in DEMO_USERS:
        user = library.directory.find_by_email(entry["email"])
        if user is not None and entry["password"]:
            library.sessions.set_password(user.id, entry["password"])
            restored += 1
    return restored
