"""Sample catalog, users and loans for local development."""

import logging
from datetime import datetime, timezone
from typing import Dict

from .auth import AuthService
from .borrowing import BorrowingService
from .catalog import CatalogService
from .config import Settings
from .database import Database
from .models import MembershipType

logger = logging.getLogger(__name__)

CATEGORIES = [
    ("Fiction", "Fictional novels and stories"),
    ("Programming", "Software development and programming books"),
    ("Science", "Scientific books and research"),
    ("Biography", "Biographical and autobiographical works"),
    ("History", "Historical books and documentaries"),
]

AUTHORS = [
    ("Robert C. Martin", "Software engineer and author known for Clean Code", 1952),
    ("Douglas Crockford", "JavaScript architect at Yahoo!, known for JSON", 1955),
    ("George Orwell", "English novelist and essayist", 1903),
    ("Harper Lee", "American novelist", 1926),
    ("Stephen Hawking", "Theoretical physicist and cosmologist", 1942),
]

# title, author index, category index, isbn, year, description
BOOKS = [
    ("Clean Code: A Handbook of Agile Software Craftsmanship", 0, 1, "978-0132350884", 2008,
     "A comprehensive guide to writing clean, maintainable code."),
    ("JavaScript: The Good Parts", 1, 1, "978-0596517748", 2008,
     "Unearthing the excellence in JavaScript."),
    ("1984", 2, 0, "978-0451524935", 1949,
     "A dystopian social science fiction novel."),
    ("To Kill a Mockingbird", 3, 0, "978-0060935467", 1960,
     "A gripping tale of racial injustice and childhood innocence."),
    ("A Brief History of Time", 4, 2, "978-0553380163", 1988,
     "A landmark volume in science writing."),
]

# email, first, last, password, membership, phone, address
USERS = [
    ("admin@library.com", "Admin", "User", "password123", MembershipType.ADMIN, "555-0001", "123 Library St"),
    ("john.doe@example.com", "John", "Doe", "password123", MembershipType.STANDARD, "555-0002", "456 Main St"),
    ("jane.smith@example.com", "Jane", "Smith", "password123", MembershipType.STAFF, "555-0003", "789 Oak Ave"),
    ("test.user@example.com", "Test", "User", "testpass123", MembershipType.STANDARD, "555-0004", "321 Test Blvd"),
]


def _at(year: int, month: int, day: int) -> datetime:
    return datetime(year, month, day, tzinfo=timezone.utc)


def seed_database(db: Database, settings: Settings) -> Dict[str, int]:
    """Load the sample data. Does nothing if the catalog already has books."""
    db.create_tables()
    catalog = CatalogService(db, settings)
    if catalog.count_books() > 0:
        logger.info("Catalog already populated, skipping seed")
        return {}

    auth = AuthService(db, settings)
    categories = [catalog.add_category(name, description) for name, description in CATEGORIES]
    authors = [catalog.add_author(name, bio, year) for name, bio, year in AUTHORS]
    books = [
        catalog.add_book(
            title,
            isbn,
            author_id=authors[author_idx].id,
            category_id=categories[category_idx].id,
            published_year=year,
            description=description,
        )
        for title, author_idx, category_idx, isbn, year, description in BOOKS
    ]
    users = [
        auth.create_user(
            email=email, first_name=first, last_name=last, password=password,
            membership_type=membership, phone=phone, address=address,
        )
        for email, first, last, password, membership, phone, address in USERS
    ]

    # John has Clean Code out, Jane has The Good Parts out and already returned Mockingbird.
    borrowing = BorrowingService(db, settings, clock=lambda: _at(2024, 1, 15))
    loans = [
        borrowing.borrow(users[1].id, books[0].id, _at(2024, 1, 29)),
        borrowing.borrow(users[2].id, books[1].id, _at(2024, 2, 3)),
        borrowing.borrow(users[2].id, books[3].id, _at(2024, 1, 24)),
    ]
    returning = BorrowingService(db, settings, clock=lambda: _at(2024, 1, 23))
    returning.return_book(loans[2]["borrowRecord"]["borrowId"])

    counts = {
        "books": len(books),
        "users": len(users),
        "borrow_records": len(loans),
        "categories": len(categories),
        "authors": len(authors),
    }
    logger.info("Database seeded: %s", counts)
    return counts
