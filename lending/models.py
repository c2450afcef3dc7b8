from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

# Largest value an SQLite INTEGER holds
SQLITE_MAX_INT = 2**63 - 1


class MembershipType(str, Enum):
    STANDARD = "STANDARD"
    PREMIUM = "PREMIUM"
    STUDENT = "STUDENT"
    STAFF = "STAFF"
    ADMIN = "ADMIN"

    @property
    def is_staff(self) -> bool:
        return self in (MembershipType.STAFF, MembershipType.ADMIN)


class BorrowStatus(str, Enum):
    """Borrow record status.

    Only ACTIVE and RETURNED are ever stored. OVERDUE is the display status
    of an ACTIVE record whose due date has passed.
    """

    ACTIVE = "ACTIVE"
    RETURNED = "RETURNED"
    OVERDUE = "OVERDUE"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Page:
    """One page of a listing plus the numbers the frontend paginates with."""

    items: list
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    def pagination(self) -> dict:
        return {
            "total": self.total,
            "page": self.page,
            "limit": self.limit,
            "totalPages": self.total_pages,
        }


@dataclass
class User:
    id: int
    email: str
    first_name: str
    last_name: str
    password_hash: str
    membership_type: MembershipType = MembershipType.STANDARD
    phone: str | None = None
    address: str | None = None
    is_active: bool = True
    membership_date: str | None = None
    created_at: str | None = None

    @property
    def is_staff(self) -> bool:
        return self.membership_type.is_staff

    def to_public_dict(self) -> dict:
        """Fields returned by register/login and the auth gate."""
        return {
            "userId": self.id,
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "membershipType": self.membership_type.value,
        }

    def to_profile_dict(self) -> dict:
        data = self.to_public_dict()
        data.update({
            "phone": self.phone,
            "address": self.address,
            "membershipDate": self.membership_date,
            "isActive": self.is_active,
            "createdAt": self.created_at,
        })
        return data

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "User":
        return User(
            id=row["id"],
            email=row["email"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            password_hash=row["password_hash"],
            membership_type=MembershipType(row["membership_type"]),
            phone=row["phone"],
            address=row["address"],
            is_active=bool(row["is_active"]),
            membership_date=row["membership_date"],
            created_at=row["created_at"],
        )


@dataclass
class Author:
    id: int
    name: str
    bio: str | None = None
    birth_year: int | None = None

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "bio": self.bio, "birthYear": self.birth_year}

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Author":
        return Author(id=row["id"], name=row["name"], bio=row["bio"], birth_year=row["birth_year"])


@dataclass
class Category:
    id: int
    name: str
    description: str | None = None

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "description": self.description}

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Category":
        return Category(id=row["id"], name=row["name"], description=row["description"])


@dataclass
class Book:
    """A catalog entry joined with its author and category names."""

    id: int
    title: str
    isbn: str
    total_copies: int
    available_copies: int
    author_id: int | None = None
    author: str | None = None
    category_id: int | None = None
    category: str | None = None
    published_year: int | None = None
    description: str | None = None
    created_at: str | None = None

    @property
    def available(self) -> bool:
        return self.available_copies > 0

    def to_dict(self) -> dict:
        return {
            "bookId": self.id,
            "title": self.title,
            "isbn": self.isbn,
            "author": self.author,
            "authorId": self.author_id,
            "category": self.category,
            "categoryId": self.category_id,
            "publishedYear": self.published_year,
            "description": self.description,
            "totalCopies": self.total_copies,
            "availableCopies": self.available_copies,
            "available": self.available,
            "createdAt": self.created_at,
        }

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "Book":
        return Book(
            id=row["id"],
            title=row["title"],
            isbn=row["isbn"],
            total_copies=row["total_copies"],
            available_copies=row["available_copies"],
            author_id=row["author_id"],
            author=row["author_name"],
            category_id=row["category_id"],
            category=row["category_name"],
            published_year=row["published_year"],
            description=row["description"],
            created_at=row["created_at"],
        )


@dataclass
class BorrowRecord:
    id: int
    user_id: int
    book_id: int
    borrowed_at: datetime
    due_date: datetime
    status: BorrowStatus
    returned_at: datetime | None = None
    fine_amount: float = 0.0

    def display_status(self, now: datetime | None = None) -> BorrowStatus:
        if self.status == BorrowStatus.ACTIVE and (now or utcnow()) > self.due_date:
            return BorrowStatus.OVERDUE
        return self.status

    def to_dict(self, now: datetime | None = None) -> dict:
        return {
            "borrowId": self.id,
            "userId": self.user_id,
            "bookId": self.book_id,
            "borrowDate": to_iso(self.borrowed_at),
            "dueDate": to_iso(self.due_date),
            "returnedAt": to_iso(self.returned_at),
            "status": self.display_status(now).value,
            "fineAmount": round(self.fine_amount, 2),
        }

    @staticmethod
    def from_row(row: Mapping[str, Any]) -> "BorrowRecord":
        return BorrowRecord(
            id=row["id"],
            user_id=row["user_id"],
            book_id=row["book_id"],
            borrowed_at=parse_iso(row["borrowed_at"]),
            due_date=parse_iso(row["due_date"]),
            status=BorrowStatus(row["status"]),
            returned_at=parse_iso(row["returned_at"]),
            fine_amount=row["fine_amount"] or 0.0,
        )
