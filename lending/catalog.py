import logging
import sqlite3
from typing import List, Optional, Tuple

from .config import Settings
from .database import Database
from .errors import ConflictError, NotFoundError, ValidationError
from .models import SQLITE_MAX_INT, Author, Book, BorrowRecord, BorrowStatus, Category, Page, to_iso, utcnow

logger = logging.getLogger(__name__)

BOOK_SELECT = """
    SELECT b.*, a.name AS author_name, c.name AS category_name
    FROM books b
    LEFT JOIN authors a ON a.id = b.author_id
    LEFT JOIN categories c ON c.id = b.category_id
"""


def _contains(column: str) -> str:
    """Case-insensitive substring test that treats the needle literally."""
    return f"instr(lower(coalesce({column}, '')), lower(?)) > 0"


class CatalogService:
    """Read access to the book catalog, plus the inventory helpers staff tooling uses."""

    def __init__(self, db: Database, settings: Settings) -> None:
        self.db = db
        self.settings = settings

    # ------------------------- Queries ------------------------- #
    def list_books(
        self,
        page: int = 1,
        limit: Optional[int] = None,
        *,
        category: Optional[str] = None,
        author: Optional[str] = None,
        search: Optional[str] = None,
    ) -> Page:
        """Return one page of books ordered by title.

        ``category`` and ``author`` narrow by name; ``search`` matches title,
        author name or description. All matching is case-insensitive.
        """
        limit = self.settings.default_page_size if limit is None else limit
        page, limit = self._check_paging(page, limit)

        where, params = self._build_filters(category=category, author=author, search=search)
        with self.db.connection() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) FROM books b "
                f"LEFT JOIN authors a ON a.id = b.author_id "
                f"LEFT JOIN categories c ON c.id = b.category_id {where}",
                params,
            ).fetchone()[0]
            rows = conn.execute(
                f"{BOOK_SELECT} {where} ORDER BY b.title COLLATE NOCASE ASC, b.id ASC LIMIT ? OFFSET ?",
                (*params, limit, (page - 1) * limit),
            ).fetchall()
        return Page(items=[Book.from_row(row) for row in rows], total=total, page=page, limit=limit)

    def find_book(self, book_id: int) -> Optional[Book]:
        with self.db.connection() as conn:
            row = conn.execute(f"{BOOK_SELECT} WHERE b.id = ?", (book_id,)).fetchone()
        return Book.from_row(row) if row else None

    def get_book(self, book_id: int) -> dict:
        """Book details with every loan that has not been returned yet."""
        book = self.find_book(book_id)
        if book is None:
            raise NotFoundError("Book not found")

        with self.db.connection() as conn:
            rows = conn.execute(
                """
                SELECT r.*, u.first_name, u.last_name, u.email
                FROM borrow_records r
                JOIN users u ON u.id = r.user_id
                WHERE r.book_id = ? AND r.status = ?
                ORDER BY r.borrowed_at ASC
                """,
                (book_id, BorrowStatus.ACTIVE.value),
            ).fetchall()

        now = utcnow()
        records = []
        for row in rows:
            record = BorrowRecord.from_row(row).to_dict(now)
            record["user"] = {"firstName": row["first_name"], "lastName": row["last_name"], "email": row["email"]}
            records.append(record)

        data = book.to_dict()
        data["borrowRecords"] = records
        return data

    # ------------------------- Inventory ------------------------- #
    def add_author(self, name: str, bio: Optional[str] = None, birth_year: Optional[int] = None) -> Author:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Author name cannot be empty.")
        with self.db.connection() as conn:
            cursor = conn.execute(
                "INSERT INTO authors (name, bio, birth_year) VALUES (?, ?, ?)", (name, bio, birth_year)
            )
        return Author(id=cursor.lastrowid, name=name, bio=bio, birth_year=birth_year)

    def add_category(self, name: str, description: Optional[str] = None) -> Category:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Category name cannot be empty.")
        try:
            with self.db.connection() as conn:
                cursor = conn.execute(
                    "INSERT INTO categories (name, description) VALUES (?, ?)", (name, description)
                )
        except sqlite3.IntegrityError as exc:
            raise ConflictError(f"Category {name} already exists.") from exc
        return Category(id=cursor.lastrowid, name=name, description=description)

    def add_book(
        self,
        title: str,
        isbn: str,
        *,
        author_id: Optional[int] = None,
        category_id: Optional[int] = None,
        published_year: Optional[int] = None,
        description: Optional[str] = None,
        copies: int = 1,
    ) -> Book:
        title = (title or "").strip()
        isbn = (isbn or "").strip()
        if not title:
            raise ValidationError("Title cannot be empty.")
        if not isbn:
            raise ValidationError("ISBN cannot be empty.")
        if copies < 0:
            raise ValidationError("Copies cannot be negative.")

        with self.db.connection() as conn:
            if conn.execute("SELECT 1 FROM books WHERE isbn = ?", (isbn,)).fetchone():
                raise ConflictError(f"Book with ISBN {isbn} already exists.")
            if author_id is not None and not conn.execute(
                "SELECT 1 FROM authors WHERE id = ?", (author_id,)
            ).fetchone():
                raise NotFoundError("Author not found")
            if category_id is not None and not conn.execute(
                "SELECT 1 FROM categories WHERE id = ?", (category_id,)
            ).fetchone():
                raise NotFoundError("Category not found")
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO books (title, isbn, published_year, description, total_copies,
                                       available_copies, author_id, category_id, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (title, isbn, published_year, description, copies, copies,
                     author_id, category_id, to_iso(utcnow())),
                )
            except sqlite3.IntegrityError as exc:
                raise ConflictError(f"Book with ISBN {isbn} already exists.") from exc

        logger.info("Added book %r (isbn=%s, copies=%d)", title, isbn, copies)
        return self.find_book(cursor.lastrowid)

    def count_books(self) -> int:
        with self.db.connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM books").fetchone()[0]

    # ------------------------- Utilities ------------------------- #
    def _check_paging(self, page: int, limit: int) -> Tuple[int, int]:
        if page < 1:
            raise ValidationError("page: must be greater than or equal to 1")
        if limit < 1 or limit > self.settings.max_page_size:
            raise ValidationError(f"limit: must be between 1 and {self.settings.max_page_size}")
        if (page - 1) * limit > SQLITE_MAX_INT:
            raise ValidationError("page: out of range")
        return page, limit

    @staticmethod
    def _build_filters(
        *, category: Optional[str], author: Optional[str], search: Optional[str]
    ) -> Tuple[str, List[str]]:
        clauses: List[str] = []
        params: List[str] = []
        if category and category.strip():
            clauses.append(_contains("c.name"))
            params.append(category.strip())
        if author and author.strip():
            clauses.append(_contains("a.name"))
            params.append(author.strip())
        if search and search.strip():
            term = search.strip()
            clauses.append(f"({_contains('b.title')} OR {_contains('a.name')} OR {_contains('b.description')})")
            params.extend([term, term, term])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params
