"""Borrow and return flow.

A borrow record is stored as ACTIVE until it is returned, then RETURNED for
good. OVERDUE is never written to the database: it is how an ACTIVE record
past its due date is displayed (see ``BorrowRecord.display_status``).

Both writes of a borrow (new record, one copy fewer) and of a return (record
closed, one copy more) happen inside a single transaction.
"""

import logging
import math
import sqlite3
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from .config import Settings
from .database import Database
from .errors import (
    AlreadyBorrowedError,
    AlreadyReturnedError,
    NotAvailableError,
    NotFoundError,
    ValidationError,
)
from .models import SQLITE_MAX_INT, BorrowRecord, BorrowStatus, Page, to_iso, utcnow

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60

STATUS_FILTERS = ("all", "active", "returned", "overdue")


def default_due_date(now: datetime, loan_period_days: int = 14) -> datetime:
    return now + timedelta(days=loan_period_days)


def compute_fine(due_date: datetime, returned_at: datetime, daily_rate: float = 1.0) -> float:
    """Fine for returning at ``returned_at``: every started day past due costs ``daily_rate``."""
    if returned_at <= due_date:
        return 0.0
    days_overdue = math.ceil((returned_at - due_date).total_seconds() / SECONDS_PER_DAY)
    return round(max(0, days_overdue) * daily_rate, 2)


def format_fine(amount: float) -> str:
    return f"${amount:.2f}" if amount > 0 else "No fine"


class BorrowingService:
    def __init__(self, db: Database, settings: Settings, clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self.settings = settings
        self.clock = clock

    # ------------------------- Lookups ------------------------- #
    def get_record(self, borrow_id: int) -> Optional[BorrowRecord]:
        with self.db.connection() as conn:
            row = conn.execute("SELECT * FROM borrow_records WHERE id = ?", (borrow_id,)).fetchone()
        return BorrowRecord.from_row(row) if row else None

    @staticmethod
    def _has_open_loan(conn: sqlite3.Connection, user_id: int, book_id: int) -> bool:
        row = conn.execute(
            "SELECT 1 FROM borrow_records WHERE user_id = ? AND book_id = ? AND status = ? LIMIT 1",
            (user_id, book_id, BorrowStatus.ACTIVE.value),
        ).fetchone()
        return row is not None

    def _detail(self, conn: sqlite3.Connection, borrow_id: int) -> dict:
        """A record with the borrower and book summaries embedded."""
        row = conn.execute(
            """
            SELECT r.*, u.first_name, u.last_name, u.email,
                   b.title, b.isbn, a.name AS author_name
            FROM borrow_records r
            JOIN users u ON u.id = r.user_id
            JOIN books b ON b.id = r.book_id
            LEFT JOIN authors a ON a.id = b.author_id
            WHERE r.id = ?
            """,
            (borrow_id,),
        ).fetchone()
        data = BorrowRecord.from_row(row).to_dict(self.clock())
        data["user"] = {"firstName": row["first_name"], "lastName": row["last_name"], "email": row["email"]}
        data["book"] = {"title": row["title"], "author": row["author_name"], "isbn": row["isbn"]}
        return data

    # ------------------------- Borrow ------------------------- #
    def borrow(self, user_id: int, book_id: int, due_date: Optional[datetime] = None) -> dict:
        now = self.clock()
        with self.db.connection() as conn:
            book = conn.execute(
                "SELECT id, title, available_copies FROM books WHERE id = ?", (book_id,)
            ).fetchone()
            if book is None:
                raise NotFoundError("Book not found")
            if conn.execute("SELECT 1 FROM users WHERE id = ?", (user_id,)).fetchone() is None:
                raise NotFoundError("User not found")
            if book["available_copies"] <= 0:
                raise NotAvailableError()
            if self._has_open_loan(conn, user_id, book_id):
                raise AlreadyBorrowedError()

        due = due_date or default_due_date(now, self.settings.loan_period_days)

        with self.db.transaction() as conn:
            # Re-checked under the write lock: a concurrent request may have
            # taken the last copy or opened the same loan since the checks above.
            if self._has_open_loan(conn, user_id, book_id):
                raise AlreadyBorrowedError()
            cursor = conn.execute(
                "UPDATE books SET available_copies = available_copies - 1 WHERE id = ? AND available_copies > 0",
                (book_id,),
            )
            if cursor.rowcount == 0:
                logger.warning("Lost race for last copy of book %s (user %s)", book_id, user_id)
                raise NotAvailableError()
            cursor = conn.execute(
                """
                INSERT INTO borrow_records (user_id, book_id, borrowed_at, due_date, status, fine_amount)
                VALUES (?, ?, ?, ?, ?, 0)
                """,
                (user_id, book_id, to_iso(now), to_iso(due), BorrowStatus.ACTIVE.value),
            )
            record = self._detail(conn, cursor.lastrowid)

        logger.info("User %s borrowed book %s (record %s, due %s)", user_id, book_id, record["borrowId"], record["dueDate"])
        return {"message": "Book borrowed successfully", "borrowRecord": record}

    # ------------------------- Return ------------------------- #
    def return_book(self, borrow_id: int) -> dict:
        record = self.get_record(borrow_id)
        if record is None:
            raise NotFoundError("Borrow record not found")
        if record.status == BorrowStatus.RETURNED:
            raise AlreadyReturnedError()

        now = self.clock()
        fine = compute_fine(record.due_date, now, self.settings.daily_fine_rate)

        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE borrow_records SET status = ?, returned_at = ?, fine_amount = ?
                WHERE id = ? AND status = ?
                """,
                (BorrowStatus.RETURNED.value, to_iso(now), fine, borrow_id, BorrowStatus.ACTIVE.value),
            )
            if cursor.rowcount == 0:
                # Closed by a concurrent request since we read it.
                raise AlreadyReturnedError()
            conn.execute(
                "UPDATE books SET available_copies = available_copies + 1 WHERE id = ?", (record.book_id,)
            )
            detail = self._detail(conn, borrow_id)

        logger.info("Borrow record %s returned (book %s, fine %s)", borrow_id, record.book_id, format_fine(fine))
        return {"message": "Book returned successfully", "borrowRecord": detail, "fine": format_fine(fine)}

    # ------------------------- History ------------------------- #
    def list_user_borrows(
        self, user_id: int, status: str = "all", page: int = 1, limit: Optional[int] = None
    ) -> Page:
        """A user's borrow history, newest first."""
        status = (status or "all").lower()
        if status not in STATUS_FILTERS:
            raise ValidationError(f"status: must be one of {', '.join(STATUS_FILTERS)}")
        limit = self.settings.default_page_size if limit is None else limit
        if page < 1:
            raise ValidationError("page: must be greater than or equal to 1")
        if limit < 1 or limit > self.settings.max_page_size:
            raise ValidationError(f"limit: must be between 1 and {self.settings.max_page_size}")
        if (page - 1) * limit > SQLITE_MAX_INT:
            raise ValidationError("page: out of range")

        now = self.clock()
        clauses = ["r.user_id = ?"]
        params: List[object] = [user_id]
        if status == "active":
            clauses.append("r.status = 'ACTIVE'")
        elif status == "returned":
            clauses.append("r.status = 'RETURNED'")
        elif status == "overdue":
            clauses.append("r.status = 'ACTIVE' AND r.due_date < ?")
            params.append(to_iso(now))
        where = " AND ".join(clauses)

        with self.db.connection() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM borrow_records r WHERE {where}", params).fetchone()[0]
            rows = conn.execute(
                f"""
                SELECT r.*, b.title, b.isbn, a.name AS author_name, c.name AS category_name
                FROM borrow_records r
                JOIN books b ON b.id = r.book_id
                LEFT JOIN authors a ON a.id = b.author_id
                LEFT JOIN categories c ON c.id = b.category_id
                WHERE {where}
                ORDER BY r.borrowed_at DESC, r.id DESC
                LIMIT ? OFFSET ?
                """,
                (*params, limit, (page - 1) * limit),
            ).fetchall()

        items = []
        for row in rows:
            data = BorrowRecord.from_row(row).to_dict(now)
            data["book"] = {
                "title": row["title"],
                "author": row["author_name"],
                "isbn": row["isbn"],
                "category": row["category_name"],
            }
            items.append(data)
        return Page(items=items, total=total, page=page, limit=limit)

    def list_overdue(self) -> List[dict]:
        """Every open loan past its due date, with the fine accrued so far."""
        now = self.clock()
        with self.db.connection() as conn:
            rows = conn.execute(
                """
                SELECT r.*, u.first_name, u.last_name, u.email, b.title, b.isbn
                FROM borrow_records r
                JOIN users u ON u.id = r.user_id
                JOIN books b ON b.id = r.book_id
                WHERE r.status = 'ACTIVE' AND r.due_date < ?
                ORDER BY r.due_date ASC
                """,
                (to_iso(now),),
            ).fetchall()

        overdue = []
        for row in rows:
            record = BorrowRecord.from_row(row)
            data = record.to_dict(now)
            data["user"] = {"firstName": row["first_name"], "lastName": row["last_name"], "email": row["email"]}
            data["book"] = {"title": row["title"], "isbn": row["isbn"]}
            data["accruedFine"] = compute_fine(record.due_date, now, self.settings.daily_fine_rate)
            overdue.append(data)
        return overdue
