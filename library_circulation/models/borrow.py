"""Borrow record model: borrow, return and renewal lifecycle.

A record is active while ``return_date`` is NULL. The only transitions are
renewal (once, while active and not overdue) and return (terminal).
"""
import logging
import sqlite3
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from flask import current_app

from models.book import Book
from models.database import format_ts, get_db, parse_ts, transaction
from models.fine import Fine
from models.transaction import Transaction
from models.user import User
from utils.clock import get_clock
from utils.errors import (ConflictError, NotFoundError, StateError,
                          UnavailableError, ValidationError)

logger = logging.getLogger(__name__)


class BorrowRecord:
    """One loan of one copy of a book to one user.

    Attributes:
        id (str): Unique borrow identifier.
        user_id (str): Borrower.
        user_name (str): Borrower's name at borrow time.
        user_email (str): Borrower's e-mail at borrow time.
        book_id (str): Borrowed book.
        borrow_date (str): When the loan started.
        due_date (str): When the copy must be back.
        return_date (str): When it came back; None while active.
        fine (float): Last computed fine.
        fine_paid (bool): Whether the fine has been settled.
        renewal_count (int): 0 or 1.
        renewed_at (str): When the record was renewed, if ever.
        overdue_notified (bool): Whether the overdue notice went out.
    """

    def __init__(self, id, user_id, user_name, user_email, book_id, borrow_date,
                 due_date, return_date, fine, fine_paid, renewal_count,
                 renewed_at=None, overdue_notified=0, created_at=None):
        self.id = id
        self.user_id = user_id
        self.user_name = user_name
        self.user_email = user_email
        self.book_id = book_id
        self.borrow_date = borrow_date
        self.due_date = due_date
        self.return_date = return_date
        self.fine = float(fine) if fine else 0.0
        self.fine_paid = bool(fine_paid)
        self.renewal_count = int(renewal_count or 0)
        self.renewed_at = renewed_at
        self.overdue_notified = bool(overdue_notified)
        self.created_at = created_at

    # ---------- Convenience properties ----------
    @property
    def is_active(self) -> bool:
        """Return True while the copy is still out."""
        return self.return_date is None

    @property
    def due_datetime(self) -> datetime:
        return parse_ts(self.due_date)

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        """Check if the record is active and past its due date."""
        if not self.is_active:
            return False
        now = now or get_clock().now()
        return now > self.due_datetime

    # ==================== QUERIES ====================

    @staticmethod
    def get_by_id(borrow_id: str, db=None) -> Optional['BorrowRecord']:
        """Get borrow record by ID"""
        db = db or get_db()
        row = db.execute('SELECT * FROM borrow_records WHERE id = ?', (borrow_id,)).fetchone()
        if row:
            return BorrowRecord(**dict(row))
        return None

    @staticmethod
    def require(borrow_id: str, db=None) -> 'BorrowRecord':
        """Get a borrow record or raise NotFoundError."""
        if not borrow_id:
            raise ValidationError("Borrow id is required")
        record = BorrowRecord.get_by_id(borrow_id, db)
        if not record:
            raise NotFoundError("Borrow record not found")
        return record

    @staticmethod
    def get_active(user_id: str, book_id: str, db=None) -> Optional['BorrowRecord']:
        """Get the user's active record for a book, if any."""
        db = db or get_db()
        row = db.execute('''
            SELECT * FROM borrow_records
            WHERE user_id = ? AND book_id = ? AND return_date IS NULL
        ''', (user_id, book_id)).fetchone()
        if row:
            return BorrowRecord(**dict(row))
        return None

    @staticmethod
    def get_user_records(user_id: str, active_only: bool = False) -> List['BorrowRecord']:
        """Get all borrow records for a user, newest first."""
        db = get_db()
        if active_only:
            rows = db.execute('''
                SELECT * FROM borrow_records
                WHERE user_id = ? AND return_date IS NULL
                ORDER BY borrow_date DESC, rowid DESC
            ''', (user_id,)).fetchall()
        else:
            rows = db.execute('''
                SELECT * FROM borrow_records WHERE user_id = ?
                ORDER BY borrow_date DESC, rowid DESC
            ''', (user_id,)).fetchall()
        return [BorrowRecord(**dict(row)) for row in rows]

    @staticmethod
    def get_overdue(now: datetime) -> List['BorrowRecord']:
        """Active, unpaid records whose due date has passed."""
        db = get_db()
        rows = db.execute('''
            SELECT * FROM borrow_records
            WHERE return_date IS NULL AND fine_paid = 0 AND due_date < ?
            ORDER BY due_date ASC
        ''', (format_ts(now),)).fetchall()
        return [BorrowRecord(**dict(row)) for row in rows]

    @staticmethod
    def claim_overdue_notices(now: datetime) -> List['BorrowRecord']:
        """Flag overdue records that have not been noticed yet and return them.

        Each overdue period is claimed once; extending the due date clears
        the flag.
        """
        with transaction() as db:
            rows = db.execute('''
                SELECT * FROM borrow_records
                WHERE return_date IS NULL AND overdue_notified = 0 AND due_date < ?
                ORDER BY due_date ASC, rowid ASC
            ''', (format_ts(now),)).fetchall()
            records = [BorrowRecord(**dict(row)) for row in rows]
            for record in records:
                db.execute(
                    'UPDATE borrow_records SET overdue_notified = 1 WHERE id = ?',
                    (record.id,)
                )
                record.overdue_notified = True
        return records

    @staticmethod
    def get_unpaid_fine_records(user_id: str) -> List['BorrowRecord']:
        db = get_db()
        rows = db.execute('''
            SELECT * FROM borrow_records
            WHERE user_id = ? AND fine > 0 AND fine_paid = 0
            ORDER BY due_date ASC
        ''', (user_id,)).fetchall()
        return [BorrowRecord(**dict(row)) for row in rows]

    @staticmethod
    def get_all(active_only: bool = False) -> List['BorrowRecord']:
        """Get all borrow records"""
        db = get_db()
        where = 'WHERE return_date IS NULL' if active_only else ''
        rows = db.execute(
            f'SELECT * FROM borrow_records {where} ORDER BY borrow_date DESC, rowid DESC'
        ).fetchall()
        return [BorrowRecord(**dict(row)) for row in rows]

    # ==================== CORE LOGIC ====================

    @staticmethod
    def insert(db, user: User, book: Book, now: datetime,
               description: str, metadata: Optional[Dict[str, Any]] = None) -> str:
        """Create an active record inside the caller's transaction.

        The inventory decrement is the caller's job.
        """
        borrow_id = str(uuid.uuid4())
        due_date = now + timedelta(days=current_app.config['LOAN_DURATION_DAYS'])
        try:
            db.execute('''
                INSERT INTO borrow_records (id, user_id, user_name, user_email, book_id,
                                            borrow_date, due_date, return_date, fine,
                                            fine_paid, renewal_count, renewed_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, NULL, 0.0, 0, 0, NULL, ?)
            ''', (borrow_id, user.id, user.name, user.email, book.id,
                  format_ts(now), format_ts(due_date), format_ts(now)))
        except sqlite3.IntegrityError:
            raise ConflictError("You have already borrowed this book")

        meta = {'borrowId': borrow_id, 'dueDate': format_ts(due_date)}
        meta.update(metadata or {})
        Transaction.record(db, 'borrow', user.id, description, book_id=book.id, metadata=meta)
        return borrow_id

    @staticmethod
    def borrow(user_id: str, book_id: str) -> 'BorrowRecord':
        """Lend one copy of a book to a user.

        Raises:
            ValidationError: Missing ids.
            NotFoundError: Unknown user or book.
            ConflictError: Outstanding fine or an active loan of the same book.
            UnavailableError: No copy left.
        """
        if not user_id or not book_id:
            raise ValidationError("User id and book id are required")
        User.require(user_id)
        Book.require(book_id)
        now = get_clock().now()

        with transaction() as db:
            user = User(**dict(db.execute('SELECT * FROM users WHERE id = ?', (user_id,)).fetchone()))
            book = Book(**dict(db.execute('SELECT * FROM books WHERE id = ?', (book_id,)).fetchone()))

            if user.has_outstanding_fines():
                raise ConflictError(
                    f"Please pay your outstanding fine of {user.fine_balance:,.2f} before borrowing"
                )
            if book.quantity <= 0:
                raise UnavailableError("Book is not available. Please reserve it instead.")
            if BorrowRecord.get_active(user_id, book_id, db):
                raise ConflictError("You have already borrowed this book")
            if not Book.take_copy(db, book_id):
                raise UnavailableError("Book is not available. Please reserve it instead.")

            borrow_id = BorrowRecord.insert(
                db, user, book, now, f'Borrowed "{book.title}"'
            )

        logger.info("User %s borrowed book %s (borrow %s)", user_id, book_id, borrow_id)
        return BorrowRecord.get_by_id(borrow_id)

    @staticmethod
    def return_book(borrow_id: str) -> Dict[str, Any]:
        """Return a borrowed copy, finalize its fine and re-allocate the copy.

        The user's balance moves by the difference between the final fine
        and whatever lazy reconciliation already charged on this record.

        Returns:
            Dict with ``fine``, ``new_fine_balance``, ``record`` and
            ``allocation`` (None when the allocation pass failed).
        """
        from models.allocation import AutoAllocator

        record = BorrowRecord.require(borrow_id)
        if not record.is_active:
            raise StateError("Book has already been returned")
        now = get_clock().now()

        with transaction() as db:
            record = BorrowRecord.require(borrow_id, db)
            if not record.is_active:
                raise StateError("Book has already been returned")

            fine = Fine.calculate_fine(record.due_datetime, now)
            cursor = db.execute('''
                UPDATE borrow_records SET return_date = ?, fine = ?
                WHERE id = ? AND return_date IS NULL
            ''', (format_ts(now), fine, record.id))
            if cursor.rowcount != 1:
                raise StateError("Book has already been returned")

            if not record.fine_paid:
                User.adjust_fine_balance(db, record.user_id, round(fine - record.fine, 2))
            Book.put_back_copies(db, record.book_id, 1)

            book = Book.get_by_id(record.book_id)
            title = book.title if book else record.book_id
            description = f'Returned "{title}"'
            if fine > 0:
                description += f' with a fine of {fine:,.2f}'
            Transaction.record(
                db, 'return', record.user_id, description, book_id=record.book_id,
                amount=fine, metadata={'borrowId': record.id, 'fine': fine}
            )

        logger.info("Borrow %s returned with fine %.2f", borrow_id, fine)
        allocation = AutoAllocator.allocate_safely(record.book_id)
        user = User.get_by_id(record.user_id)
        return {
            'fine': fine,
            'new_fine_balance': user.fine_balance if user else 0.0,
            'record': BorrowRecord.get_by_id(borrow_id),
            'allocation': allocation,
        }

    @staticmethod
    def renew(borrow_id: str) -> 'BorrowRecord':
        """Extend an active loan once.

        Raises:
            StateError: Returned, overdue or already renewed.
            ConflictError: Someone is queued for the book.
        """
        from models.reservation import Reservation

        BorrowRecord.require(borrow_id)
        now = get_clock().now()

        with transaction() as db:
            record = BorrowRecord.require(borrow_id, db)
            if not record.is_active:
                raise StateError("Returned books cannot be renewed")
            if now > record.due_datetime:
                raise StateError("Overdue books cannot be renewed")
            max_renewals = current_app.config['MAX_RENEWAL_COUNT']
            if record.renewal_count >= max_renewals:
                raise StateError(f"Maximum renewal limit ({max_renewals} time) has been reached")
            if Reservation.has_active_reservations(record.book_id, db):
                raise ConflictError("Cannot renew: Someone has reserved this book")

            new_due = record.due_datetime + timedelta(
                days=current_app.config['RENEWAL_EXTENSION_DAYS']
            )
            db.execute('''
                UPDATE borrow_records
                SET due_date = ?, renewal_count = renewal_count + 1, renewed_at = ?
                WHERE id = ?
            ''', (format_ts(new_due), format_ts(now), record.id))
            Transaction.record(
                db, 'renewal', record.user_id,
                f'Renewed loan until {format_ts(new_due)}',
                book_id=record.book_id,
                metadata={'borrowId': record.id, 'dueDate': format_ts(new_due)}
            )

        logger.info("Borrow %s renewed until %s", borrow_id, format_ts(new_due))
        return BorrowRecord.get_by_id(borrow_id)

    @staticmethod
    def extend_due_date(user_email: str, book_isbn: str, days,
                        actor_id: Optional[str] = None) -> 'BorrowRecord':
        """Administrative due date extension, bypassing renewal rules.

        A fine already accrued on the record is recomputed against the new
        due date.
        """
        from models.system_log import SystemLog

        if not user_email or not book_isbn:
            raise ValidationError("User email and book ISBN are required")
        if isinstance(days, bool):
            raise ValidationError("Days must be a positive integer")
        try:
            days = int(days)
        except (TypeError, ValueError):
            raise ValidationError("Days must be a positive integer")
        if days <= 0:
            raise ValidationError("Days must be a positive integer")

        user = User.get_by_email(user_email)
        if not user:
            raise NotFoundError("User not found")
        book = Book.get_by_isbn(book_isbn)
        if not book:
            raise NotFoundError("Book not found")
        now = get_clock().now()

        with transaction() as db:
            record = BorrowRecord.get_active(user.id, book.id, db)
            if not record:
                raise NotFoundError("No active borrow found for this user and book")

            new_due = record.due_datetime + timedelta(days=days)
            new_fine = record.fine
            if not record.fine_paid:
                new_fine = Fine.calculate_fine(new_due, now)
                User.adjust_fine_balance(db, user.id, round(new_fine - record.fine, 2))
            db.execute('''
                UPDATE borrow_records SET due_date = ?, fine = ?, overdue_notified = 0
                WHERE id = ?
            ''', (format_ts(new_due), new_fine, record.id))
            SystemLog.add(
                'Due Date Extended',
                f'Extended "{book.title}" for {user.name} by {days} day(s) '
                f'(New due: {format_ts(new_due)})',
                'admin',
                actor_id,
                db=db
            )

        return BorrowRecord.get_by_id(record.id)

    def get_book(self) -> Optional[Book]:
        """Get the book object"""
        return Book.get_by_id(self.book_id)

    def to_dict(self) -> Dict[str, Any]:
        """Convert borrow record to dictionary"""
        book = self.get_book()
        return {
            'id': self.id,
            'user': {'id': self.user_id, 'name': self.user_name, 'email': self.user_email},
            'book_id': self.book_id,
            'book': book.to_dict() if book else None,
            'borrow_date': self.borrow_date,
            'due_date': self.due_date,
            'return_date': self.return_date,
            'fine': self.fine,
            'fine_paid': self.fine_paid,
            'renewal_count': self.renewal_count,
            'renewed_at': self.renewed_at,
            'overdue_notified': self.overdue_notified,
            'is_overdue': self.is_overdue(),
        }
