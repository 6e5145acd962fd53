"""
Reservation model for the per-book waiting list.

Users can only queue for a book that has no copy on the shelf. The queue
is strictly first-come-first-served by reservation time, ties broken by
insertion order. A reservation leaves ``active`` exactly once, for
``fulfilled``, ``expired`` or ``cancelled``.
"""
import logging
import sqlite3
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from flask import current_app

from models.book import Book
from models.database import format_ts, get_db, transaction
from models.user import User
from utils.clock import get_clock
from utils.errors import (ConflictError, ForbiddenError, NotFoundError,
                          StateError, UnavailableError, ValidationError)
from utils.locks import book_locks
from utils.notifier import get_notifier

logger = logging.getLogger(__name__)

RESERVATION_STATUSES = ('active', 'fulfilled', 'expired', 'cancelled')


class Reservation:
    """Represents a place in a book's waiting list.

    Attributes:
        id (str): Unique reservation identifier.
        user_id (str): ID of user who made the reservation.
        user_name (str): User's name at reservation time.
        user_email (str): User's e-mail at reservation time.
        book_id (str): ID of reserved book.
        reservation_date (str): When the reservation was made.
        expiry_date (str): When the reservation lapses if still queued.
        status (str): One of ``RESERVATION_STATUSES``.
        notified (bool): Whether the user was told the book came back.
    """

    def __init__(self, id: str, user_id: str, user_name: str, user_email: str,
                 book_id: str, reservation_date: str, expiry_date: str,
                 status: str, notified: int, fulfilled_at: Optional[str] = None,
                 cancelled_at: Optional[str] = None,
                 expired_at: Optional[str] = None) -> None:
        """Initialize a Reservation instance."""
        self.id = id
        self.user_id = user_id
        self.user_name = user_name
        self.user_email = user_email
        self.book_id = book_id
        self.reservation_date = reservation_date
        self.expiry_date = expiry_date
        self.status = status
        self.notified = bool(notified)
        self.fulfilled_at = fulfilled_at
        self.cancelled_at = cancelled_at
        self.expired_at = expired_at

    @property
    def is_active(self) -> bool:
        return self.status == 'active'

    @staticmethod
    def reserve(user_id: str, book_id: str) -> 'Reservation':
        """Queue a user for a book that is currently out of stock.

        Args:
            user_id: ID of user making the reservation.
            book_id: ID of book to reserve.

        Returns:
            The new active Reservation.

        Raises:
            ConflictError: The book is on the shelf, or the user is
                already queued for it.
        """
        if not user_id or not book_id:
            raise ValidationError("User id and book id are required")
        user = User.require(user_id)
        Book.require(book_id)
        now = get_clock().now()
        expiry = now + timedelta(hours=current_app.config['RESERVATION_WINDOW_HOURS'])
        reservation_id = str(uuid.uuid4())

        with transaction() as db:
            book = Book.get_by_id(book_id)
            if book.quantity > 0:
                raise ConflictError("Book is currently available. Please borrow it directly.")
            if Reservation.get_active_for_user(user_id, book_id, db):
                raise ConflictError("You already have an active reservation for this book")
            try:
                db.execute('''
                    INSERT INTO reservations
                    (id, user_id, user_name, user_email, book_id, reservation_date,
                     expiry_date, status, notified)
                    VALUES (?, ?, ?, ?, ?, ?, ?, 'active', 0)
                ''', (reservation_id, user.id, user.name, user.email, book_id,
                      format_ts(now), format_ts(expiry)))
            except sqlite3.IntegrityError:
                raise ConflictError("You already have an active reservation for this book")

        logger.info("User %s reserved book %s (reservation %s)", user_id, book_id, reservation_id)
        return Reservation.get_by_id(reservation_id)

    @staticmethod
    def cancel(reservation_id: str, actor_id: str) -> 'Reservation':
        """Cancel an active reservation.

        Permitted for the reservation's owner or an admin.
        """
        if not reservation_id:
            raise ValidationError("Reservation id is required")
        reservation = Reservation.get_by_id(reservation_id)
        if not reservation:
            raise NotFoundError("Reservation not found")
        actor = User.get_by_id(actor_id) if actor_id else None
        if not actor or (actor.id != reservation.user_id and not actor.is_admin()):
            raise ForbiddenError("Not authorized to cancel this reservation")

        now = get_clock().now()
        with transaction() as db:
            cursor = db.execute('''
                UPDATE reservations SET status = 'cancelled', cancelled_at = ?
                WHERE id = ? AND status = 'active'
            ''', (format_ts(now), reservation_id))
            if cursor.rowcount != 1:
                raise StateError("Only active reservations can be cancelled")

        return Reservation.get_by_id(reservation_id)

    @staticmethod
    def fulfill(reservation_id: str,
                actor_id: str) -> Tuple['Reservation', 'BorrowRecord']:
        """Lend the book to the head of its queue on an admin's behalf.

        Only the oldest active reservation of a book can be fulfilled, and
        only while a copy is on the shelf and the reader owes nothing.

        Returns:
            The fulfilled reservation and the new borrow record.

        Raises:
            ForbiddenError: The actor is not an admin.
            NotFoundError: Unknown reservation or reader.
            StateError: The reservation is no longer active.
            ConflictError: An older reservation is waiting, or the reader
                has unpaid fines.
            UnavailableError: No copy on the shelf.
        """
        from models.borrow import BorrowRecord

        actor = User.get_by_id(actor_id) if actor_id else None
        if not actor or not actor.is_admin():
            raise ForbiddenError("Only admins can fulfill reservations")
        if not reservation_id:
            raise ValidationError("Reservation id is required")
        reservation = Reservation.get_by_id(reservation_id)
        if not reservation:
            raise NotFoundError("Reservation not found")

        with book_locks.hold(reservation.book_id):
            now = get_clock().now()
            with transaction() as db:
                reservation = Reservation.get_by_id(reservation_id, db)
                if not reservation.is_active:
                    raise StateError("Reservation is not active")
                queue = Reservation.get_active_for_book(reservation.book_id, db)
                if queue[0].id != reservation.id:
                    raise ConflictError("Please fulfill previous reservations for this book first")

                book = Book.get_by_id(reservation.book_id)
                if not book or book.quantity <= 0:
                    raise UnavailableError("Book is still not available")
                user = User.get_by_id(reservation.user_id)
                if not user:
                    raise NotFoundError("User not found")
                if user.has_outstanding_fines():
                    raise ConflictError(
                        f"User has an outstanding fine of {user.fine_balance:,.2f}"
                    )

                if not Book.take_copy(db, book.id):
                    raise UnavailableError("Book is still not available")
                borrow_id = BorrowRecord.insert(
                    db, user, book, now,
                    f'Borrowed "{book.title}" via reservation fulfillment',
                    metadata={'reservationId': reservation.id}
                )
                db.execute('''
                    UPDATE reservations SET status = 'fulfilled', fulfilled_at = ?, notified = 1
                    WHERE id = ? AND status = 'active'
                ''', (format_ts(now), reservation.id))

        record = BorrowRecord.get_by_id(borrow_id)
        logger.info("Reservation %s fulfilled by %s (borrow %s)", reservation_id, actor.id, borrow_id)
        get_notifier().dispatch(
            user.email,
            'Reservation Fulfilled - Book Borrowed',
            f'Hello {user.name},\n\nYour reservation for "{book.title}" has been fulfilled '
            f'and the book is now borrowed in your name.\n\nDue Date: {record.due_date}\n\n'
            'Please visit the library to collect your book.\n\nBest regards,\nLibrary Team'
        )
        return Reservation.get_by_id(reservation_id), record

    @staticmethod
    def expire_stale(now: Optional[datetime] = None) -> int:
        """Move every active reservation past its expiry date to ``expired``.

        The only writer of the ``expired`` state; never touches inventory.

        Returns:
            Number of reservations expired.
        """
        return len(Reservation.expire_stale_details(now))

    @staticmethod
    def expire_stale_details(now: Optional[datetime] = None) -> List['Reservation']:
        """Same as ``expire_stale`` but returns the expired reservations."""
        now = now or get_clock().now()
        stamp = format_ts(now)
        with transaction() as db:
            rows = db.execute('''
                SELECT * FROM reservations
                WHERE status = 'active' AND expiry_date < ?
                ORDER BY reservation_date ASC, rowid ASC
            ''', (stamp,)).fetchall()
            db.execute('''
                UPDATE reservations SET status = 'expired', expired_at = ?
                WHERE status = 'active' AND expiry_date < ?
            ''', (stamp, stamp))

        expired = []
        for row in rows:
            reservation = Reservation(**dict(row))
            reservation.status = 'expired'
            reservation.expired_at = stamp
            expired.append(reservation)
        if expired:
            logger.info("Expired %d old reservation(s)", len(expired))
        return expired

    @staticmethod
    def get_by_id(reservation_id: str, db=None) -> Optional['Reservation']:
        """Get reservation by ID."""
        db = db or get_db()
        row = db.execute(
            'SELECT * FROM reservations WHERE id = ?',
            (reservation_id,)
        ).fetchone()

        if row:
            return Reservation(**dict(row))
        return None

    @staticmethod
    def get_active_for_user(user_id: str, book_id: str, db=None) -> Optional['Reservation']:
        db = db or get_db()
        row = db.execute('''
            SELECT * FROM reservations
            WHERE user_id = ? AND book_id = ? AND status = 'active'
        ''', (user_id, book_id)).fetchone()
        if row:
            return Reservation(**dict(row))
        return None

    @staticmethod
    def get_active_for_book(book_id: str, db=None) -> List['Reservation']:
        """Active reservations for a book, first come first served."""
        db = db or get_db()
        rows = db.execute('''
            SELECT * FROM reservations
            WHERE book_id = ? AND status = 'active'
            ORDER BY reservation_date ASC, rowid ASC
        ''', (book_id,)).fetchall()
        return [Reservation(**dict(row)) for row in rows]

    @staticmethod
    def has_active_reservations(book_id: str, db=None) -> bool:
        """Check if a book has any active reservations."""
        db = db or get_db()
        count = db.execute('''
            SELECT COUNT(*) as count FROM reservations
            WHERE book_id = ? AND status = 'active'
        ''', (book_id,)).fetchone()['count']

        return count > 0

    @staticmethod
    def get_user_reservations(user_id: str, status: Optional[str] = None) -> List['Reservation']:
        """Get all reservations for a user, newest first."""
        db = get_db()

        if status:
            rows = db.execute('''
                SELECT * FROM reservations
                WHERE user_id = ? AND status = ?
                ORDER BY reservation_date DESC, rowid DESC
            ''', (user_id, status)).fetchall()
        else:
            rows = db.execute('''
                SELECT * FROM reservations
                WHERE user_id = ?
                ORDER BY reservation_date DESC, rowid DESC
            ''', (user_id,)).fetchall()

        return [Reservation(**dict(row)) for row in rows]

    @staticmethod
    def get_all(status: Optional[str] = None) -> List['Reservation']:
        """Get all reservations, newest first."""
        if status and status not in RESERVATION_STATUSES:
            raise ValidationError(f"Unknown reservation status: {status}")
        db = get_db()
        if status:
            rows = db.execute('''
                SELECT * FROM reservations WHERE status = ?
                ORDER BY reservation_date DESC, rowid DESC
            ''', (status,)).fetchall()
        else:
            rows = db.execute(
                'SELECT * FROM reservations ORDER BY reservation_date DESC, rowid DESC'
            ).fetchall()

        return [Reservation(**dict(row)) for row in rows]

    def get_queue_position(self) -> Optional[int]:
        """1-based position among the book's active reservations."""
        if not self.is_active:
            return None
        for position, reservation in enumerate(Reservation.get_active_for_book(self.book_id), 1):
            if reservation.id == self.id:
                return position
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert reservation to dictionary."""
        book = Book.get_by_id(self.book_id)

        return {
            'id': self.id,
            'user': {'id': self.user_id, 'name': self.user_name, 'email': self.user_email},
            'book_id': self.book_id,
            'book': book.to_dict() if book else None,
            'reservation_date': self.reservation_date,
            'expiry_date': self.expiry_date,
            'status': self.status,
            'notified': self.notified,
            'fulfilled_at': self.fulfilled_at,
            'cancelled_at': self.cancelled_at,
            'expired_at': self.expired_at,
            'queue_position': self.get_queue_position(),
        }
