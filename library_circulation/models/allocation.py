"""Automatic allocation of returned copies to the reservation queue.

Whenever copies of a book come back on the shelf, queued readers are served
first come first served, up to the number of copies on the shelf:

* a reader who already holds the book has a stale reservation: it is
  marked fulfilled without using a copy;
* a reader with unpaid fines is told to pay first and stays queued
  without using a copy;
* anyone else is lent a copy on the spot and told to pick it up.

Passes for the same book never overlap: they run under a per-book lock
and inside one write transaction. Notifications go out after the commit.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from models.book import Book
from models.borrow import BorrowRecord
from models.database import format_ts, get_db, transaction
from models.reservation import Reservation
from models.user import User
from utils.clock import get_clock
from utils.locks import book_locks
from utils.notifier import (NotificationDispatcher, OutgoingNotification,
                            get_notifier)

logger = logging.getLogger(__name__)


class AllocationResult:
    """Outcome of one allocation pass for one book."""

    def __init__(self, book_id: str) -> None:
        self.book_id = book_id
        self.granted: List[str] = []
        self.fulfilled_stale: List[str] = []
        self.skipped_for_fines: List[str] = []
        self.skipped_missing_user: List[str] = []

    def to_dict(self) -> Dict[str, Any]:
        return {
            'book_id': self.book_id,
            'granted': self.granted,
            'fulfilled_stale': self.fulfilled_stale,
            'skipped_for_fines': self.skipped_for_fines,
            'skipped_missing_user': self.skipped_missing_user,
        }


def _fine_notice(user: User, title: str) -> OutgoingNotification:
    return OutgoingNotification(
        user.email,
        'Book Available - Payment Required',
        f'Hello {user.name},\n\nThe book "{title}" that you reserved is now available, '
        f'but you have an outstanding fine balance of {user.fine_balance:,.2f}.\n\n'
        'Please pay your fines first, then the book will be automatically allocated to you.\n\n'
        'Best regards,\nLibrary Team'
    )


def _ready_notice(user: User, title: str, due_date: str) -> OutgoingNotification:
    return OutgoingNotification(
        user.email,
        'Book Auto-Allocated - Ready for Pickup',
        f'Hello {user.name},\n\nGreat news! The book "{title}" that you reserved has been '
        f'automatically allocated to you.\n\nDue Date: {due_date}\n\n'
        'Please visit the library to collect your book.\n\nBest regards,\nLibrary Team'
    )


class AutoAllocator:
    """Grants available copies to queued readers."""

    @staticmethod
    def allocate(book_id: str, notifier: Optional[NotificationDispatcher] = None,
                 now: Optional[datetime] = None) -> AllocationResult:
        """Run one allocation pass for a book.

        ``notifier`` and ``now`` default to the application's dispatcher
        and clock.

        Returns:
            AllocationResult describing what happened to each reservation
            that was looked at.
        """
        result = AllocationResult(book_id)
        outbox: List[OutgoingNotification] = []

        with book_locks.hold(book_id):
            now = now or get_clock().now()
            with transaction() as db:
                book = Book.get_by_id(book_id)
                if not book or book.quantity <= 0:
                    logger.debug("Book %s has no copy to allocate", book_id)
                    return result

                reservations = Reservation.get_active_for_book(book_id, db)
                budget = book.quantity
                logger.info(
                    "Allocating up to %d copies of book %s across %d reservation(s)",
                    budget, book_id, len(reservations)
                )

                for reservation in reservations:
                    if budget == 0:
                        break

                    user = User.get_by_id(reservation.user_id)
                    if not user:
                        logger.warning(
                            "User %s of reservation %s not found, skipping",
                            reservation.user_id, reservation.id
                        )
                        result.skipped_missing_user.append(reservation.id)
                        continue

                    if BorrowRecord.get_active(user.id, book_id, db):
                        AutoAllocator._mark_fulfilled(db, reservation.id, now)
                        result.fulfilled_stale.append(reservation.id)
                        continue

                    if user.has_outstanding_fines():
                        db.execute(
                            'UPDATE reservations SET notified = 1 WHERE id = ?',
                            (reservation.id,)
                        )
                        outbox.append(_fine_notice(user, book.title))
                        result.skipped_for_fines.append(reservation.id)
                        continue

                    if not Book.take_copy(db, book_id):
                        break
                    borrow_id = BorrowRecord.insert(
                        db, user, book, now,
                        f'Auto-allocated "{book.title}" via reservation queue',
                        metadata={'reservationId': reservation.id, 'autoAllocated': True}
                    )
                    AutoAllocator._mark_fulfilled(db, reservation.id, now)
                    budget -= 1
                    result.granted.append(borrow_id)

                    record = BorrowRecord.get_by_id(borrow_id, db)
                    outbox.append(_ready_notice(user, book.title, record.due_date))

        (notifier or get_notifier()).dispatch_all(outbox)
        logger.info(
            "Auto-allocation completed for book %s. Allocated %d copies.",
            book_id, len(result.granted)
        )
        return result

    @staticmethod
    def allocate_safely(book_id: str, notifier: Optional[NotificationDispatcher] = None,
                        now: Optional[datetime] = None) -> Optional[AllocationResult]:
        """Run a pass whose failure must not fail the caller.

        A failed pass leaves the queue untouched; the periodic queue sweep
        picks it up again.
        """
        try:
            return AutoAllocator.allocate(book_id, notifier, now)
        except Exception:
            logger.exception("Auto-allocation failed for book %s", book_id)
            return None

    @staticmethod
    def process_queue(notifier: Optional[NotificationDispatcher] = None,
                      now: Optional[datetime] = None) -> List[AllocationResult]:
        """Run a pass for every book with copies on the shelf and a queue."""
        db = get_db()
        rows = db.execute('''
            SELECT DISTINCT b.id FROM books b
            JOIN reservations r ON r.book_id = b.id
            WHERE b.quantity > 0 AND r.status = 'active'
        ''').fetchall()

        results = []
        for row in rows:
            result = AutoAllocator.allocate_safely(row['id'], notifier, now)
            if result is not None:
                results.append(result)
        return results

    @staticmethod
    def allocate_for_user_queue(user_id: str) -> List[AllocationResult]:
        """Run passes for the books a user is queued for."""
        results = []
        for reservation in Reservation.get_user_reservations(user_id, status='active'):
            book = Book.get_by_id(reservation.book_id)
            if book and book.quantity > 0:
                result = AutoAllocator.allocate_safely(book.id)
                if result is not None:
                    results.append(result)
        return results

    @staticmethod
    def _mark_fulfilled(db, reservation_id: str, now) -> None:
        db.execute('''
            UPDATE reservations SET status = 'fulfilled', fulfilled_at = ?, notified = 1
            WHERE id = ? AND status = 'active'
        ''', (format_ts(now), reservation_id))
