"""Fine accrual and balance reconciliation.

A user's ``fine_balance`` is kept equal to the sum of the fines on their
unpaid borrow records. Every writer moves it by the difference between a
record's new and previous fine, in the same transaction that changes the
record; ``repair_balances`` recomputes it from scratch to catch drift.
"""
import logging
import math
from datetime import datetime
from typing import Any, Dict, List, Optional

from flask import current_app

from models.database import get_db, transaction
from models.user import User
from utils.clock import get_clock

logger = logging.getLogger(__name__)

MONEY_EPSILON = 0.005


def money_equal(a: float, b: float) -> bool:
    """Compare two amounts of money to the cent."""
    return abs((a or 0.0) - (b or 0.0)) < MONEY_EPSILON


class Fine:
    """Fine calculation and reconciliation.

    This class provides static methods only. No instances are created.
    """

    @staticmethod
    def calculate_fine(due_date: datetime, now: datetime,
                       rate_per_hour: Optional[float] = None) -> float:
        """Fine owed for a loan due at ``due_date`` as of ``now``.

        Every started hour past the due date is charged in full.

        >>> Fine.calculate_fine(datetime(2024, 1, 1, 10), datetime(2024, 1, 1, 15), 1.0)
        5.0
        >>> Fine.calculate_fine(datetime(2024, 1, 1, 10), datetime(2024, 1, 1, 10, 1), 1.0)
        1.0
        """
        if rate_per_hour is None:
            rate_per_hour = current_app.config['FINE_PER_HOUR']
        if now <= due_date:
            return 0.0
        hours_overdue = math.ceil((now - due_date).total_seconds() / 3600)
        return round(hours_overdue * rate_per_hour, 2)

    @staticmethod
    def reconcile(record, now: Optional[datetime] = None) -> float:
        """Bring an active record's fine up to date.

        Only unreturned, unpaid records accrue. The record update is a
        compare-and-set on the previous fine, so two concurrent
        reconciliations cannot both apply the same delta.

        Args:
            record: BorrowRecord to reconcile. Its ``fine`` is refreshed.
            now: Evaluation time (defaults to the application clock).

        Returns:
            The delta applied to the user's balance.
        """
        if record.return_date is not None or record.fine_paid:
            return 0.0
        now = now or get_clock().now()
        new_fine = Fine.calculate_fine(record.due_datetime, now)
        old_fine = record.fine
        if money_equal(new_fine, old_fine):
            return 0.0

        delta = round(new_fine - old_fine, 2)
        with transaction() as db:
            cursor = db.execute('''
                UPDATE borrow_records SET fine = ?
                WHERE id = ? AND fine = ? AND return_date IS NULL AND fine_paid = 0
            ''', (new_fine, record.id, old_fine))
            if cursor.rowcount != 1:
                logger.debug("Record %s changed concurrently, skipping reconcile", record.id)
                return 0.0
            User.adjust_fine_balance(db, record.user_id, delta)

        record.fine = new_fine
        return delta

    @staticmethod
    def reconcile_user(user_id: str) -> float:
        """Lazily reconcile every active borrow of a user.

        Returns:
            Total delta applied to the user's balance.
        """
        from models.borrow import BorrowRecord

        now = get_clock().now()
        total = 0.0
        for record in BorrowRecord.get_user_records(user_id, active_only=True):
            total += Fine.reconcile(record, now)
        return round(total, 2)

    @staticmethod
    def sweep_overdue(now: Optional[datetime] = None) -> int:
        """Reconcile every overdue, unreturned, unpaid record as of ``now``.

        Safe to re-run: against an unchanged clock nothing moves.

        Returns:
            Number of records whose fine changed.
        """
        from models.borrow import BorrowRecord

        now = now or get_clock().now()
        updated = 0
        for record in BorrowRecord.get_overdue(now):
            if Fine.reconcile(record, now):
                updated += 1
        if updated:
            logger.info("Overdue sweep updated %d fine(s)", updated)
        return updated

    @staticmethod
    def repair_balances() -> List[str]:
        """Recompute balances from the records and fix any drift.

        ``fine_balance`` becomes the sum of unpaid fines and
        ``total_fines_paid`` the sum of paid ones.

        Returns:
            IDs of the users whose stored totals were corrected.
        """
        from models.system_log import SystemLog

        repaired: List[str] = []
        with transaction() as db:
            rows = db.execute('''
                SELECT u.id, u.email, u.fine_balance, u.total_fines_paid,
                       COALESCE(SUM(CASE WHEN b.fine_paid = 0 THEN b.fine END), 0) AS unpaid,
                       COALESCE(SUM(CASE WHEN b.fine_paid = 1 THEN b.fine END), 0) AS paid
                FROM users u
                LEFT JOIN borrow_records b ON b.user_id = u.id
                GROUP BY u.id
            ''').fetchall()

            for row in rows:
                unpaid = round(row['unpaid'], 2)
                paid = round(row['paid'], 2)
                if money_equal(row['fine_balance'], unpaid) and \
                        money_equal(row['total_fines_paid'], paid):
                    continue
                logger.warning(
                    "Fine balance drift for %s: stored %.2f/%.2f, records %.2f/%.2f",
                    row['email'], row['fine_balance'], row['total_fines_paid'], unpaid, paid
                )
                db.execute(
                    'UPDATE users SET fine_balance = ?, total_fines_paid = ? WHERE id = ?',
                    (unpaid, paid, row['id'])
                )
                SystemLog.add(
                    'Fine Balance Repaired',
                    f'Balance {row["fine_balance"]:.2f} -> {unpaid:.2f}, '
                    f'paid {row["total_fines_paid"]:.2f} -> {paid:.2f}',
                    'warning',
                    row['id'],
                    db=db
                )
                repaired.append(row['id'])
        return repaired

    @staticmethod
    def get_user_fines(user_id: str) -> Dict[str, Any]:
        """Fine summary for a user, after lazy reconciliation."""
        from models.borrow import BorrowRecord

        User.require(user_id)
        Fine.reconcile_user(user_id)
        user = User.get_by_id(user_id)
        unpaid = BorrowRecord.get_unpaid_fine_records(user_id)
        return {
            'fine_balance': user.fine_balance,
            'total_fines_paid': user.total_fines_paid,
            'unpaid_records': unpaid,
        }

    @staticmethod
    def unpaid_total(user_id: str) -> float:
        """Sum of the fines on a user's unpaid records."""
        db = get_db()
        row = db.execute('''
            SELECT COALESCE(SUM(fine), 0) AS total FROM borrow_records
            WHERE user_id = ? AND fine_paid = 0
        ''', (user_id,)).fetchone()
        return round(row['total'], 2)
