"""Fine settlement.

Payments are confirmed by an outside channel (cashier desk or payment
gateway); this module only books the confirmed amount. Settlements carry an
optional ``settlement_id`` so a confirmation delivered twice is booked once.
"""
import logging
import sqlite3
import uuid
from typing import Any, Dict, List, Optional

from flask import current_app

from models.borrow import BorrowRecord
from models.database import format_ts, get_db, transaction
from models.transaction import Transaction
from models.user import User
from utils.clock import get_clock
from utils.errors import ConflictError, ValidationError

logger = logging.getLogger(__name__)


class FinePayment:
    """A booked fine settlement.

    Attributes:
        id (str): Unique payment identifier.
        settlement_id (str): Reference supplied by the payment channel.
        user_id (str): Payer.
        borrow_id (str): Settled record, or None for a whole-balance payment.
        amount (float): Amount booked.
        method (str): One of ``Config.PAYMENT_METHODS``.
        paid_at (str): When the payment was booked.
    """

    def __init__(self, id, settlement_id, user_id, borrow_id, amount, method, paid_at):
        self.id = id
        self.settlement_id = settlement_id
        self.user_id = user_id
        self.borrow_id = borrow_id
        self.amount = float(amount)
        self.method = method
        self.paid_at = paid_at

    @staticmethod
    def get_by_settlement(settlement_id: str) -> Optional['FinePayment']:
        if not settlement_id:
            return None
        db = get_db()
        row = db.execute(
            'SELECT * FROM fine_payments WHERE settlement_id = ?', (settlement_id,)
        ).fetchone()
        if row:
            return FinePayment(**dict(row))
        return None

    @staticmethod
    def get_user_payments(user_id: str) -> List['FinePayment']:
        db = get_db()
        rows = db.execute('''
            SELECT * FROM fine_payments WHERE user_id = ?
            ORDER BY paid_at DESC, rowid DESC
        ''', (user_id,)).fetchall()
        return [FinePayment(**dict(row)) for row in rows]

    @staticmethod
    def _check_method(method: str) -> str:
        method = (method or '').strip().lower()
        if method not in current_app.config['PAYMENT_METHODS']:
            raise ValidationError(f"Invalid payment method: {method or 'missing'}")
        return method

    @staticmethod
    def _replayed(payment: 'FinePayment') -> Dict[str, Any]:
        logger.info("Settlement %s already booked, ignoring", payment.settlement_id)
        user = User.get_by_id(payment.user_id)
        result = payment.to_dict()
        result.update({
            'duplicate': True,
            'fine_balance': user.fine_balance if user else 0.0,
        })
        return result

    @staticmethod
    def _book(db, user_id: str, records: List[BorrowRecord], method: str,
              settlement_id: Optional[str], borrow_id: Optional[str]) -> 'FinePayment':
        """Mark ``records`` paid and write the payment row and ledger entry.

        Runs inside the caller's transaction. Records already paid by a
        concurrent settlement are skipped.
        """
        now = format_ts(get_clock().now())
        settled: List[BorrowRecord] = []
        for record in records:
            cursor = db.execute('''
                UPDATE borrow_records SET fine_paid = 1
                WHERE id = ? AND fine_paid = 0 AND return_date IS NOT NULL
            ''', (record.id,))
            if cursor.rowcount == 1:
                settled.append(record)

        if not settled:
            raise ConflictError("No outstanding fines to pay")

        amount = round(sum(r.fine for r in settled), 2)
        User.adjust_fine_balance(db, user_id, -amount)
        db.execute(
            'UPDATE users SET total_fines_paid = total_fines_paid + ? WHERE id = ?',
            (amount, user_id)
        )

        payment_id = str(uuid.uuid4())
        db.execute('''
            INSERT INTO fine_payments (id, settlement_id, user_id, borrow_id, amount, method, paid_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        ''', (payment_id, settlement_id, user_id, borrow_id, amount, method, now))

        if len(settled) == 1:
            description = f'Paid fine of {amount:,.2f}'
        else:
            description = f'Paid total fine balance of {amount:,.2f} ({len(settled)} records)'
        Transaction.record(
            db, 'fine_payment', user_id, description,
            book_id=settled[0].book_id if len(settled) == 1 else None,
            amount=amount, payment_method=method,
            metadata={
                'paymentId': payment_id,
                'settlementId': settlement_id,
                'borrowIds': [r.id for r in settled],
            }
        )
        return FinePayment(payment_id, settlement_id, user_id, borrow_id, amount, method, now)

    @staticmethod
    def mark_fine_paid(borrow_id: str, method: str,
                       settlement_id: Optional[str] = None) -> Dict[str, Any]:
        """Settle the fine of one returned borrow record.

        Paying a record that is already paid, or replaying a known
        ``settlement_id``, returns the earlier outcome and moves no money.

        Raises:
            ValidationError: Unknown payment method.
            NotFoundError: Unknown borrow record.
            ConflictError: The book is still out or the record has no fine.
        """
        from models.allocation import AutoAllocator

        method = FinePayment._check_method(method)
        prior = FinePayment.get_by_settlement(settlement_id)
        if prior:
            return FinePayment._replayed(prior)

        record = BorrowRecord.require(borrow_id)
        if record.fine_paid:
            user = User.get_by_id(record.user_id)
            return {
                'borrow_id': record.id,
                'user_id': record.user_id,
                'amount': record.fine,
                'duplicate': True,
                'fine_balance': user.fine_balance if user else 0.0,
            }
        if record.is_active:
            raise ConflictError("Fine is still accruing. Return the book before paying.")
        if record.fine <= 0:
            raise ConflictError("No fine to pay for this borrow record")

        try:
            with transaction() as db:
                record = BorrowRecord.require(borrow_id, db)
                payment = FinePayment._book(
                    db, record.user_id, [record], method, settlement_id, record.id
                )
        except sqlite3.IntegrityError:
            prior = FinePayment.get_by_settlement(settlement_id)
            if prior:
                return FinePayment._replayed(prior)
            raise

        logger.info("Fine of %.2f paid for borrow %s via %s", payment.amount, borrow_id, method)
        AutoAllocator.allocate_for_user_queue(record.user_id)
        result = payment.to_dict()
        result.update({
            'duplicate': False,
            'fine_balance': User.get_by_id(record.user_id).fine_balance,
        })
        return result

    @staticmethod
    def mark_total_balance_paid(user_id: str, method: str,
                                settlement_id: Optional[str] = None) -> Dict[str, Any]:
        """Settle every returned, unpaid record of a user in one payment.

        Fines on books still out keep accruing and are not part of the
        settlement.
        """
        from models.allocation import AutoAllocator

        method = FinePayment._check_method(method)
        prior = FinePayment.get_by_settlement(settlement_id)
        if prior:
            return FinePayment._replayed(prior)
        User.require(user_id)

        try:
            with transaction() as db:
                rows = db.execute('''
                    SELECT * FROM borrow_records
                    WHERE user_id = ? AND fine > 0 AND fine_paid = 0
                      AND return_date IS NOT NULL
                    ORDER BY due_date ASC
                ''', (user_id,)).fetchall()
                records = [BorrowRecord(**dict(row)) for row in rows]
                payment = FinePayment._book(db, user_id, records, method, settlement_id, None)
        except sqlite3.IntegrityError:
            prior = FinePayment.get_by_settlement(settlement_id)
            if prior:
                return FinePayment._replayed(prior)
            raise

        logger.info("User %s paid total balance %.2f via %s", user_id, payment.amount, method)
        AutoAllocator.allocate_for_user_queue(user_id)
        result = payment.to_dict()
        result.update({
            'duplicate': False,
            'fine_balance': User.get_by_id(user_id).fine_balance,
        })
        return result

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'settlement_id': self.settlement_id,
            'user_id': self.user_id,
            'borrow_id': self.borrow_id,
            'amount': self.amount,
            'method': self.method,
            'paid_at': self.paid_at,
        }
