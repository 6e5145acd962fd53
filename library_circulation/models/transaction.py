"""Circulation ledger.

Every borrow, return, renewal and fine payment leaves one row here,
written inside the same database transaction as the change it describes.
"""
import json
import uuid
from typing import Any, Dict, List, Optional

from models.database import format_ts, get_db
from utils.clock import get_clock

TRANSACTION_TYPES = ('borrow', 'return', 'renewal', 'fine_payment')


class Transaction:
    """A single ledger entry.

    Attributes:
        id (str): Unique transaction identifier.
        type (str): One of ``TRANSACTION_TYPES``.
        user_id (str): User the entry belongs to.
        book_id (str): Book involved, if any.
        amount (float): Money moved (fine payments only).
        payment_method (str): Settlement method or ``'n/a'``.
        description (str): Human readable summary.
        metadata (dict): Related ids (borrow, reservation, settlement).
    """

    def __init__(self, id, type, user_id, book_id, amount, payment_method,
                 description, metadata, created_at):
        self.id = id
        self.type = type
        self.user_id = user_id
        self.book_id = book_id
        self.amount = float(amount or 0.0)
        self.payment_method = payment_method
        self.description = description
        self.metadata = json.loads(metadata) if isinstance(metadata, str) else (metadata or {})
        self.created_at = created_at

    @staticmethod
    def record(db, type: str, user_id: str, description: str,
               book_id: Optional[str] = None, amount: float = 0.0,
               payment_method: str = 'n/a',
               metadata: Optional[Dict[str, Any]] = None) -> str:
        """Insert a ledger entry inside the caller's transaction."""
        if type not in TRANSACTION_TYPES:
            raise ValueError(f"Unknown transaction type: {type}")
        transaction_id = str(uuid.uuid4())
        db.execute('''
            INSERT INTO transactions (id, type, user_id, book_id, amount, payment_method,
                                      description, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', (transaction_id, type, user_id, book_id, amount, payment_method,
              description, json.dumps(metadata or {}), format_ts(get_clock().now())))
        return transaction_id

    @staticmethod
    def get_user_transactions(user_id: str) -> List['Transaction']:
        db = get_db()
        rows = db.execute('''
            SELECT * FROM transactions WHERE user_id = ?
            ORDER BY created_at DESC, rowid DESC
        ''', (user_id,)).fetchall()
        return [Transaction(**dict(row)) for row in rows]

    @staticmethod
    def get_all(type: Optional[str] = None) -> List['Transaction']:
        db = get_db()
        if type:
            rows = db.execute('''
                SELECT * FROM transactions WHERE type = ?
                ORDER BY created_at DESC, rowid DESC
            ''', (type,)).fetchall()
        else:
            rows = db.execute(
                'SELECT * FROM transactions ORDER BY created_at DESC, rowid DESC'
            ).fetchall()
        return [Transaction(**dict(row)) for row in rows]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type,
            'user_id': self.user_id,
            'book_id': self.book_id,
            'amount': self.amount,
            'payment_method': self.payment_method,
            'description': self.description,
            'metadata': self.metadata,
            'created_at': self.created_at,
        }
