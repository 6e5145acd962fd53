"""User model module.

Users are owned by the identity service; this engine only reads their
name/e-mail snapshot and maintains their fine balance.
"""
import uuid
from typing import Any, Dict, Optional

from models.database import format_ts, get_db
from utils.clock import get_clock
from utils.errors import ConflictError, NotFoundError, ValidationError


class User:
    """A library member or administrator.

    Attributes:
        id (str): Unique user identifier.
        name (str): Display name, copied onto borrow records and reservations.
        email (str): Notification address.
        role (str): ``'user'`` or ``'admin'``.
        fine_balance (float): Sum of the user's unpaid fines.
        total_fines_paid (float): Lifetime total of settled fines.
    """

    def __init__(self, id, name, email, role, fine_balance, total_fines_paid,
                 created_at=None, **kwargs):
        self.id = id
        self.name = name
        self.email = email
        self.role = role
        self.fine_balance = float(fine_balance) if fine_balance is not None else 0.0
        self.total_fines_paid = float(total_fines_paid) if total_fines_paid is not None else 0.0
        self.created_at = created_at

    @staticmethod
    def get_by_id(user_id: str) -> Optional['User']:
        """Get user by ID."""
        db = get_db()
        row = db.execute('SELECT * FROM users WHERE id = ?', (user_id,)).fetchone()
        if row:
            return User(**dict(row))
        return None

    @staticmethod
    def get_by_email(email: str) -> Optional['User']:
        """Get user by e-mail (case-insensitive)."""
        db = get_db()
        row = db.execute(
            'SELECT * FROM users WHERE email = ?',
            ((email or '').strip().lower(),)
        ).fetchone()
        if row:
            return User(**dict(row))
        return None

    @staticmethod
    def require(user_id: str) -> 'User':
        """Get user by ID or raise NotFoundError."""
        if not user_id:
            raise ValidationError("User id is required")
        user = User.get_by_id(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    @staticmethod
    def create(name: str, email: str, role: str = 'user') -> 'User':
        """Register a user record mirrored from the identity service."""
        if not name or not email:
            raise ValidationError("Name and email are required")
        if role not in ('user', 'admin'):
            raise ValidationError(f"Unknown role: {role}")
        email = email.strip().lower()
        if User.get_by_email(email):
            raise ConflictError("Email already registered")

        user_id = str(uuid.uuid4())
        db = get_db()
        db.execute('''
            INSERT INTO users (id, name, email, role, fine_balance, total_fines_paid, created_at)
            VALUES (?, ?, ?, ?, 0.0, 0.0, ?)
        ''', (user_id, name, email, role, format_ts(get_clock().now())))
        db.commit()
        return User.get_by_id(user_id)

    @staticmethod
    def adjust_fine_balance(db, user_id: str, delta: float) -> None:
        """Apply a fine delta inside the caller's transaction.

        The balance is moved by ``delta`` in a single statement rather than
        overwritten, and clamped at zero.
        """
        if not delta:
            return
        db.execute(
            'UPDATE users SET fine_balance = MAX(0, fine_balance + ?) WHERE id = ?',
            (delta, user_id)
        )

    def has_outstanding_fines(self) -> bool:
        """Return True while the user owes anything."""
        return self.fine_balance > 0

    def is_admin(self) -> bool:
        """Check if user is admin."""
        return self.role == 'admin'

    def to_dict(self) -> Dict[str, Any]:
        """Convert user to dictionary."""
        return {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'role': self.role,
            'fine_balance': self.fine_balance,
            'total_fines_paid': self.total_fines_paid,
        }
