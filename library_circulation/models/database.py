"""Database initialization and connection management.

This module provides database connection management, schema initialization,
the write-transaction helper and demo data loading for the circulation engine.
"""
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

from flask import current_app, g

logger = logging.getLogger(__name__)


def get_db() -> sqlite3.Connection:
    """Get database connection from Flask application context.

    Returns:
        SQLite database connection with Row factory enabled.
    """
    if 'db' not in g:
        path = current_app.config['DATABASE_PATH']
        if path != ':memory:':
            os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        g.db = sqlite3.connect(
            path,
            timeout=current_app.config['DATABASE_TIMEOUT_SECONDS'],
            detect_types=sqlite3.PARSE_DECLTYPES
        )
        g.db.row_factory = sqlite3.Row
    return g.db


def close_db(e=None):
    """Close database connection"""
    db = g.pop('db', None)
    if db is not None:
        db.close()


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """Run a block as one write transaction.

    ``BEGIN IMMEDIATE`` takes the database write lock up front, so every
    read-decide-write sequence inside the block sees no concurrent writer.
    Rolls back on any exception.
    """
    db = get_db()
    db.execute('BEGIN IMMEDIATE')
    try:
        yield db
    except BaseException:
        db.rollback()
        raise
    else:
        db.commit()


def format_ts(value: Optional[datetime]) -> Optional[str]:
    """Format a datetime the way timestamps are stored."""
    if value is None:
        return None
    return value.strftime(current_app.config['DATETIME_FORMAT'])


def parse_ts(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.strptime(value, current_app.config['DATETIME_FORMAT'])


SCHEMA = '''
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT UNIQUE NOT NULL,
        role TEXT NOT NULL DEFAULT 'user',
        fine_balance REAL NOT NULL DEFAULT 0.0 CHECK (fine_balance >= 0),
        total_fines_paid REAL NOT NULL DEFAULT 0.0 CHECK (total_fines_paid >= 0),
        created_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS books (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        author TEXT NOT NULL,
        isbn TEXT UNIQUE NOT NULL,
        quantity INTEGER NOT NULL DEFAULT 0 CHECK (quantity >= 0),
        availability INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS borrow_records (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        user_name TEXT NOT NULL,
        user_email TEXT NOT NULL,
        book_id TEXT NOT NULL,
        borrow_date TEXT NOT NULL,
        due_date TEXT NOT NULL,
        return_date TEXT,
        fine REAL NOT NULL DEFAULT 0.0,
        fine_paid INTEGER NOT NULL DEFAULT 0,
        renewal_count INTEGER NOT NULL DEFAULT 0 CHECK (renewal_count <= 1),
        renewed_at TEXT,
        overdue_notified INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        FOREIGN KEY (user_id) REFERENCES users (id),
        FOREIGN KEY (book_id) REFERENCES books (id)
    );

    CREATE UNIQUE INDEX IF NOT EXISTS ux_borrow_active
        ON borrow_records (user_id, book_id) WHERE return_date IS NULL;
    CREATE INDEX IF NOT EXISTS ix_borrow_due
        ON borrow_records (return_date, due_date);

    CREATE TABLE IF NOT EXISTS reservations (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        user_name TEXT NOT NULL,
        user_email TEXT NOT NULL,
        book_id TEXT NOT NULL,
        reservation_date TEXT NOT NULL,
        expiry_date TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'active',
        notified INTEGER NOT NULL DEFAULT 0,
        fulfilled_at TEXT,
        cancelled_at TEXT,
        expired_at TEXT,
        FOREIGN KEY (user_id) REFERENCES users (id),
        FOREIGN KEY (book_id) REFERENCES books (id)
    );

    CREATE UNIQUE INDEX IF NOT EXISTS ux_reservation_active
        ON reservations (user_id, book_id) WHERE status = 'active';
    CREATE INDEX IF NOT EXISTS ix_reservation_book_status
        ON reservations (book_id, status);
    CREATE INDEX IF NOT EXISTS ix_reservation_expiry
        ON reservations (expiry_date, status);

    CREATE TABLE IF NOT EXISTS fine_payments (
        id TEXT PRIMARY KEY,
        settlement_id TEXT UNIQUE,
        user_id TEXT NOT NULL,
        borrow_id TEXT,
        amount REAL NOT NULL,
        method TEXT NOT NULL,
        paid_at TEXT NOT NULL,
        FOREIGN KEY (user_id) REFERENCES users (id),
        FOREIGN KEY (borrow_id) REFERENCES borrow_records (id)
    );

    CREATE TABLE IF NOT EXISTS transactions (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL,
        user_id TEXT NOT NULL,
        book_id TEXT,
        amount REAL NOT NULL DEFAULT 0.0,
        payment_method TEXT NOT NULL DEFAULT 'n/a',
        description TEXT NOT NULL,
        metadata TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL,
        FOREIGN KEY (user_id) REFERENCES users (id)
    );

    CREATE INDEX IF NOT EXISTS ix_transactions_user
        ON transactions (user_id, created_at);

    CREATE TABLE IF NOT EXISTS system_logs (
        id TEXT PRIMARY KEY,
        timestamp TEXT NOT NULL,
        action TEXT NOT NULL,
        details TEXT,
        log_type TEXT DEFAULT 'info',
        user_id TEXT
    );
'''


def init_db():
    """Initialize database with schema"""
    db = get_db()
    db.executescript(SCHEMA)
    db.commit()


def insert_mock_data():
    """Insert a handful of users and books for local development."""
    import uuid

    from utils.clock import get_clock

    db = get_db()
    cursor = db.execute('SELECT COUNT(*) FROM users')
    if cursor.fetchone()[0] > 0:
        return  # Data already exists

    now = format_ts(get_clock().now())
    users = [
        ('John Doe', 'user@library.com', 'user'),
        ('Jane Smith', 'reader@library.com', 'user'),
        ('Admin User', 'admin@library.com', 'admin'),
    ]
    for name, email, role in users:
        db.execute('''
            INSERT INTO users (id, name, email, role, fine_balance, total_fines_paid, created_at)
            VALUES (?, ?, ?, ?, 0.0, 0.0, ?)
        ''', (str(uuid.uuid4()), name, email, role, now))

    books = [
        ('The Great Gatsby', 'F. Scott Fitzgerald', '978-0-7432-7356-5', 2),
        ('1984', 'George Orwell', '978-0-452-28423-4', 1),
        ('Dune', 'Frank Herbert', '978-0-441-17271-9', 0),
    ]
    for title, author, isbn, quantity in books:
        db.execute('''
            INSERT INTO books (id, title, author, isbn, quantity, availability, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        ''', (str(uuid.uuid4()), title, author, isbn, quantity, int(quantity > 0), now))

    db.commit()
    logger.info("Inserted demo users and books")


def init_app(app):
    """Register connection teardown on the application."""
    app.teardown_appcontext(close_db)
