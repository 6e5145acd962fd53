"""Book model module.

This module defines the Book model and every write to a book's inventory.
``availability`` is always written in the same statement as ``quantity``.
"""
import logging
import uuid
from typing import Any, Dict, Optional

from models.database import format_ts, get_db, transaction
from utils.clock import get_clock
from utils.errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class Book:
    """Represents a lendable title in the library.

    Attributes:
        id (str): Unique identifier for the book.
        title (str): Book title.
        author (str): Book author name.
        isbn (str): ISBN number.
        quantity (int): Copies currently on the shelf.
        availability (bool): ``quantity > 0``.
    """

    def __init__(self, id: str, title: str, author: str, isbn: str,
                 quantity: int, availability: int, created_at: Optional[str] = None) -> None:
        self.id = id
        self.title = title
        self.author = author
        self.isbn = isbn
        self.quantity = int(quantity)
        self.availability = bool(availability)
        self.created_at = created_at

    @staticmethod
    def get_by_id(book_id: str) -> Optional['Book']:
        """Retrieve a book by its ID."""
        db = get_db()
        row = db.execute('SELECT * FROM books WHERE id = ?', (book_id,)).fetchone()
        if row:
            return Book(**dict(row))
        return None

    @staticmethod
    def get_by_isbn(isbn: str) -> Optional['Book']:
        """Retrieve a book by its ISBN."""
        db = get_db()
        row = db.execute(
            'SELECT * FROM books WHERE isbn = ?', ((isbn or '').strip(),)
        ).fetchone()
        if row:
            return Book(**dict(row))
        return None

    @staticmethod
    def require(book_id: str) -> 'Book':
        """Retrieve a book by ID or raise NotFoundError."""
        if not book_id:
            raise ValidationError("Book id is required")
        book = Book.get_by_id(book_id)
        if not book:
            raise NotFoundError("Book not found")
        return book

    @staticmethod
    def create(title: str, author: str, isbn: str, quantity: int = 1) -> 'Book':
        """Add a title to the inventory."""
        if not title or not author or not isbn:
            raise ValidationError("Title, author and ISBN are required")
        if int(quantity) < 0:
            raise ValidationError("Quantity cannot be negative")
        if Book.get_by_isbn(isbn):
            raise ConflictError("A book with this ISBN already exists")

        book_id = str(uuid.uuid4())
        quantity = int(quantity)
        db = get_db()
        db.execute('''
            INSERT INTO books (id, title, author, isbn, quantity, availability, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        ''', (book_id, title, author, isbn.strip(), quantity, int(quantity > 0),
              format_ts(get_clock().now())))
        db.commit()
        return Book.get_by_id(book_id)

    @staticmethod
    def take_copy(db, book_id: str) -> bool:
        """Decrement quantity only if a copy is left, in one statement.

        Returns:
            True when a copy was taken, False when none was available.
        """
        cursor = db.execute('''
            UPDATE books
            SET quantity = quantity - 1,
                availability = CASE WHEN quantity - 1 > 0 THEN 1 ELSE 0 END
            WHERE id = ? AND quantity > 0
        ''', (book_id,))
        return cursor.rowcount == 1

    @staticmethod
    def put_back_copies(db, book_id: str, amount: int = 1) -> None:
        """Increase quantity by ``amount`` and refresh availability."""
        db.execute('''
            UPDATE books
            SET quantity = quantity + ?,
                availability = CASE WHEN quantity + ? > 0 THEN 1 ELSE 0 END
            WHERE id = ?
        ''', (amount, amount, book_id))

    @staticmethod
    def restock(book_id: str, amount: int, actor_id: Optional[str] = None):
        """Manual inventory top-up.

        Any increase in quantity gives queued readers a chance at the new
        copies, so the allocator runs right after the commit.

        Returns:
            Tuple of (updated Book, AllocationResult).
        """
        from models.allocation import AutoAllocator
        from models.system_log import SystemLog

        try:
            amount = int(amount)
        except (TypeError, ValueError):
            raise ValidationError("Amount must be a positive integer")
        if amount <= 0:
            raise ValidationError("Amount must be a positive integer")

        Book.require(book_id)
        with transaction() as db:
            Book.put_back_copies(db, book_id, amount)

        book = Book.get_by_id(book_id)
        SystemLog.add(
            'Inventory Restock',
            f'Added {amount} copies of "{book.title}" (Now: {book.quantity})',
            'admin',
            actor_id
        )
        logger.info("Restocked book %s by %d copies", book_id, amount)

        result = AutoAllocator.allocate_safely(book_id)
        return Book.get_by_id(book_id), result

    def to_dict(self) -> Dict[str, Any]:
        """Convert book to dictionary."""
        return {
            'id': self.id,
            'title': self.title,
            'author': self.author,
            'isbn': self.isbn,
            'quantity': self.quantity,
            'availability': self.availability,
        }
