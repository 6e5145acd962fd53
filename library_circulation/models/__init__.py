"""
Models package

Lifecycle:
    Book - inventory (book.py)
    BorrowRecord - borrow / return / renew (borrow.py)
    Reservation - per-book FCFS waiting list (reservation.py)
    AutoAllocator - hands returned copies to the queue (allocation.py)
    Fine - accrual and balance reconciliation (fine.py)
    FinePayment - settlement booking (payment.py)
"""
from models.allocation import AllocationResult, AutoAllocator
from models.book import Book
from models.borrow import BorrowRecord
from models.database import close_db, get_db, init_db, transaction
from models.fine import Fine
from models.payment import FinePayment
from models.reservation import Reservation
from models.system_log import SystemLog
from models.transaction import Transaction
from models.user import User

__all__ = [
    'User', 'Book', 'BorrowRecord', 'Reservation',
    'AutoAllocator', 'AllocationResult', 'Fine', 'FinePayment',
    'SystemLog', 'Transaction',
    'init_db', 'get_db', 'close_db', 'transaction'
]
