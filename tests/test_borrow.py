import threading
from datetime import timedelta

import pytest

from models.book import Book
from models.borrow import BorrowRecord
from models.fine import Fine
from models.reservation import Reservation
from models.system_log import SystemLog
from models.transaction import Transaction
from models.user import User
from utils.errors import (ConflictError, NotFoundError, StateError,
                          UnavailableError, ValidationError)


def test_borrow_takes_a_copy_and_sets_due_date(seed, clock):
    user = seed.user()
    book = seed.book(quantity=2)

    record = BorrowRecord.borrow(user.id, book.id)

    assert record.is_active
    assert record.due_datetime == clock.now() + timedelta(days=7)
    assert record.renewal_count == 0
    assert record.user_email == user.email
    book = Book.get_by_id(book.id)
    assert book.quantity == 1
    assert book.availability is True

    tx = Transaction.get_user_transactions(user.id)
    assert [t.type for t in tx] == ['borrow']
    assert tx[0].metadata['borrowId'] == record.id


def test_borrow_last_copy_clears_availability(seed):
    book = seed.book(quantity=1)
    BorrowRecord.borrow(seed.user().id, book.id)

    book = Book.get_by_id(book.id)
    assert book.quantity == 0
    assert book.availability is False


def test_borrow_rejects_missing_and_unknown_ids(seed):
    user = seed.user()
    with pytest.raises(ValidationError):
        BorrowRecord.borrow(user.id, None)
    with pytest.raises(NotFoundError):
        BorrowRecord.borrow(user.id, 'no-such-book')
    with pytest.raises(NotFoundError):
        BorrowRecord.borrow('no-such-user', seed.book().id)


def test_borrow_unavailable_book(seed):
    book = seed.book(quantity=0)
    with pytest.raises(UnavailableError):
        BorrowRecord.borrow(seed.user().id, book.id)


def test_borrow_same_book_twice_is_a_conflict(seed):
    user = seed.user()
    book = seed.book(quantity=3)
    BorrowRecord.borrow(user.id, book.id)

    with pytest.raises(ConflictError):
        BorrowRecord.borrow(user.id, book.id)
    assert Book.get_by_id(book.id).quantity == 2


def test_borrow_blocked_by_outstanding_fine(seed, clock):
    user = seed.user()
    first, second = seed.book(), seed.book()
    record = BorrowRecord.borrow(user.id, first.id)
    clock.set(record.due_datetime + timedelta(hours=1))
    BorrowRecord.return_book(record.id)

    with pytest.raises(ConflictError) as excinfo:
        BorrowRecord.borrow(user.id, second.id)
    assert 'fine' in excinfo.value.message
    assert Book.get_by_id(second.id).quantity == 1


def test_return_on_time_has_no_fine(seed, clock):
    user = seed.user()
    book = seed.book()
    record = BorrowRecord.borrow(user.id, book.id)
    clock.advance(days=3)

    result = BorrowRecord.return_book(record.id)

    assert result['fine'] == 0.0
    assert result['new_fine_balance'] == 0.0
    assert result['record'].return_date is not None
    assert Book.get_by_id(book.id).quantity == 1
    types = [t.type for t in Transaction.get_user_transactions(user.id)]
    assert types == ['return', 'borrow']


def test_return_late_charges_fine(seed, clock):
    user = seed.user()
    book = seed.book()
    record = BorrowRecord.borrow(user.id, book.id)
    clock.set(record.due_datetime + timedelta(hours=4, minutes=1))

    result = BorrowRecord.return_book(record.id)

    assert result['fine'] == 5.0
    assert User.get_by_id(user.id).fine_balance == 5.0
    assert BorrowRecord.get_by_id(record.id).fine == 5.0


def test_return_twice_is_a_state_error(seed):
    book = seed.book()
    record = BorrowRecord.borrow(seed.user().id, book.id)
    BorrowRecord.return_book(record.id)

    with pytest.raises(StateError):
        BorrowRecord.return_book(record.id)
    assert Book.get_by_id(book.id).quantity == 1


def test_return_unknown_record(seed):
    with pytest.raises(NotFoundError):
        BorrowRecord.return_book('missing')


def test_renew_extends_once(seed, clock):
    record = BorrowRecord.borrow(seed.user().id, seed.book().id)
    original_due = record.due_datetime

    renewed = BorrowRecord.renew(record.id)

    assert renewed.due_datetime == original_due + timedelta(days=7)
    assert renewed.renewal_count == 1
    assert renewed.renewed_at is not None
    with pytest.raises(StateError):
        BorrowRecord.renew(record.id)


def test_renew_overdue_is_rejected(seed, clock):
    record = BorrowRecord.borrow(seed.user().id, seed.book().id)
    clock.set(record.due_datetime + timedelta(seconds=1))

    with pytest.raises(StateError):
        BorrowRecord.renew(record.id)


def test_renew_returned_is_rejected(seed):
    record = BorrowRecord.borrow(seed.user().id, seed.book().id)
    BorrowRecord.return_book(record.id)

    with pytest.raises(StateError):
        BorrowRecord.renew(record.id)


def test_renew_blocked_by_reservation(seed):
    book = seed.book(quantity=1)
    record = BorrowRecord.borrow(seed.user().id, book.id)
    Reservation.reserve(seed.user().id, book.id)

    with pytest.raises(ConflictError) as excinfo:
        BorrowRecord.renew(record.id)
    assert excinfo.type is ConflictError
    assert BorrowRecord.get_by_id(record.id).renewal_count == 0


def test_extend_due_date_recomputes_fine(seed, clock):
    admin = seed.admin()
    user = seed.user()
    book = seed.book()
    record = BorrowRecord.borrow(user.id, book.id)
    clock.set(record.due_datetime + timedelta(hours=10))
    Fine.reconcile_user(user.id)
    assert User.get_by_id(user.id).fine_balance == 10.0

    extended = BorrowRecord.extend_due_date(user.email, book.isbn, 1, actor_id=admin.id)

    assert extended.due_datetime == record.due_datetime + timedelta(days=1)
    assert extended.fine == 0.0
    assert User.get_by_id(user.id).fine_balance == 0.0
    assert 'Due Date Extended' in [log['action'] for log in SystemLog.get_recent(5, 'admin')]


@pytest.mark.parametrize('days', [0, -2, 'abc', None, True])
def test_extend_due_date_requires_positive_days(seed, days):
    user = seed.user()
    book = seed.book()
    BorrowRecord.borrow(user.id, book.id)

    with pytest.raises(ValidationError):
        BorrowRecord.extend_due_date(user.email, book.isbn, days)


def test_extend_due_date_without_active_borrow(seed):
    user = seed.user()
    book = seed.book()
    with pytest.raises(NotFoundError):
        BorrowRecord.extend_due_date(user.email, book.isbn, 3)
    with pytest.raises(NotFoundError):
        BorrowRecord.extend_due_date('nobody@library.test', book.isbn, 3)


def test_concurrent_borrows_of_last_copy(app, seed):
    book = seed.book(quantity=1)
    users = [seed.user(), seed.user()]
    barrier = threading.Barrier(len(users))
    outcomes = []
    lock = threading.Lock()

    def attempt(user_id):
        with app.app_context():
            barrier.wait()
            try:
                BorrowRecord.borrow(user_id, book.id)
                outcome = 'ok'
            except UnavailableError:
                outcome = 'unavailable'
            with lock:
                outcomes.append(outcome)

    threads = [threading.Thread(target=attempt, args=(u.id,)) for u in users]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert sorted(outcomes) == ['ok', 'unavailable']
    assert Book.get_by_id(book.id).quantity == 0
    assert len(BorrowRecord.get_all(active_only=True)) == 1


def test_concurrent_returns_of_same_record(app, seed):
    book = seed.book(quantity=1)
    record = BorrowRecord.borrow(seed.user().id, book.id)
    barrier = threading.Barrier(2)
    outcomes = []
    lock = threading.Lock()

    def attempt():
        with app.app_context():
            barrier.wait()
            try:
                BorrowRecord.return_book(record.id)
                outcome = 'ok'
            except StateError:
                outcome = 'state'
            with lock:
                outcomes.append(outcome)

    threads = [threading.Thread(target=attempt) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert sorted(outcomes) == ['ok', 'state']
    assert Book.get_by_id(book.id).quantity == 1
