import threading
from datetime import timedelta

from models.allocation import AutoAllocator
from models.book import Book
from models.borrow import BorrowRecord
from models.database import transaction
from models.payment import FinePayment
from models.reservation import Reservation
from models.transaction import Transaction
from models.user import User

READY = 'Book Auto-Allocated - Ready for Pickup'
PAY_FIRST = 'Book Available - Payment Required'


def test_return_grants_copy_to_first_in_queue(seed, clock, port):
    holder = seed.user()
    book = seed.book(quantity=1)
    record = BorrowRecord.borrow(holder.id, book.id)
    first, second = seed.user(), seed.user()
    r1 = Reservation.reserve(first.id, book.id)
    r2 = Reservation.reserve(second.id, book.id)
    clock.advance(hours=1)

    result = BorrowRecord.return_book(record.id)

    allocation = result['allocation']
    assert len(allocation.granted) == 1
    assert Reservation.get_by_id(r1.id).status == 'fulfilled'
    assert Reservation.get_by_id(r2.id).status == 'active'
    assert BorrowRecord.get_active(first.id, book.id) is not None
    assert Book.get_by_id(book.id).quantity == 0
    assert port.subjects_for(first.email) == [READY]
    assert port.subjects_for(second.email) == []

    borrow_tx = [t for t in Transaction.get_user_transactions(first.id) if t.type == 'borrow']
    assert borrow_tx[0].metadata['autoAllocated'] is True
    assert borrow_tx[0].metadata['reservationId'] == r1.id


def test_reader_with_fines_is_skipped_then_served_after_paying(seed, clock, port):
    other_book = seed.book(quantity=1)
    book = seed.book(quantity=1)
    debtor, holder = seed.user(), seed.user()
    debt = BorrowRecord.borrow(debtor.id, other_book.id)
    loan = BorrowRecord.borrow(holder.id, book.id)

    clock.set(debt.due_datetime + timedelta(hours=3))
    BorrowRecord.return_book(debt.id)
    reservation = Reservation.reserve(debtor.id, book.id)
    result = BorrowRecord.return_book(loan.id)

    allocation = result['allocation']
    assert allocation.granted == []
    assert allocation.skipped_for_fines == [reservation.id]
    still_queued = Reservation.get_by_id(reservation.id)
    assert still_queued.status == 'active'
    assert still_queued.notified is True
    assert Book.get_by_id(book.id).quantity == 1
    assert port.subjects_for(debtor.email) == [PAY_FIRST]

    FinePayment.mark_fine_paid(debt.id, 'cash')

    assert Reservation.get_by_id(reservation.id).status == 'fulfilled'
    assert BorrowRecord.get_active(debtor.id, book.id) is not None
    assert Book.get_by_id(book.id).quantity == 0
    assert port.subjects_for(debtor.email) == [PAY_FIRST, READY]


def test_fine_skip_does_not_use_budget(seed, clock):
    other_book = seed.book(quantity=1)
    book = seed.book(quantity=1)
    debtor, holder, patient = seed.user(), seed.user(), seed.user()
    debt = BorrowRecord.borrow(debtor.id, other_book.id)
    loan = BorrowRecord.borrow(holder.id, book.id)
    clock.set(debt.due_datetime + timedelta(hours=1))
    BorrowRecord.return_book(debt.id)

    Reservation.reserve(debtor.id, book.id)
    served = Reservation.reserve(patient.id, book.id)
    clock.advance(minutes=5)
    BorrowRecord.return_book(loan.id)

    assert Reservation.get_by_id(served.id).status == 'fulfilled'
    assert BorrowRecord.get_active(patient.id, book.id) is not None


def test_stale_reservation_is_fulfilled_without_a_copy(seed, clock, port):
    book = seed.book(quantity=1)
    holder, reader = seed.user(), seed.user()
    loan = BorrowRecord.borrow(holder.id, book.id)
    stale = Reservation.reserve(reader.id, book.id)

    # A copy came back without an allocation pass and the reader took it directly.
    with transaction() as db:
        Book.put_back_copies(db, book.id, 1)
    BorrowRecord.borrow(reader.id, book.id)

    result = BorrowRecord.return_book(loan.id)

    assert result['allocation'].fulfilled_stale == [stale.id]
    assert result['allocation'].granted == []
    assert Reservation.get_by_id(stale.id).status == 'fulfilled'
    assert Book.get_by_id(book.id).quantity == 1
    assert port.subjects_for(reader.email) == []


def test_restock_serves_as_many_as_copies_added(seed):
    admin = seed.admin()
    book = seed.book(quantity=0)
    readers = [seed.user() for _ in range(3)]
    reservations = [Reservation.reserve(u.id, book.id) for u in readers]

    updated, allocation = Book.restock(book.id, 2, actor_id=admin.id)

    assert len(allocation.granted) == 2
    assert updated.quantity == 0
    assert updated.availability is False
    statuses = [Reservation.get_by_id(r.id).status for r in reservations]
    assert statuses == ['fulfilled', 'fulfilled', 'active']


def test_allocation_failure_does_not_fail_the_return(seed, clock, monkeypatch):
    book = seed.book(quantity=1)
    holder, reader = seed.user(), seed.user()
    loan = BorrowRecord.borrow(holder.id, book.id)
    reservation = Reservation.reserve(reader.id, book.id)

    def broken(book_id, notifier=None, now=None):
        raise RuntimeError('allocator down')

    monkeypatch.setattr(AutoAllocator, 'allocate', staticmethod(broken))
    result = BorrowRecord.return_book(loan.id)

    assert result['allocation'] is None
    assert BorrowRecord.get_by_id(loan.id).return_date is not None
    assert Book.get_by_id(book.id).quantity == 1
    assert Reservation.get_by_id(reservation.id).status == 'active'

    monkeypatch.undo()
    results = AutoAllocator.process_queue()

    assert [len(r.granted) for r in results] == [1]
    assert Reservation.get_by_id(reservation.id).status == 'fulfilled'


def test_process_queue_skips_books_without_queue_or_copies(seed):
    seed.book(quantity=2)
    empty = seed.book(quantity=0)
    Reservation.reserve(seed.user().id, empty.id)

    assert AutoAllocator.process_queue() == []


def test_reservation_of_deleted_user_is_left_alone(seed, clock):
    book = seed.book(quantity=1)
    holder, ghost, reader = seed.user(), seed.user(), seed.user()
    loan = BorrowRecord.borrow(holder.id, book.id)
    orphan = Reservation.reserve(ghost.id, book.id)
    queued = Reservation.reserve(reader.id, book.id)

    with transaction() as db:
        db.execute('DELETE FROM users WHERE id = ?', (ghost.id,))
    result = BorrowRecord.return_book(loan.id)

    assert result['allocation'].skipped_missing_user == [orphan.id]
    assert Reservation.get_by_id(orphan.id).status == 'active'
    assert Reservation.get_by_id(queued.id).status == 'fulfilled'
    assert User.get_by_id(reader.id).fine_balance == 0.0


def test_return_racing_restock_grants_each_copy_once(app, seed):
    admin, holder = seed.admin(), seed.user()
    book = seed.book(quantity=1)
    loan = BorrowRecord.borrow(holder.id, book.id)
    readers = [seed.user() for _ in range(3)]
    reservations = [Reservation.reserve(u.id, book.id) for u in readers]
    barrier = threading.Barrier(2)
    errors = []

    def give_back():
        with app.app_context():
            barrier.wait()
            try:
                BorrowRecord.return_book(loan.id)
            except Exception as e:
                errors.append(e)

    def restock():
        with app.app_context():
            barrier.wait()
            try:
                Book.restock(book.id, 1, actor_id=admin.id)
            except Exception as e:
                errors.append(e)

    threads = [threading.Thread(target=give_back), threading.Thread(target=restock)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert errors == []
    statuses = [Reservation.get_by_id(r.id).status for r in reservations]
    assert statuses == ['fulfilled', 'fulfilled', 'active']
    assert Book.get_by_id(book.id).quantity == 0
    for reader in readers:
        assert len(BorrowRecord.get_user_records(reader.id, active_only=True)) <= 1
    assert len(BorrowRecord.get_all(active_only=True)) == 2
