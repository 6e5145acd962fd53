from datetime import datetime, timedelta

import pytest

from models.borrow import BorrowRecord
from models.database import get_db
from models.fine import Fine
from models.system_log import SystemLog
from models.user import User


@pytest.mark.parametrize('now, expected', [
    (datetime(2024, 1, 8, 9, 0), 0.0),
    (datetime(2024, 1, 8, 8, 0), 0.0),
    (datetime(2024, 1, 8, 9, 0, 1), 1.0),
    (datetime(2024, 1, 8, 10, 0), 1.0),
    (datetime(2024, 1, 8, 14, 0), 5.0),
    (datetime(2024, 1, 9, 9, 30), 25.0),
])
def test_calculate_fine_charges_every_started_hour(now, expected):
    due = datetime(2024, 1, 8, 9, 0)
    assert Fine.calculate_fine(due, now, rate_per_hour=1.0) == expected


def test_calculate_fine_uses_configured_rate(ctx):
    due = datetime(2024, 1, 8, 9, 0)
    assert Fine.calculate_fine(due, due + timedelta(hours=3)) == 3.0
    assert Fine.calculate_fine(due, due + timedelta(hours=3), rate_per_hour=2.5) == 7.5


def test_reconcile_applies_only_the_delta(seed, clock):
    user = seed.user()
    book = seed.book()
    record = BorrowRecord.borrow(user.id, book.id)

    clock.set(record.due_datetime + timedelta(hours=3))
    assert Fine.reconcile_user(user.id) == 3.0
    assert User.get_by_id(user.id).fine_balance == 3.0

    clock.advance(hours=2)
    assert Fine.reconcile_user(user.id) == 2.0
    assert User.get_by_id(user.id).fine_balance == 5.0
    assert BorrowRecord.get_by_id(record.id).fine == 5.0


def test_return_after_lazy_reconcile_does_not_double_count(seed, clock):
    user = seed.user()
    book = seed.book()
    record = BorrowRecord.borrow(user.id, book.id)

    clock.set(record.due_datetime + timedelta(hours=3))
    Fine.reconcile_user(user.id)
    clock.advance(hours=2)
    result = BorrowRecord.return_book(record.id)

    assert result['fine'] == 5.0
    assert result['new_fine_balance'] == 5.0
    assert Fine.unpaid_total(user.id) == User.get_by_id(user.id).fine_balance


def test_sweep_is_idempotent_for_an_unchanged_clock(seed, clock):
    users = [seed.user() for _ in range(3)]
    book = seed.book(quantity=3)
    records = [BorrowRecord.borrow(u.id, book.id) for u in users]

    clock.set(records[0].due_datetime + timedelta(hours=4))
    assert Fine.sweep_overdue() == 3
    assert Fine.sweep_overdue() == 0
    for user in users:
        assert User.get_by_id(user.id).fine_balance == 4.0


def test_sweep_ignores_returned_and_not_yet_due_records(seed, clock):
    early, late = seed.user(), seed.user()
    book = seed.book(quantity=2)
    returned = BorrowRecord.borrow(early.id, book.id)
    BorrowRecord.return_book(returned.id)
    BorrowRecord.borrow(late.id, book.id)

    assert Fine.sweep_overdue() == 0
    assert User.get_by_id(early.id).fine_balance == 0.0
    assert User.get_by_id(late.id).fine_balance == 0.0


def test_repair_balances_fixes_drift(seed, clock):
    user = seed.user()
    book = seed.book()
    record = BorrowRecord.borrow(user.id, book.id)
    clock.set(record.due_datetime + timedelta(hours=2))
    BorrowRecord.return_book(record.id)

    db = get_db()
    db.execute('UPDATE users SET fine_balance = 42.0 WHERE id = ?', (user.id,))
    db.commit()

    assert Fine.repair_balances() == [user.id]
    assert User.get_by_id(user.id).fine_balance == 2.0
    assert Fine.repair_balances() == []
    actions = [log['action'] for log in SystemLog.get_recent(10, 'warning')]
    assert 'Fine Balance Repaired' in actions


def test_get_user_fines_reconciles_first(seed, clock):
    user = seed.user()
    book = seed.book()
    record = BorrowRecord.borrow(user.id, book.id)
    clock.set(record.due_datetime + timedelta(minutes=90))

    summary = Fine.get_user_fines(user.id)

    assert summary['fine_balance'] == 2.0
    assert summary['total_fines_paid'] == 0.0
    assert [r.id for r in summary['unpaid_records']] == [record.id]
