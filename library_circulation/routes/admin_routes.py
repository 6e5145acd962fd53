"""Administrative circulation endpoints.

Due date overrides, restocking, on-demand sweeps and listings.
All routes require the admin role.
"""
from flask import Blueprint, g, jsonify, request

from models.allocation import AutoAllocator
from models.book import Book
from models.borrow import BorrowRecord
from models.fine import Fine
from models.reservation import Reservation
from models.system_log import SystemLog
from models.transaction import Transaction
from utils.decorators import login_required, role_required

admin_bp = Blueprint('admin', __name__)


@admin_bp.before_request
@login_required
@role_required('admin')
def require_admin():
    """Guard every admin route."""
    return None


@admin_bp.route('/extend-due-date', methods=['POST'])
def extend_due_date():
    """Extend a loan's due date, bypassing the renewal rules.

    JSON body:
        user_email: Borrower's e-mail.
        book_isbn: ISBN of the borrowed book.
        days: Positive number of days to add.
    """
    data = request.get_json(silent=True) or {}
    record = BorrowRecord.extend_due_date(
        data.get('user_email'), data.get('book_isbn'), data.get('days'),
        actor_id=g.user.id
    )
    return jsonify({
        'success': True,
        'message': f'Due date extended to {record.due_date}',
        'borrow': record.to_dict()
    })


@admin_bp.route('/books/<book_id>/restock', methods=['POST'])
def restock(book_id: str):
    data = request.get_json(silent=True) or {}
    book, allocation = Book.restock(book_id, data.get('amount'), actor_id=g.user.id)
    return jsonify({
        'success': True,
        'book': book.to_dict(),
        'allocation': allocation.to_dict() if allocation else None
    })


@admin_bp.route('/reservations/<reservation_id>/fulfill', methods=['POST'])
def fulfill_reservation(reservation_id: str):
    """Lend the book to the reader at the head of its queue."""
    reservation, record = Reservation.fulfill(reservation_id, g.user.id)
    return jsonify({
        'success': True,
        'message': 'Reservation fulfilled successfully',
        'reservation': reservation.to_dict(),
        'borrow': record.to_dict()
    })


@admin_bp.route('/sweeps/reservations', methods=['POST'])
def sweep_reservations():
    count = Reservation.expire_stale()
    if count:
        SystemLog.add('Manual Sweep', f'Expired {count} reservation(s)', 'admin', g.user.id)
    return jsonify({'success': True, 'expired': count})


@admin_bp.route('/sweeps/fines', methods=['POST'])
def sweep_fines():
    count = Fine.sweep_overdue()
    if count:
        SystemLog.add('Manual Sweep', f'Updated {count} overdue fine(s)', 'admin', g.user.id)
    return jsonify({'success': True, 'updated': count})


@admin_bp.route('/sweeps/reconcile', methods=['POST'])
def sweep_reconcile():
    repaired = Fine.repair_balances()
    return jsonify({'success': True, 'repaired_users': repaired})


@admin_bp.route('/sweeps/allocation', methods=['POST'])
def sweep_allocation():
    results = AutoAllocator.process_queue()
    return jsonify({
        'success': True,
        'results': [r.to_dict() for r in results]
    })


@admin_bp.route('/borrows', methods=['GET'])
def list_borrows():
    active_only = request.args.get('active') == '1'
    return jsonify({
        'success': True,
        'borrows': [r.to_dict() for r in BorrowRecord.get_all(active_only=active_only)]
    })


@admin_bp.route('/reservations', methods=['GET'])
def list_reservations():
    status = request.args.get('status') or None
    return jsonify({
        'success': True,
        'reservations': [r.to_dict() for r in Reservation.get_all(status=status)]
    })


@admin_bp.route('/transactions', methods=['GET'])
def list_transactions():
    tx_type = request.args.get('type') or None
    return jsonify({
        'success': True,
        'transactions': [t.to_dict() for t in Transaction.get_all(type=tx_type)]
    })


@admin_bp.route('/logs', methods=['GET'])
def recent_logs():
    limit = request.args.get('limit', 50, type=int)
    return jsonify({
        'success': True,
        'logs': SystemLog.get_recent(limit, request.args.get('type') or None)
    })
