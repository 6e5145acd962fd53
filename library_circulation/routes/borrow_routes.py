"""Borrow, return and renewal endpoints.

Controllers stay thin: they resolve the acting user, call the model and
serialize the result. Model errors are rendered by the application's error
handler.
"""
from flask import Blueprint, g, jsonify, request

from models.borrow import BorrowRecord
from models.fine import Fine
from utils.decorators import login_required
from utils.errors import ForbiddenError

borrow_bp = Blueprint('borrows', __name__)


def _require_owned(borrow_id: str) -> BorrowRecord:
    record = BorrowRecord.require(borrow_id)
    if record.user_id != g.user.id and not g.user.is_admin():
        raise ForbiddenError("Not authorized to act on this borrow record")
    return record


@borrow_bp.route('/borrows', methods=['POST'])
@login_required
def borrow_book():
    """Borrow a book for the acting user.

    JSON body:
        book_id: Book identifier.
        user_id: Borrower (admins only, defaults to the acting user).

    Returns:
        201 with the new borrow record.
    """
    data = request.get_json(silent=True) or {}
    user_id = g.user.id
    if data.get('user_id') and data['user_id'] != g.user.id:
        if not g.user.is_admin():
            raise ForbiddenError("Only admins can borrow on behalf of another user")
        user_id = data['user_id']

    record = BorrowRecord.borrow(user_id, data.get('book_id'))
    return jsonify({
        'success': True,
        'message': 'Book borrowed successfully',
        'borrow': record.to_dict()
    }), 201


@borrow_bp.route('/borrows/<borrow_id>/return', methods=['POST'])
@login_required
def return_book(borrow_id: str):
    _require_owned(borrow_id)
    result = BorrowRecord.return_book(borrow_id)
    allocation = result['allocation']

    message = 'Book returned successfully'
    if result['fine'] > 0:
        message += f'. Fine: {result["fine"]:,.2f}'
    return jsonify({
        'success': True,
        'message': message,
        'fine': result['fine'],
        'new_fine_balance': result['new_fine_balance'],
        'borrow': result['record'].to_dict(),
        'allocation': allocation.to_dict() if allocation else None
    })


@borrow_bp.route('/borrows/<borrow_id>/renew', methods=['POST'])
@login_required
def renew_book(borrow_id: str):
    _require_owned(borrow_id)
    record = BorrowRecord.renew(borrow_id)
    return jsonify({
        'success': True,
        'message': f'Book renewed until {record.due_date}',
        'borrow': record.to_dict()
    })


@borrow_bp.route('/borrows/me', methods=['GET'])
@login_required
def my_borrows():
    """List the acting user's borrow records.

    Fines of active loans are brought up to date first.

    Query params:
        active: ``1`` to only list books still out.
    """
    Fine.reconcile_user(g.user.id)
    active_only = request.args.get('active') == '1'
    records = BorrowRecord.get_user_records(g.user.id, active_only=active_only)
    return jsonify({
        'success': True,
        'borrows': [r.to_dict() for r in records]
    })
