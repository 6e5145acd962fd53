"""Fine, settlement and ledger endpoints.

Settlement routes are called by staff or by the payment gateway's callback
once a payment has been confirmed; they are admin only.
"""
from flask import Blueprint, g, jsonify, request

from models.fine import Fine
from models.payment import FinePayment
from models.transaction import Transaction
from utils.decorators import login_required, role_required

fine_bp = Blueprint('fines', __name__)


@fine_bp.route('/fines/me', methods=['GET'])
@login_required
def my_fines():
    summary = Fine.get_user_fines(g.user.id)
    return jsonify({
        'success': True,
        'fine_balance': summary['fine_balance'],
        'total_fines_paid': summary['total_fines_paid'],
        'unpaid_records': [r.to_dict() for r in summary['unpaid_records']]
    })


@fine_bp.route('/fines/<borrow_id>/paid', methods=['POST'])
@login_required
@role_required('admin')
def mark_fine_paid(borrow_id: str):
    """Book a confirmed payment for one borrow record.

    JSON body:
        method: cash, credit_card, debit_card or online.
        settlement_id: Optional reference of the confirmed payment.
    """
    data = request.get_json(silent=True) or {}
    result = FinePayment.mark_fine_paid(
        borrow_id, data.get('method'), data.get('settlement_id')
    )
    return jsonify({
        'success': True,
        'message': 'Payment already recorded' if result['duplicate'] else 'Fine paid',
        'payment': result
    })


@fine_bp.route('/fines/users/<user_id>/paid', methods=['POST'])
@login_required
@role_required('admin')
def mark_total_balance_paid(user_id: str):
    data = request.get_json(silent=True) or {}
    result = FinePayment.mark_total_balance_paid(
        user_id, data.get('method'), data.get('settlement_id')
    )
    return jsonify({
        'success': True,
        'message': 'Payment already recorded' if result['duplicate'] else 'Fine balance paid',
        'payment': result
    })


@fine_bp.route('/transactions/me', methods=['GET'])
@login_required
def my_transactions():
    transactions = Transaction.get_user_transactions(g.user.id)
    return jsonify({
        'success': True,
        'transactions': [t.to_dict() for t in transactions]
    })
