"""Reservation queue endpoints."""
from flask import Blueprint, g, jsonify, request

from models.reservation import Reservation
from utils.decorators import login_required

reservation_bp = Blueprint('reservations', __name__)


@reservation_bp.route('/reservations', methods=['POST'])
@login_required
def reserve_book():
    """Queue the acting user for an unavailable book.

    JSON body:
        book_id: Book identifier.
    """
    data = request.get_json(silent=True) or {}
    reservation = Reservation.reserve(g.user.id, data.get('book_id'))
    return jsonify({
        'success': True,
        'message': 'Book reserved successfully',
        'reservation': reservation.to_dict()
    }), 201


@reservation_bp.route('/reservations/<reservation_id>/cancel', methods=['POST'])
@login_required
def cancel_reservation(reservation_id: str):
    reservation = Reservation.cancel(reservation_id, g.user.id)
    return jsonify({
        'success': True,
        'message': 'Reservation cancelled',
        'reservation': reservation.to_dict()
    })


@reservation_bp.route('/reservations/me', methods=['GET'])
@login_required
def my_reservations():
    status = request.args.get('status') or None
    reservations = Reservation.get_user_reservations(g.user.id, status=status)
    return jsonify({
        'success': True,
        'reservations': [r.to_dict() for r in reservations]
    })
