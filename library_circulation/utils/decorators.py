"""Authentication and authorization decorators.

This module contains decorators for protecting API routes and checking
user roles. Authentication itself happens upstream; the acting user id is
read from the session.
"""
from functools import wraps
from typing import Callable

from flask import g, jsonify, session

from models.user import User


def login_required(f: Callable) -> Callable:
    """Decorator to require an acting user for a route.

    The resolved user is stored on ``g.user``.

    Example:
        @api_bp.route('/borrows/me')
        @login_required
        def my_borrows():
            return jsonify(...)
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user_id = session.get('user_id')
        user = User.get_by_id(user_id) if user_id else None
        if not user:
            session.clear()
            return jsonify({
                'success': False,
                'error': 'Unauthorized',
                'message': 'Please login to access this resource'
            }), 401
        g.user = user
        return f(*args, **kwargs)
    return decorated_function


def role_required(*roles: str) -> Callable:
    """Decorator to require specific user roles for a route.

    Admin users always have access. Must be applied below
    ``login_required``.

    Example:
        @admin_bp.route('/sweeps/fines', methods=['POST'])
        @login_required
        @role_required('admin')
        def sweep_fines():
            ...
    """
    def decorator(f: Callable) -> Callable:
        @wraps(f)
        def decorated_function(*args, **kwargs):
            user = g.user
            if user.is_admin() or user.role in roles:
                return f(*args, **kwargs)
            return jsonify({
                'success': False,
                'error': 'Forbidden',
                'message': 'You do not have permission to access this resource'
            }), 403
        return decorated_function
    return decorator
