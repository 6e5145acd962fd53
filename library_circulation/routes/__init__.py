"""Routes package initialization.

This module exports all blueprints for registration in the main app.

Blueprint organization:
    - borrow_bp: Borrow, return, renew, own loans
    - reservation_bp: Reserve, cancel, own reservations
    - fine_bp: Own fines, settlement, own ledger
    - admin_bp: Overrides, restock, sweeps, listings
"""
from routes.admin_routes import admin_bp
from routes.borrow_routes import borrow_bp
from routes.fine_routes import fine_bp
from routes.reservation_routes import reservation_bp

__all__ = [
    'borrow_bp',
    'reservation_bp',
    'fine_bp',
    'admin_bp',
]
