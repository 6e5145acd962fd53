"""Utilities package for the circulation engine.

This package contains the clock, error taxonomy, notification dispatch,
advisory locks and route decorators used across the application.
"""
from utils.clock import Clock, FrozenClock, SystemClock, get_clock
from utils.errors import (ConflictError, ForbiddenError, LibraryError,
                          NotFoundError, StateError, TransientError,
                          UnavailableError, ValidationError)

__all__ = [
    'Clock', 'FrozenClock', 'SystemClock', 'get_clock',
    'LibraryError', 'ValidationError', 'ForbiddenError', 'NotFoundError',
    'ConflictError', 'UnavailableError', 'StateError', 'TransientError',
]
