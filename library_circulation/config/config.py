"""Configuration file for the circulation application.

This module contains all configuration settings for the library circulation
engine, including database paths, scheduling intervals and lending rules.
"""
import os
from typing import Set


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    return float(value) if value else default


class Config:
    """Base configuration class for the Flask application.

    Contains all application settings including:
    - Session and database configuration
    - Lending rules (loan period, renewals, fines)
    - Reservation window and background sweep intervals
    - Notification channel settings

    Attributes:
        SECRET_KEY (str): Secret key for session signing.
        DATABASE_PATH (str): Absolute path to SQLite database file.
        LOAN_DURATION_DAYS (int): Loan period for a new borrow.
        RENEWAL_EXTENSION_DAYS (int): Days added to the due date by a renewal.
        MAX_RENEWAL_COUNT (int): Maximum renewals per borrow record.
        FINE_PER_HOUR (float): Fine charged per started overdue hour.
        RESERVATION_WINDOW_HOURS (int): Lifetime of a queued reservation.
        EXPIRY_SWEEP_MINUTES (int): Interval of the reservation expiry sweep.
        FINE_SWEEP_MINUTES (int): Interval of the overdue fine sweep.
        RECONCILIATION_MINUTES (int): Interval of the fine balance repair job.
        ALLOCATION_SWEEP_MINUTES (int): Interval of the allocation queue sweep.
        OVERDUE_NOTICE_MINUTES (int): Interval of the overdue notice job.
        PAYMENT_METHODS (Set[str]): Accepted settlement methods.
    """

    SECRET_KEY: str = os.environ.get('SECRET_KEY') or 'dev-secret-key-change-in-production'
    TESTING: bool = False

    DATABASE_PATH: str = os.environ.get('DATABASE_PATH') or os.path.join(
        os.path.dirname(os.path.dirname(__file__)), 'data', 'circulation.db'
    )
    DATABASE_TIMEOUT_SECONDS: float = 10.0
    DATETIME_FORMAT: str = '%Y-%m-%d %H:%M:%S'

    LOG_LEVEL: str = os.environ.get('LOG_LEVEL', 'INFO')

    # Lending rules
    LOAN_DURATION_DAYS: int = _env_int('LOAN_DURATION_DAYS', 7)
    RENEWAL_EXTENSION_DAYS: int = _env_int('RENEWAL_EXTENSION_DAYS', 7)
    MAX_RENEWAL_COUNT: int = 1
    FINE_PER_HOUR: float = _env_float('FINE_PER_HOUR', 1.0)
    RESERVATION_WINDOW_HOURS: int = _env_int('RESERVATION_WINDOW_HOURS', 48)

    # Background jobs
    SCHEDULER_ENABLED: bool = os.environ.get('SCHEDULER_ENABLED', '1') == '1'
    EXPIRY_SWEEP_MINUTES: int = 60
    FINE_SWEEP_MINUTES: int = 60
    RECONCILIATION_MINUTES: int = 24 * 60
    ALLOCATION_SWEEP_MINUTES: int = 15
    OVERDUE_NOTICE_MINUTES: int = 60

    # Notifications
    NOTIFIER_SYNCHRONOUS: bool = False
    SOCKETIO_NOTIFICATIONS: bool = os.environ.get('SOCKETIO_NOTIFICATIONS', '0') == '1'
    MAIL_SERVER: str = os.environ.get('MAIL_SERVER', '')
    MAIL_PORT: int = _env_int('MAIL_PORT', 25)
    MAIL_SENDER: str = os.environ.get('MAIL_SENDER', 'library@localhost')

    PAYMENT_METHODS: Set[str] = {'cash', 'credit_card', 'debit_card', 'online'}


class TestingConfig(Config):
    """Configuration used by the test-suite.

    Only the scale of the windows differs from production; the lending
    logic is identical.
    """

    TESTING: bool = True
    SECRET_KEY: str = 'testing-secret'
    SCHEDULER_ENABLED: bool = False
    NOTIFIER_SYNCHRONOUS: bool = True
    LOG_LEVEL: str = 'DEBUG'

    RESERVATION_WINDOW_HOURS: int = 2
    EXPIRY_SWEEP_MINUTES: int = 1
    FINE_SWEEP_MINUTES: int = 1
    RECONCILIATION_MINUTES: int = 5
    ALLOCATION_SWEEP_MINUTES: int = 1
    OVERDUE_NOTICE_MINUTES: int = 1
