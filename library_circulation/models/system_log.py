"""System log model for tracking circulation activities.

This module provides the audit trail for administrative overrides,
background jobs and balance repairs.
"""
import uuid
from typing import Any, Dict, List, Optional

from models.database import format_ts, get_db
from utils.clock import get_clock


class SystemLog:
    """System activity log for tracking all system events.

    This class provides static methods for adding and retrieving
    system log entries. No instances are created.
    """

    @staticmethod
    def add(action: str, details: str, log_type: str = 'info',
            user_id: Optional[str] = None, db=None) -> str:
        """Add a new system log entry.

        Args:
            action: The action being logged.
            details: Detailed description of the action.
            log_type: Log level ('info', 'warning', 'error', 'admin', 'system').
            user_id: ID of user who performed the action (optional).
            db: Connection of an open transaction. When given the entry
                becomes part of that transaction and is not committed here.

        Returns:
            The ID of the created log entry.
        """
        own_transaction = db is None
        db = db or get_db()
        log_id = str(uuid.uuid4())
        timestamp = format_ts(get_clock().now())

        db.execute('''
            INSERT INTO system_logs (id, timestamp, action, details, log_type, user_id)
            VALUES (?, ?, ?, ?, ?, ?)
        ''', (log_id, timestamp, action, details, log_type, user_id))
        if own_transaction:
            db.commit()
        return log_id

    @staticmethod
    def get_recent(limit: int = 50, log_type: Optional[str] = None) -> List[Dict[str, Any]]:
        """Get recent system logs.

        Args:
            limit: Maximum number of logs to retrieve.
            log_type: Only return entries of this type.

        Returns:
            List of log entries as dictionaries.
        """
        db = get_db()
        if log_type:
            logs = db.execute('''
                SELECT * FROM system_logs WHERE log_type = ?
                ORDER BY timestamp DESC, rowid DESC
                LIMIT ?
            ''', (log_type, limit)).fetchall()
        else:
            logs = db.execute('''
                SELECT * FROM system_logs
                ORDER BY timestamp DESC, rowid DESC
                LIMIT ?
            ''', (limit,)).fetchall()

        return [dict(log) for log in logs]

