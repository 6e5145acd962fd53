"""Best-effort notification delivery.

Circulation operations never wait on a notification: they hand the message
to a NotificationDispatcher after their own write has been committed, and
the dispatcher delivers it from a background worker. Delivery failures are
logged and dropped.
"""
import logging
import queue
import smtplib
import threading
from email.message import EmailMessage
from typing import List, NamedTuple, Optional

from flask import current_app

from utils.errors import TransientError

logger = logging.getLogger(__name__)


class OutgoingNotification(NamedTuple):
    email: str
    subject: str
    message: str


class NotificationPort:
    """Channel that actually delivers a message to a user."""

    def send(self, user_email: str, subject: str, message: str) -> None:
        raise NotImplementedError


class LoggingNotificationPort(NotificationPort):
    """Writes notifications to the application log (development default)."""

    def send(self, user_email: str, subject: str, message: str) -> None:
        logger.info("Notification to %s: %s", user_email, subject)


class SocketIONotificationPort(NotificationPort):
    """Pushes a ``notification`` event to the room named after the e-mail."""

    def __init__(self, socketio) -> None:
        self.socketio = socketio

    def send(self, user_email: str, subject: str, message: str) -> None:
        self.socketio.emit(
            'notification',
            {'title': subject, 'message': message},
            to=user_email
        )


class SmtpNotificationPort(NotificationPort):
    """Plain SMTP delivery."""

    def __init__(self, server: str, port: int, sender: str, timeout: float = 10.0) -> None:
        self.server = server
        self.port = port
        self.sender = sender
        self.timeout = timeout

    def send(self, user_email: str, subject: str, message: str) -> None:
        mail = EmailMessage()
        mail['From'] = self.sender
        mail['To'] = user_email
        mail['Subject'] = subject
        mail.set_content(message)
        with smtplib.SMTP(self.server, self.port, timeout=self.timeout) as smtp:
            smtp.send_message(mail)


class RecordingNotificationPort(NotificationPort):
    """Keeps every message in memory. Used by the test-suite."""

    def __init__(self, fail: bool = False) -> None:
        self.sent: List[OutgoingNotification] = []
        self.fail = fail
        self._lock = threading.Lock()

    def send(self, user_email: str, subject: str, message: str) -> None:
        if self.fail:
            raise ConnectionError("notification channel unavailable")
        with self._lock:
            self.sent.append(OutgoingNotification(user_email, subject, message))

    def subjects_for(self, user_email: str) -> List[str]:
        with self._lock:
            return [n.subject for n in self.sent if n.email == user_email]


class NotificationDispatcher:
    """Fire-and-forget outbox in front of a NotificationPort.

    Args:
        port: Channel used for delivery.
        synchronous: Deliver inline instead of on the worker thread.
            Failures are still swallowed.
    """

    def __init__(self, port: NotificationPort, synchronous: bool = False) -> None:
        self.port = port
        self.synchronous = synchronous
        self._queue: "queue.Queue[Optional[OutgoingNotification]]" = queue.Queue()
        self._worker: Optional[threading.Thread] = None
        self._worker_lock = threading.Lock()

    def dispatch(self, user_email: str, subject: str, message: str) -> None:
        """Queue a notification for delivery. Never raises."""
        if not user_email:
            logger.warning("Dropping notification %r without recipient", subject)
            return
        item = OutgoingNotification(user_email, subject, message)
        if self.synchronous:
            self._deliver(item)
            return
        self._ensure_worker()
        self._queue.put(item)

    def dispatch_all(self, items: List[OutgoingNotification]) -> None:
        for item in items:
            self.dispatch(item.email, item.subject, item.message)

    def drain(self) -> None:
        """Block until every queued notification has been attempted."""
        if not self.synchronous:
            self._queue.join()

    def close(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            self._queue.put(None)
            self._worker.join(timeout=5)
        self._worker = None

    def _ensure_worker(self) -> None:
        with self._worker_lock:
            if self._worker is None or not self._worker.is_alive():
                self._worker = threading.Thread(
                    target=self._run, name='notification-dispatcher', daemon=True
                )
                self._worker.start()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is None:
                    return
                self._deliver(item)
            finally:
                self._queue.task_done()

    def _deliver(self, item: OutgoingNotification) -> None:
        try:
            self.port.send(item.email, item.subject, item.message)
        except Exception as e:
            error = TransientError(f"Failed to notify {item.email}: {e}")
            logger.warning("%s (subject=%r)", error.message, item.subject)


def get_notifier() -> NotificationDispatcher:
    """Return the dispatcher installed on the current application."""
    return current_app.extensions['notifier']
