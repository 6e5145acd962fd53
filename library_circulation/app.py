"""Library Circulation Engine - Flask Application.

Fat Models, Skinny Controllers pattern: the lifecycle rules live in
``models``; blueprints in ``routes`` only translate HTTP to model calls.
"""
import atexit
import logging

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

from config.config import Config
from extensions import socketio
from models.database import init_app as init_database
from models.database import init_db, insert_mock_data
from routes import admin_bp, borrow_bp, fine_bp, reservation_bp
from scheduled_tasks import shutdown_scheduler, start_scheduler
from utils.clock import SystemClock
from utils.errors import LibraryError
from utils.notifier import (LoggingNotificationPort, NotificationDispatcher,
                            SmtpNotificationPort, SocketIONotificationPort)

logger = logging.getLogger(__name__)


def _default_notification_port(app):
    if app.config['MAIL_SERVER']:
        return SmtpNotificationPort(
            app.config['MAIL_SERVER'], app.config['MAIL_PORT'], app.config['MAIL_SENDER']
        )
    if app.config['SOCKETIO_NOTIFICATIONS']:
        return SocketIONotificationPort(socketio)
    return LoggingNotificationPort()


def register_error_handlers(app):
    """Render errors as JSON."""

    @app.errorhandler(LibraryError)
    def handle_library_error(error: LibraryError):
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def handle_http_exception(error: HTTPException):
        return error

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        logger.exception("Unhandled error: %s", error)
        return jsonify({
            'success': False,
            'error': 'InternalError',
            'message': 'An unexpected error occurred'
        }), 500


def create_app(config_class=Config, clock=None, notification_port=None,
               load_demo_data=False):
    """Application factory.

    Args:
        config_class: Configuration object loaded with ``from_object``.
        clock: Time source (defaults to the wall clock).
        notification_port: Delivery channel for notifications (defaults to
            SMTP, Socket.IO or the log depending on configuration).
        load_demo_data: Seed a few users and books into an empty database.
    """
    app = Flask(__name__)
    app.config.from_object(config_class)

    logging.basicConfig(
        level=app.config['LOG_LEVEL'],
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    socketio.init_app(app)
    app.extensions['clock'] = clock or SystemClock()
    notifier = NotificationDispatcher(
        notification_port or _default_notification_port(app),
        synchronous=app.config['NOTIFIER_SYNCHRONOUS']
    )
    app.extensions['notifier'] = notifier

    init_database(app)
    with app.app_context():
        init_db()
        if load_demo_data:
            insert_mock_data()

    register_error_handlers(app)
    app.register_blueprint(borrow_bp, url_prefix='/api')
    app.register_blueprint(reservation_bp, url_prefix='/api')
    app.register_blueprint(fine_bp, url_prefix='/api')
    app.register_blueprint(admin_bp, url_prefix='/api/admin')

    @app.route('/health')
    def health():
        return jsonify({'status': 'ok'})

    if app.config['SCHEDULER_ENABLED']:
        start_scheduler(app)
        atexit.register(shutdown_scheduler)
    atexit.register(notifier.close)

    return app


if __name__ == '__main__':
    application = create_app(load_demo_data=True)
    socketio.run(application, debug=False, port=5000, allow_unsafe_werkzeug=True)
