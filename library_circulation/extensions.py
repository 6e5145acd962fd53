"""Flask extensions initialization module.

This module initializes all extensions to prevent circular imports.
They are bound to the application in create_app().
"""
from apscheduler.schedulers.background import BackgroundScheduler
from flask_socketio import SocketIO

# Bound to the app in create_app()
socketio: SocketIO = SocketIO(
    cors_allowed_origins="*",
    async_mode='threading'
)

scheduler: BackgroundScheduler = BackgroundScheduler()
