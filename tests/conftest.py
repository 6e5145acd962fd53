"""Shared fixtures: an application per test on a temporary sqlite file."""
from datetime import datetime
from typing import Optional

import pytest

from app import create_app
from config.config import TestingConfig
from models.book import Book
from models.user import User
from utils.clock import FrozenClock
from utils.notifier import RecordingNotificationPort

START = datetime(2024, 1, 1, 9, 0, 0)


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def port():
    return RecordingNotificationPort()


@pytest.fixture
def make_app(tmp_path, clock):
    """Build an application; several may be built in one test."""
    apps = []

    def _make(notification_port=None, **overrides):
        db_path = str(tmp_path / f'circulation-{len(apps)}.db')

        class _Config(TestingConfig):
            DATABASE_PATH = db_path

        for key, value in overrides.items():
            setattr(_Config, key, value)

        application = create_app(
            _Config,
            clock=clock,
            notification_port=notification_port or RecordingNotificationPort()
        )
        apps.append(application)
        return application

    yield _make
    for application in apps:
        application.extensions['notifier'].close()


@pytest.fixture
def app(make_app, port):
    return make_app(port)


@pytest.fixture
def ctx(app):
    with app.app_context():
        yield app


@pytest.fixture
def client(app):
    return app.test_client()


class Seed:
    """Creates users and books with unique e-mails and ISBNs."""

    def __init__(self) -> None:
        self._counter = 0

    def _next(self) -> int:
        self._counter += 1
        return self._counter

    def user(self, name: Optional[str] = None, role: str = 'user') -> User:
        n = self._next()
        return User.create(name or f'Reader {n}', f'reader{n}@library.test', role)

    def admin(self) -> User:
        return self.user(name='Admin', role='admin')

    def book(self, quantity: int = 1, title: Optional[str] = None) -> Book:
        n = self._next()
        return Book.create(title or f'Book {n}', f'Author {n}', f'978-0-00-{n:06d}-0', quantity)


@pytest.fixture
def seed(ctx):
    return Seed()


@pytest.fixture
def login(client):
    """Set the acting user of ``client``."""
    def _login(user) -> None:
        with client.session_transaction() as sess:
            sess['user_id'] = user.id
    return _login
