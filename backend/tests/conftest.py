import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

# Ensure the backend root (containing the `crowdguess` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from crowdguess import create_app, db, socketio


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    CORS_ORIGINS = 'http://localhost:5173'
    LOG_LEVEL = 'DEBUG'
    TIMER_MIN_SEC = 10
    TIMER_MAX_SEC = 300
    DEFAULT_TIMER_SEC = 30
    JOIN_CUTOFF_SEC = 10
    TICK_INTERVAL_SEC = 1
    CLOSE_RETRY_ATTEMPTS = 3
    CLOSE_RETRY_DELAY_SEC = 0


class FrozenClock:
    """Stands in for ``utcnow``; only moves when told to."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture()
def flask_app():
    application = create_app(TestConfig)
    with application.app_context():
        # Ensure models are imported so tables are created
        import crowdguess.models  # noqa: F401
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def clock(monkeypatch):
    from crowdguess.services.sessions import lifecycle, scheduler
    frozen = FrozenClock(datetime(2025, 9, 14, 12, 0, 0, tzinfo=timezone.utc))
    monkeypatch.setattr(lifecycle, 'utcnow', frozen)
    monkeypatch.setattr(scheduler, 'utcnow', frozen)
    return frozen


@pytest.fixture()
def make_game(flask_app):
    from crowdguess.models import Game

    def _make(name='Quiz night'):
        game = Game(name=name)
        db.session.add(game)
        db.session.commit()
        return game
    return _make


@pytest.fixture()
def make_session(make_game):
    from crowdguess.services.sessions import lifecycle

    def _make(question='Will it rain tomorrow?', timer_seconds=30, game=None):
        game = game or make_game()
        return lifecycle.create_session(game.id, question, timer_seconds)
    return _make


@pytest.fixture()
def sio_factory(flask_app):
    """Socket.IO test clients on /ws, all disconnected at teardown."""
    created = []

    def _connect():
        test_client = socketio.test_client(
            flask_app,
            flask_test_client=flask_app.test_client(),
            namespace='/ws'
        )
        created.append(test_client)
        return test_client
    yield _connect
    for test_client in created:
        try:
            if test_client.is_connected('/ws'):
                test_client.disconnect(namespace='/ws')
        except RuntimeError:
            pass


@pytest.fixture()
def sio_client(sio_factory):
    return sio_factory()


def received(test_client, name=None):
    """Drain a test client's queue, optionally keeping only one event's payloads."""
    packets = test_client.get_received('/ws')
    if name is None:
        return packets
    return [pkt['args'][0] if pkt['args'] else None for pkt in packets if pkt['name'] == name]
