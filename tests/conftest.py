import os
import sys
import pytest

# Ensure the project root (containing the `clubtimer` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from clubtimer import create_app, db, socketio, store


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SESSION_CODE_LENGTH = 6
    MIN_SESSION_CODE_LENGTH = 4
    RESUME_CONTINUES_ELAPSED = True
    CONTROLLER_DEBOUNCE_MS = 0


class FakeClock:
    """Millisecond wall clock the tests move by hand."""

    def __init__(self, start_ms=1_700_000_000_000):
        self.ms = start_ms

    def __call__(self):
        return self.ms

    def advance(self, seconds):
        self.ms += int(seconds * 1000)
        return self.ms


@pytest.fixture()
def flask_app():
    application = create_app(TestConfig)
    with application.app_context():
        # Ensure models are imported so tables are created
        import clubtimer.models  # noqa: F401
        db.create_all()
        yield application
        from clubtimer.services.timer.scheduler import detach_all
        from clubtimer import socketio_events
        detach_all()
        store.clear_subscriptions()
        socketio_events._sid_to_ctx.clear()
        socketio_events._authority_count.clear()
        socketio_events._release_deadline.clear()
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def sio_client(flask_app):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=flask_app.test_client(),
        namespace='/ws'
    )
    yield test_client
    try:
        test_client.disconnect(namespace='/ws')
    except Exception:
        pass


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def session_store(flask_app):
    return store


@pytest.fixture()
def room(session_store):
    return session_store.create_session('TST234', title='Test room')
