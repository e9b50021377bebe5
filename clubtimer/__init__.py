from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
import click
import time
from clubtimer.config import Config

db = SQLAlchemy()
migrate = Migrate()
allowed_origins = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:5174",
    "http://127.0.0.1:5174",
]
socketio = SocketIO(cors_allowed_origins=allowed_origins, async_mode=None)

# Imported after the extensions above: the store module needs `db`
from clubtimer.store import SessionStore  # noqa: E402

store = SessionStore()


def _broadcast_session(session_id, doc):
    # Use socketio.emit since this may be called from a background task
    socketio.emit('session_update', {'session_id': session_id, 'session': doc},
                  to=f"session:{session_id}", namespace='/ws')


def create_app(config_class=Config):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)

    db.init_app(flask_app)
    migrate.init_app(flask_app, db)
    store.init_app(flask_app, broadcast=_broadcast_session)
    CORS(flask_app, supports_credentials=True, origins=allowed_origins)

    # Initialize Socket.IO after app is created
    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    from clubtimer.main import main
    flask_app.register_blueprint(main)

    from clubtimer.api.sessions import sessions
    flask_app.register_blueprint(sessions, url_prefix='/api/sessions')

    # Register Socket.IO event handlers
    from clubtimer.socketio_events import register_socketio_handlers
    register_socketio_handlers(testing=flask_app.config.get('TESTING', False))

    @click.command('db-reset')
    def db_reset_command():
        """Drops, recreates, and seeds the database with a demo session."""
        from clubtimer.models import generate_session_code
        with flask_app.app_context():
            db.drop_all()
            db.create_all()
            code = generate_session_code(flask_app.config.get('SESSION_CODE_LENGTH', 6))
            store.create_session(code, title='Demo room')
            print(f'Database has been reset and seeded! Demo session: {code}')

    @click.command('purge-sessions')
    @click.option('--older-than', 'older_than', type=int, default=None,
                  help='Age in seconds; defaults to STALE_SESSION_SEC.')
    def purge_sessions_command(older_than):
        """Deletes sessions (and their pending commands) idle for too long."""
        age = older_than if older_than is not None else int(flask_app.config.get('STALE_SESSION_SEC', 86400))
        cutoff = int((time.time() - age) * 1000)
        with flask_app.app_context():
            codes = store.stale_sessions(cutoff)
            for code in codes:
                store.delete_session(code)
            print(f'Purged {len(codes)} session(s).')

    flask_app.cli.add_command(db_reset_command)
    flask_app.cli.add_command(purge_sessions_command)

    return flask_app
