from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_login import LoginManager
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
import click
from config import Config
from crowdguess.realtime.registry import ConnectionRegistry
from crowdguess.realtime.rooms import RoomBroadcaster
from crowdguess.services.sessions.scheduler import SessionTimerScheduler

db = SQLAlchemy()
login_manager = LoginManager()
migrate = Migrate()
socketio = SocketIO(async_mode=None)
connections = ConnectionRegistry()
rooms = RoomBroadcaster(connections)
timers = SessionTimerScheduler()


def _allowed_origins(config) -> list:
    raw = config.get('CORS_ORIGINS') or ''
    if isinstance(raw, (list, tuple)):
        return list(raw)
    return [origin.strip() for origin in raw.split(',') if origin.strip()]


def create_app(config_class=Config):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)
    flask_app.logger.setLevel(flask_app.config.get('LOG_LEVEL', 'INFO'))
    allowed_origins = _allowed_origins(flask_app.config)

    db.init_app(flask_app)
    login_manager.init_app(flask_app)
    migrate.init_app(flask_app, db)
    CORS(flask_app, supports_credentials=True, origins=allowed_origins)

    # Initialize Socket.IO after app is created
    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)
    rooms.init_app(flask_app, socketio)

    # The scheduler calls back into the state machine on expiry and on every tick
    from crowdguess.services.sessions.lifecycle import expire_session, tick_session
    timers.init_app(flask_app, socketio, on_expire=expire_session, on_tick=tick_session)

    from crowdguess.api import register_error_handlers
    register_error_handlers(flask_app)

    from crowdguess.main import main
    flask_app.register_blueprint(main)

    from crowdguess.api.games import games
    flask_app.register_blueprint(games, url_prefix='/api')

    from crowdguess.api.sessions import sessions
    flask_app.register_blueprint(sessions, url_prefix='/api/sessions')

    from crowdguess.socketio_events import register_socketio_handlers
    register_socketio_handlers(testing=flask_app.config.get('TESTING', False))

    # Flask-Login admin loader
    from crowdguess.models import AdminUser

    @login_manager.user_loader
    def load_admin(admin_id):
        return db.session.get(AdminUser, admin_id)

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({'error': 'Admin login required', 'code': 'unauthorized'}), 401

    @click.command('db-reset')
    def db_reset_command():
        """Drops, recreates, and seeds the database."""
        from crowdguess.models import Game, GameSession
        with flask_app.app_context():
            db.drop_all()
            db.create_all()

            admin = AdminUser(name='Quizmaster')
            game = Game(name='Demo night')
            db.session.add_all([admin, game])
            db.session.flush()
            db.session.add(GameSession(
                game_id=game.id,
                question='Will it rain tomorrow?',
                timer_seconds=flask_app.config['DEFAULT_TIMER_SEC'],
            ))
            db.session.commit()
            print(f'Database has been reset and seeded! admin={admin.id} game={game.code}')

    flask_app.cli.add_command(db_reset_command)

    return flask_app
