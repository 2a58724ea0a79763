from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
import click
from config import Config

db = SQLAlchemy()
migrate = Migrate()
allowed_origins = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:5174",
    "http://127.0.0.1:5174",
]
socketio = SocketIO(cors_allowed_origins=allowed_origins, async_mode=None)

def create_app(config_class=Config):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)

    db.init_app(flask_app)
    migrate.init_app(flask_app, db)
    CORS(flask_app, supports_credentials=True, origins=allowed_origins)

    # Initialize Socket.IO after app is created
    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    # Every club collection lives under /api/clubs/<club_id>/
    from cueclub.api.collections import collections
    flask_app.register_blueprint(collections, url_prefix='/api/clubs')

    # Importing here binds the handlers to the initialized socketio instance
    from cueclub.socketio_events import register_socketio_handlers
    register_socketio_handlers(testing=flask_app.config.get('TESTING', False))

    @click.command('db-reset')
    @click.option('--name', default=None, help='Name of the seeded club.')
    def db_reset_command(name):
        """Drops, recreates, and seeds the database with a demo club."""
        from cueclub.seed import seed_demo_club
        with flask_app.app_context():
            db.drop_all()
            db.create_all()
            club = seed_demo_club(name or flask_app.config.get('DEMO_CLUB_NAME', 'CueMaster Club'))
            print(f'Database has been reset and seeded! club_id={club.id}')

    flask_app.cli.add_command(db_reset_command)

    return flask_app
