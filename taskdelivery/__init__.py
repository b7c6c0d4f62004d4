from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_socketio import SocketIO
from flask_migrate import Migrate
from flask_cors import CORS
from sqlalchemy.pool import StaticPool
import logging
import os
from dotenv import load_dotenv

load_dotenv()

db = SQLAlchemy()
migrate = Migrate()
socketio = SocketIO()

logger = logging.getLogger(__name__)


def create_app(config_name='development'):
    app = Flask(__name__)

    # Config
    app.config['SQLALCHEMY_DATABASE_URI'] = os.getenv(
        'DATABASE_URL',
        'sqlite:///task_delivery.db'
    )
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['SQLALCHEMY_ENGINE_OPTIONS'] = {
        'pool_pre_ping': True,
    }
    app.config['JWT_SECRET_KEY'] = os.getenv('JWT_SECRET_KEY', 'dev-secret')
    app.config['REDIS_URL'] = os.getenv('REDIS_URL')

    # Negotiation / earnings
    app.config['EARNINGS_SHARE'] = float(os.getenv('EARNINGS_SHARE', 0.7))
    app.config['NEAR_RADIUS_KM'] = float(os.getenv('NEAR_RADIUS_KM', 10.0))

    # Retry policy for transport failures (reads, claim, propose)
    app.config['RETRY_ATTEMPTS'] = int(os.getenv('RETRY_ATTEMPTS', 3))
    app.config['RETRY_INITIAL_DELAY'] = float(os.getenv('RETRY_INITIAL_DELAY', 0.2))
    app.config['QUEUE_MAX_RETRIES'] = int(os.getenv('QUEUE_MAX_RETRIES', 3))

    if config_name == 'testing':
        app.config['TESTING'] = True
        app.config['SQLALCHEMY_DATABASE_URI'] = 'sqlite://'
        app.config['SQLALCHEMY_ENGINE_OPTIONS'] = {
            'poolclass': StaticPool,
            'connect_args': {'check_same_thread': False},
        }
        app.config['REDIS_URL'] = None
        app.config['RETRY_INITIAL_DELAY'] = 0
    else:
        # Callers rely on the store to time out rather than hang
        db_timeout = int(os.getenv('DB_TIMEOUT', 10))
        if app.config['SQLALCHEMY_DATABASE_URI'].startswith('sqlite'):
            app.config['SQLALCHEMY_ENGINE_OPTIONS']['connect_args'] = {'timeout': db_timeout}
        else:
            app.config['SQLALCHEMY_ENGINE_OPTIONS']['pool_timeout'] = db_timeout
            app.config['SQLALCHEMY_ENGINE_OPTIONS']['connect_args'] = {'connect_timeout': db_timeout}

    logging.basicConfig(level=os.getenv('LOG_LEVEL', 'INFO'))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)
    CORS(app)
    socketio.init_app(app, cors_allowed_origins='*')

    # Create tables with error handling
    with app.app_context():
        from taskdelivery import models  # noqa: F401
        try:
            db.create_all()
        except Exception as e:
            logger.warning(f"Could not create database tables: {e}")

    # Services are built once and shared by routes and socket handlers
    from taskdelivery.services import init_services
    init_services(app)

    # Register routes
    from taskdelivery.routes import register_routes
    register_routes(app)

    from taskdelivery.socket_events import register_socket_events
    register_socket_events(socketio)

    # Health check
    @app.route('/health', methods=['GET'])
    def health():
        return {'status': 'ok'}, 200

    return app
