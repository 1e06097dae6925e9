import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy


# Initialize extensions
db = SQLAlchemy()


CONSOLE_FORMAT = '[%(asctime)s] %(levelname)s %(name)s: %(message)s'
FILE_FORMAT = '[%(asctime)s] %(levelname)s %(threadName)s [%(name)s:%(lineno)d] %(message)s'

LOG_FILE = 'dbackup.log'
LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 10


def _tagged(handler, fmt, level):
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt))
    handler._dbackup = True
    return handler


def configure_logging(app):
    """
    Attach dbackup's log handlers to the package logger.

    ``app.logger`` is the 'dbackup' logger, so every module logger below
    it propagates here. Calling this again replaces the handlers it added
    before instead of stacking them.
    """
    level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO
    handlers = [_tagged(logging.StreamHandler(), CONSOLE_FORMAT, level)]

    log_dir = app.config.get('LOG_DIR')
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        rotating = RotatingFileHandler(
            os.path.join(log_dir, LOG_FILE),
            maxBytes=LOG_FILE_MAX_BYTES,
            backupCount=LOG_FILE_BACKUPS
        )
        handlers.append(_tagged(rotating, FILE_FORMAT, level))

    for stale in [h for h in app.logger.handlers if getattr(h, '_dbackup', False)]:
        app.logger.removeHandler(stale)
        stale.close()

    app.logger.setLevel(level)
    for handler in handlers:
        app.logger.addHandler(handler)

    app.logger.info("Logging configured (level: %s, file: %s)",
                    logging.getLevelName(level), os.path.join(log_dir, LOG_FILE) if log_dir else 'none')


def create_app(config_name=None):
    """
    Build the dbackup Flask app.

    Args:
        config_name: Key of dbackup.config.config (default: FLASK_ENV or production)
    """

    app = Flask(__name__)

    # Flask config class
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from dbackup.config import config
    app.config.from_object(config[config_name])

    # Handlers on the dbackup logger
    configure_logging(app)

    # Ensure the history database directory exists
    database_uri = app.config['SQLALCHEMY_DATABASE_URI']
    if database_uri.startswith('sqlite:///') and ':memory:' not in database_uri:
        database_dir = os.path.dirname(database_uri.replace('sqlite:///', '', 1))
        if database_dir:
            os.makedirs(database_dir, exist_ok=True)

    # Initialize extensions
    db.init_app(app)

    # Register blueprints and CLI commands
    from dbackup.routes import status_routes
    app.register_blueprint(status_routes.bp)

    from dbackup.cli import register_commands
    register_commands(app)

    # Health check endpoint
    @app.route('/health')
    def health():
        from dbackup.scheduler import get_scheduler

        scheduler = get_scheduler(app)
        return jsonify({
            'status': 'healthy',
            'scheduler': scheduler.diagnostics() if scheduler else None
        }), 200

    # Initialize database schema
    from dbackup import models  # noqa: F401
    with app.app_context():
        db.create_all()

    # Start the scheduler when running as a long-lived service
    if app.config.get('SCHEDULER_AUTOSTART', False):
        from dbackup.scheduler import init_scheduler, start_scheduler, stop_scheduler
        import atexit

        app.logger.info("Initializing scheduler in this process...")
        init_scheduler(app)
        start_scheduler(app)

        atexit.register(stop_scheduler, app, app.config.get('SCHEDULER_SHUTDOWN_TIMEOUT'))
        app.logger.info("Scheduler initialized and started successfully")

    return app
