import os
import atexit
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_login import LoginManager


# Initialize extensions
db = SQLAlchemy()
login_manager = LoginManager()


def configure_logging(app):
    """Configure application logging"""

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers = [console_handler]

    # File handler
    log_dir = app.config.get('LOG_DIR')
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, 'serverbackup.log'),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=handlers)

    # Configure Flask app logger
    app.logger.setLevel(log_level)
    for handler in handlers:
        app.logger.addHandler(handler)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def start_scheduler(app):
    """
    Start the backup scheduler in this process and load all policies.

    Only one process of a deployment should call this.
    """
    backup_scheduler = app.extensions['backup_scheduler']
    if backup_scheduler.running:
        return backup_scheduler

    backup_scheduler.start(resync_seconds=app.config.get('SCHEDULER_RESYNC_SECONDS'))
    with app.app_context():
        backup_scheduler.load_all()

    atexit.register(backup_scheduler.shutdown)
    app.logger.info("Scheduler initialized and started successfully")
    return backup_scheduler


def create_app(config_name=None):
    """Flask application factory"""
    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from serverbackup.config import config
    app.config.from_object(config[config_name])

    # Configure logging
    configure_logging(app)

    # Ensure the SQLite directory exists
    database_uri = app.config['SQLALCHEMY_DATABASE_URI']
    if database_uri.startswith('sqlite:///') and ':memory:' not in database_uri:
        os.makedirs(os.path.dirname(database_uri.replace('sqlite:///', '')) or '.', exist_ok=True)

    # Initialize extensions
    db.init_app(app)
    login_manager.init_app(app)

    # User loader callback
    @login_manager.user_loader
    def load_user(user_id):
        from serverbackup.models import User
        return db.session.get(User, int(user_id))

    # JSON API: no login page to redirect to
    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({'error': 'Authentication required'}), 401

    from serverbackup.routes import (
        auth_routes, servers_routes, backup_routes, cron_routes, settings_routes, explorer_routes
    )
    app.register_blueprint(auth_routes.bp)
    app.register_blueprint(servers_routes.bp)
    app.register_blueprint(backup_routes.bp)
    app.register_blueprint(cron_routes.bp)
    app.register_blueprint(settings_routes.bp)
    app.register_blueprint(explorer_routes.bp)

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({'error': 'Not found'}), 404

    # Health check endpoint
    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    # Initialize database schema
    from serverbackup.migrations import init_database_schema
    init_database_schema(app)

    # Run launcher and scheduler exist in every process; only one process starts the scheduler
    from serverbackup.backup.launcher import RunLauncher
    from serverbackup.scheduler import BackupScheduler

    launcher = RunLauncher(app)
    app.extensions['run_launcher'] = launcher
    app.extensions['backup_scheduler'] = BackupScheduler(
        app, launcher, timezone=app.config['SCHEDULER_TIMEZONE']
    )

    # Development: Only in Flask reloader child process (not parent)
    should_start = app.config['SCHEDULER_ENABLED']
    if app.config.get('DEBUG', False) and os.environ.get('WERKZEUG_RUN_MAIN') != 'true':
        should_start = False

    if should_start:
        app.logger.info("Initializing scheduler in this process...")
        start_scheduler(app)
    else:
        app.logger.info("Scheduler initialization skipped in this process")

    return app
