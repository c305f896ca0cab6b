import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask
from flask_sqlalchemy import SQLAlchemy


# Initialize extensions
db = SQLAlchemy()


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

    # File handler (disabled when LOG_DIR is unset, e.g. in tests)
    log_dir = app.config.get('LOG_DIR')
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, 'sqlkeeper.log'),
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

    # Flask app logger is "sqlkeeper"; it and the library loggers propagate to root
    app.logger.setLevel(log_level)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_app(config_name=None, overrides=None):
    """Flask application factory"""

    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from sqlkeeper.config import config
    app.config.from_object(config[config_name])
    if overrides:
        app.config.update(overrides)

    # Configure logging
    configure_logging(app)

    # Ensure required directories exist
    os.makedirs(app.config['BACKUP_DIR'], exist_ok=True)
    database_uri = app.config['SQLALCHEMY_DATABASE_URI']
    if database_uri.startswith('sqlite:///') and database_uri != 'sqlite:///:memory:':
        os.makedirs(os.path.dirname(database_uri.replace('sqlite:///', '')), exist_ok=True)

    # Initialize extensions
    db.init_app(app)

    # Register blueprints
    from sqlkeeper.routes import backup_routes, history_routes, status_routes
    app.register_blueprint(backup_routes.bp)
    app.register_blueprint(history_routes.bp)
    app.register_blueprint(status_routes.bp)

    # Register CLI commands
    from sqlkeeper.cli import backup_cli
    app.cli.add_command(backup_cli)

    # Health check endpoint
    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    # JSON errors for the API
    @app.errorhandler(404)
    def not_found(error):
        return {'error': 'Not found'}, 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return {'error': 'Method not allowed'}, 405

    # Create history tables
    from sqlkeeper import models
    with app.app_context():
        db.create_all()

    # Initialize and start scheduler (only in designated worker or development child process)
    if app.config.get('BACKUP_SCHEDULE_ENABLED'):
        from sqlkeeper.scheduler import init_scheduler, start_scheduler, stop_scheduler
        import atexit

        is_reloader_child = os.environ.get('WERKZEUG_RUN_MAIN') == 'true'
        is_scheduler_worker = os.environ.get('SCHEDULER_WORKER', 'true').lower() == 'true'

        if app.config.get('DEBUG', False):
            should_init_scheduler = is_reloader_child
        else:
            should_init_scheduler = is_scheduler_worker

        if should_init_scheduler:
            app.logger.info("Initializing scheduler in this process...")
            init_scheduler(app)
            start_scheduler()
            atexit.register(stop_scheduler)
        else:
            app.logger.info("Scheduler initialization skipped in this process (not designated scheduler worker)")

    return app
