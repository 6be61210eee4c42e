import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask


def configure_logging(app):
    """Configure application logging"""

    # Create logs directory if it doesn't exist
    log_dir = app.config['LOG_DIR']
    os.makedirs(log_dir, exist_ok=True)

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'backup.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    # Package logger; pgbackups.* module loggers propagate here
    package_logger = logging.getLogger('pgbackups')
    package_logger.setLevel(log_level)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
    package_logger.addHandler(console_handler)
    package_logger.addHandler(file_handler)

    app.logger.setLevel(log_level)

    app.logger.debug(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_app(config_name=None, overrides=None):
    """
    Application factory.

    Args:
        config_name: Key into pgbackups.config.config (default: PGBACKUPS_ENV)
        overrides: Mapping applied after every other config source
    """
    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('PGBACKUPS_ENV', 'production')

    from pgbackups.config import config, load_runtime_config
    app.config.from_object(config[config_name])
    if overrides:
        app.config.update(overrides)

    # aws.conf / email.conf, then explicit overrides win again
    load_runtime_config(app)
    if overrides:
        app.config.update(overrides)

    configure_logging(app)

    # Ensure required directories exist
    os.makedirs(app.config['BACKUP_DIR'], exist_ok=True)

    from pgbackups.routes import status_routes
    app.register_blueprint(status_routes.bp)

    # Health check endpoint
    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    from pgbackups.cli import backup_cli, retention_cli
    app.cli.add_command(backup_cli)
    app.cli.add_command(retention_cli)

    return app
