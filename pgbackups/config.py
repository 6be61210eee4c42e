import logging
import os
import stat
from dataclasses import dataclass
from typing import Dict, List

from dotenv import dotenv_values


logger = logging.getLogger(__name__)


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() == 'true'


class Config:
    """Base configuration"""

    # Directories
    BASE_DIR = os.environ.get('PGBACKUPS_HOME') or '/opt/pgbackups'
    CONFIG_DIR = os.environ.get('CONFIG_DIR') or os.path.join(BASE_DIR, 'config')
    SITES_FILE = os.environ.get('SITES_FILE') or os.path.join(CONFIG_DIR, 'sites.conf')
    BACKUP_DIR = os.environ.get('BACKUP_DIR') or os.path.join(BASE_DIR, 'backups')
    LOG_DIR = os.environ.get('LOG_DIR') or os.path.join(BASE_DIR, 'logs')
    STATUS_FILE = os.environ.get('STATUS_FILE') or os.path.join(LOG_DIR, 'backup_status.log')

    # AWS (usually overridden by CONFIG_DIR/aws.conf)
    AWS_ACCESS_KEY_ID = os.environ.get('AWS_ACCESS_KEY_ID')
    AWS_SECRET_ACCESS_KEY = os.environ.get('AWS_SECRET_ACCESS_KEY')
    AWS_DEFAULT_REGION = os.environ.get('AWS_DEFAULT_REGION') or 'us-east-2'

    # Email via SES (usually overridden by CONFIG_DIR/email.conf)
    EMAIL_ENABLED = _env_bool('EMAIL_ENABLED', False)
    EMAIL_FROM = os.environ.get('EMAIL_FROM')
    EMAIL_TO = os.environ.get('EMAIL_TO')
    EMAIL_ON_FAILURE = _env_bool('EMAIL_ON_FAILURE', True)
    EMAIL_WEEKLY_DIGEST = _env_bool('EMAIL_WEEKLY_DIGEST', True)

    # Backup pipeline
    DOCKER_BASE_URL = os.environ.get('DOCKER_BASE_URL')  # unset = DOCKER_HOST or local socket
    MIN_DUMP_BYTES = int(os.environ.get('MIN_DUMP_BYTES') or 100)
    DUMP_TIMEOUT = os.environ.get('DUMP_TIMEOUT')  # seconds, unset = no limit

    # Scheduler
    BACKUP_SCHEDULE = os.environ.get('BACKUP_SCHEDULE') or '0 3 * * *'
    SCHEDULER_TIMEZONE = os.environ.get('SCHEDULER_TIMEZONE') or 'UTC'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    CONFIG_DIR = os.path.join(DATA_DIR, 'config')
    SITES_FILE = os.path.join(CONFIG_DIR, 'sites.conf')
    BACKUP_DIR = os.path.join(DATA_DIR, 'backups')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    STATUS_FILE = os.path.join(LOG_DIR, 'backup_status.log')


class TestingConfig(DevelopmentConfig):
    """Testing configuration"""
    TESTING = True
    AWS_DEFAULT_REGION = 'us-east-1'
    EMAIL_ENABLED = False


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}


class ConfigError(Exception):
    """Raised when configuration is missing or invalid."""
    pass


@dataclass(frozen=True)
class Site:
    """A database container and the bucket its backups go to."""
    source_ref: str
    store_ref: str

    @property
    def site_id(self) -> str:
        name = self.source_ref
        if name.endswith('-postgres'):
            name = name[:-len('-postgres')]
        return name


def parse_site(entry: str) -> Site:
    """
    Parse a CONTAINER:BUCKET site entry.

    Raises:
        ConfigError: If either half is missing
    """
    container, sep, bucket = entry.strip().partition(':')
    container, bucket = container.strip(), bucket.strip()

    if not sep or not container or not bucket:
        raise ConfigError(f"Invalid site entry format: {entry.strip()}. Expected CONTAINER:BUCKET")

    return Site(source_ref=container, store_ref=bucket)


def load_sites(path: str) -> List[Site]:
    """
    Read the site list, one CONTAINER:BUCKET per line, in file order.

    Blank lines and lines starting with # are ignored.

    Raises:
        ConfigError: If the file is missing or an entry is invalid
    """
    if not os.path.exists(path):
        raise ConfigError(f"Sites configuration not found: {path}")

    sites = []
    with open(path, 'r', encoding='utf-8') as f:
        for line in f:
            stripped = line.strip()
            if not stripped or stripped.startswith('#'):
                continue
            sites.append(parse_site(stripped))

    return sites


def _coerce(value: str):
    if value.lower() in ('true', 'false'):
        return value.lower() == 'true'
    return value


def load_conf_file(path: str) -> Dict[str, object]:
    """
    Read a shell-style KEY=VALUE configuration file.

    Parsed with python-dotenv, so comments (including trailing ones),
    `export` prefixes and quoting behave as they do under `source`.
    'true'/'false' become booleans; keys without a value are dropped.
    Warns when the file is readable by anyone but its owner, since these
    files hold secrets.

    Raises:
        ConfigError: If the file does not exist
    """
    if not os.path.exists(path):
        raise ConfigError(f"Configuration file not found: {path}")

    perms = stat.S_IMODE(os.stat(path).st_mode)
    if perms != 0o600:
        logger.warning(f"Config file {path} has insecure permissions ({perms:o}). Should be 600.")

    return {
        key: _coerce(value)
        for key, value in dotenv_values(path, encoding='utf-8').items()
        if value is not None
    }


def load_runtime_config(app):
    """
    Overlay CONFIG_DIR/aws.conf and the optional email.conf onto app.config.

    A missing aws.conf is not fatal here: credentials may come from the
    environment or an instance role.
    """
    config_dir = app.config['CONFIG_DIR']

    for name in ('aws', 'email'):
        path = os.path.join(config_dir, f"{name}.conf")
        if os.path.exists(path):
            app.config.update(load_conf_file(path))
            app.logger.debug(f"Loaded configuration from {path}")
