import os


def _env_int(name, default):
    value = os.environ.get(name)
    return int(value) if value not in (None, '') else default


def _env_bool(name, default):
    value = os.environ.get(name)
    if value in (None, ''):
        return default
    return value.lower() in ('1', 'true', 'yes', 'on')


class Config:
    """Base configuration"""

    # History database (not the database being backed up)
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/sqlkeeper.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'

    # Database connections that can be backed up
    DB_CONNECTION = os.environ.get('DB_CONNECTION', 'mysql')
    DB_CONNECTIONS = {
        DB_CONNECTION: {
            'driver': os.environ.get('DB_DRIVER') or DB_CONNECTION,
            'host': os.environ.get('DB_HOST', '127.0.0.1'),
            'port': _env_int('DB_PORT', None),
            'database': os.environ.get('DB_DATABASE'),
            'username': os.environ.get('DB_USERNAME'),
            'password': os.environ.get('DB_PASSWORD'),
            'charset': os.environ.get('DB_CHARSET', 'utf8mb4'),
            'collation': os.environ.get('DB_COLLATION', 'utf8mb4_unicode_ci'),
        }
    }

    # Backups
    BACKUP_DIR = os.environ.get('BACKUP_DIR') or '/data/backups'
    BACKUP_RETENTION_DAYS = _env_int('BACKUP_RETENTION_DAYS', 7)
    BACKUP_MAX_COUNT = _env_int('BACKUP_MAX_COUNT', 10)
    BACKUP_COMPRESSION = os.environ.get('BACKUP_COMPRESSION', 'gzip')
    BACKUP_STORAGE = os.environ.get('BACKUP_STORAGE', 'local')

    # Dump utilities (resolved from PATH when unset)
    DUMP_BINARIES = {
        'mysql': os.environ.get('MYSQLDUMP_PATH'),
        'postgres': os.environ.get('PG_DUMP_PATH'),
    }
    DUMP_TIMEOUT = _env_int('DUMP_TIMEOUT', 3600)
    PUBLISH_TIMEOUT = _env_int('PUBLISH_TIMEOUT', 300)

    # Storage disks for publishing backups
    STORAGE_DISKS = {}
    if os.environ.get('S3_BUCKET'):
        STORAGE_DISKS['s3'] = {
            'driver': 's3',
            'bucket_name': os.environ.get('S3_BUCKET'),
            'region': os.environ.get('S3_REGION', 'us-east-1'),
            'access_key': os.environ.get('S3_ACCESS_KEY'),
            'secret_key': os.environ.get('S3_SECRET_KEY'),
            'prefix': os.environ.get('S3_PREFIX', 'backups'),
            'endpoint_url': os.environ.get('S3_ENDPOINT_URL'),
            'timeout': PUBLISH_TIMEOUT,
        }
    if os.environ.get('SFTP_HOST'):
        STORAGE_DISKS['sftp'] = {
            'driver': 'sftp',
            'host': os.environ.get('SFTP_HOST'),
            'port': _env_int('SFTP_PORT', 22),
            'username': os.environ.get('SFTP_USERNAME'),
            'password': os.environ.get('SFTP_PASSWORD'),
            'private_key': os.environ.get('SFTP_PRIVATE_KEY'),
            'path': os.environ.get('SFTP_PATH', 'backups'),
            'timeout': PUBLISH_TIMEOUT,
        }

    # Scheduler
    BACKUP_SCHEDULE_ENABLED = _env_bool('BACKUP_SCHEDULE_ENABLED', False)
    BACKUP_FREQUENCY = os.environ.get('BACKUP_FREQUENCY', 'daily')  # hourly, daily, weekly
    BACKUP_TIME = os.environ.get('BACKUP_TIME', '01:00')
    SCHEDULER_TIMEZONE = 'UTC'

    # Monitoring
    DB_SIZE_WARNING_MB = _env_int('DB_SIZE_WARNING_MB', 1000)


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = False

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "sqlkeeper.db")}'
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    BACKUP_DIR = os.environ.get('BACKUP_DIR') or os.path.join(DATA_DIR, 'backups')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    BACKUP_SCHEDULE_ENABLED = False
    LOG_DIR = None


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
