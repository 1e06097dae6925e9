import os


def _env_flag(name, default='false'):
    return os.environ.get(name, default).lower() == 'true'


def _env_float(name):
    value = os.environ.get(name)
    return float(value) if value else None


class Config:
    """Base configuration"""

    # Database (run history)
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/dbackup.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Backup configuration file
    DBACKUP_CONFIG = os.environ.get('DBACKUP_CONFIG') or '/etc/dbackup/backup.yml'

    # Logging
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'

    # Scheduler
    SCHEDULER_AUTOSTART = _env_flag('DBACKUP_SCHEDULER_AUTOSTART')
    SCHEDULER_SHUTDOWN_TIMEOUT = _env_float('DBACKUP_SHUTDOWN_TIMEOUT')  # seconds, None waits forever

    # Status API
    RUNS_DEFAULT_LIMIT = 50
    RUNS_MAX_LIMIT = 200


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = False

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or f'sqlite:///{os.path.join(DATA_DIR, "dbackup.db")}'
    DBACKUP_CONFIG = os.environ.get('DBACKUP_CONFIG') or os.path.join(BASE_DIR, 'backup.yml')
    LOG_DIR = os.environ.get('LOG_DIR') or os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Test configuration"""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    DBACKUP_CONFIG = 'backup.yml'
    LOG_DIR = None  # Console only
    SCHEDULER_AUTOSTART = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
