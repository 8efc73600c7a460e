import os


class Config:
    """Base configuration"""

    # Flask
    # Get SECRET_KEY from environment, or generate a persistent one in development
    SECRET_KEY = os.environ.get('SECRET_KEY')
    if not SECRET_KEY:
        # Try to read from persistent file in /data directory
        secret_file = '/data/.secret_key'
        if os.path.exists(secret_file):
            with open(secret_file, 'r') as f:
                SECRET_KEY = f.read().strip()
        else:
            # Stored server passwords become unreadable once this key changes
            import secrets
            SECRET_KEY = secrets.token_hex(32)
            print("WARNING: Using non-persistent SECRET_KEY. Set SECRET_KEY environment variable.")

    # Database
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/serverbackup.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Logging
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'

    # Backup runs
    REMOTE_TMP_ROOT = os.environ.get('REMOTE_TMP_ROOT') or '/tmp'
    FALLBACK_BACKUP_DIR = os.environ.get('FALLBACK_BACKUP_DIR') or '~/Server-Backups'
    SSH_CONNECT_TIMEOUT = int(os.environ.get('SSH_CONNECT_TIMEOUT', 30))
    RUN_LOCK_STALE_HOURS = int(os.environ.get('RUN_LOCK_STALE_HOURS', 24))

    # Scheduler
    SCHEDULER_TIMEZONE = os.environ.get('SCHEDULER_TIMEZONE') or 'UTC'
    SCHEDULER_RESYNC_SECONDS = int(os.environ.get('SCHEDULER_RESYNC_SECONDS', 60))
    SCHEDULER_ENABLED = os.environ.get('SCHEDULER_ENABLED', 'true').lower() == 'true'

    # Session
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = False

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "serverbackup.db")}'
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class TestingConfig(Config):
    """Test configuration: in-memory database, no background scheduler"""
    TESTING = True
    DEBUG = False
    SECRET_KEY = 'test-secret-key'
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    LOG_DIR = None  # console only
    SCHEDULER_ENABLED = False


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False

    # Production security
    SESSION_COOKIE_SECURE = os.environ.get('HTTPS_ENABLED', 'false').lower() == 'true'


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}
