"""
Application configuration
All tunables are read from environment variables
"""
import os
import secrets

# Load .env when python-dotenv is installed
try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    pass

# Project root (directory containing the notion_sync package)
BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def _env_float(name: str, default: str) -> float:
    return float(os.environ.get(name, default))


def _env_int(name: str, default: str) -> int:
    return int(os.environ.get(name, default))


class Config:
    """Base configuration"""

    # ==================== Security ====================
    SECRET_KEY = os.environ.get('SECRET_KEY') or secrets.token_hex(32)

    # API key protecting mutating endpoints (X-API-Key header)
    API_KEY = os.environ.get('API_KEY')

    # ==================== Database ====================
    DATABASE_URL = os.environ.get('DATABASE_URL')
    if DATABASE_URL:
        SQLALCHEMY_DATABASE_URI = DATABASE_URL
    else:
        SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(BASE_DIR, "notion_sync.db")}'

    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # ==================== CORS ====================
    CORS_ORIGINS = os.environ.get(
        'CORS_ORIGINS',
        'http://localhost:5173,http://127.0.0.1:5173'
    ).split(',')

    # ==================== Storage paths ====================
    MEDIA_PATH = os.environ.get('MEDIA_PATH') or os.path.join(BASE_DIR, 'datas', 'media')
    MEDIA_URL_PREFIX = os.environ.get('MEDIA_URL_PREFIX', '/media')

    # ==================== Logging ====================
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    LOG_FILE = os.environ.get('LOG_FILE')
    # e.g. "concurrency=DEBUG,media_queue=WARNING"
    LOG_COMPONENT_LEVELS = os.environ.get('LOG_COMPONENT_LEVELS', '')

    # ==================== Notion API ====================
    NOTION_API_KEY = os.environ.get('NOTION_API_KEY', '')
    NOTION_API_BASE = os.environ.get('NOTION_API_BASE', 'https://api.notion.com/v1/')
    NOTION_VERSION = os.environ.get('NOTION_VERSION', '2022-06-28')
    REQUEST_TIMEOUT = _env_float('REQUEST_TIMEOUT', '30')
    CONNECT_TIMEOUT = _env_float('CONNECT_TIMEOUT', '10')

    # ==================== Concurrency controller ====================
    CONCURRENCY_MIN = _env_int('CONCURRENCY_MIN', '5')
    CONCURRENCY_MAX = _env_int('CONCURRENCY_MAX', '30')
    CONCURRENCY_INITIAL = _env_int('CONCURRENCY_INITIAL', '10')
    # Re-evaluate the limit every N attempts or T seconds, whichever comes first
    CONCURRENCY_ADJUST_EVERY = _env_int('CONCURRENCY_ADJUST_EVERY', '20')
    CONCURRENCY_ADJUST_INTERVAL = _env_float('CONCURRENCY_ADJUST_INTERVAL', '10')
    QUALITY_HIGH_THRESHOLD = _env_float('QUALITY_HIGH_THRESHOLD', '0.85')
    QUALITY_LOW_THRESHOLD = _env_float('QUALITY_LOW_THRESHOLD', '0.6')

    # ==================== Retry / backoff ====================
    RETRY_MAX = _env_int('RETRY_MAX', '3')
    RATE_LIMIT_MAX_RETRIES = _env_int('RATE_LIMIT_MAX_RETRIES', '2')
    BACKOFF_BASE = _env_float('BACKOFF_BASE', '1.0')
    BACKOFF_MULTIPLIER = _env_float('BACKOFF_MULTIPLIER', '2.0')
    BACKOFF_MAX = _env_float('BACKOFF_MAX', '30.0')
    BACKOFF_JITTER = _env_float('BACKOFF_JITTER', '0.0')

    # ==================== Fetch / cache ====================
    CACHE_TTL = _env_float('CACHE_TTL', '300')
    BLOCK_TREE_MAX_DEPTH = _env_int('BLOCK_TREE_MAX_DEPTH', '3')

    # ==================== Sync coordinator ====================
    SYNC_LOCK_TTL = _env_int('SYNC_LOCK_TTL', '300')
    # Seconds a remote timestamp must exceed the local watermark by (0 = strict >)
    TIMESTAMP_TOLERANCE = _env_float('TIMESTAMP_TOLERANCE', '0')

    # ==================== Asset download queue ====================
    DOWNLOAD_BATCH_SIZE = _env_int('DOWNLOAD_BATCH_SIZE', '5')
    DOWNLOAD_MAX_RETRIES = _env_int('DOWNLOAD_MAX_RETRIES', '3')
    DOWNLOAD_RETRY_DELAY = _env_float('DOWNLOAD_RETRY_DELAY', '60')
    DOWNLOAD_STALE_TIMEOUT = _env_int('DOWNLOAD_STALE_TIMEOUT', '300')
    DOWNLOAD_HISTORY_SIZE = _env_int('DOWNLOAD_HISTORY_SIZE', '100')
    # Asset downloads run on their own controller
    DOWNLOAD_CONCURRENCY = _env_int('DOWNLOAD_CONCURRENCY', '5')
    DOWNLOAD_CONCURRENCY_MAX = _env_int('DOWNLOAD_CONCURRENCY_MAX', '10')
    DOWNLOAD_TIMEOUT = _env_float('DOWNLOAD_TIMEOUT', '60')
    QUEUE_WORKER_INTERVAL = _env_float('QUEUE_WORKER_INTERVAL', '30')
    QUEUE_WORKER_ENABLED = os.environ.get('QUEUE_WORKER_ENABLED', '').lower() in ('1', 'true', 'yes')

    @staticmethod
    def init_paths():
        """Create data directories"""
        for path in [Config.MEDIA_PATH]:
            if not os.path.exists(path):
                os.makedirs(path)

    @classmethod
    def get_cors_config(cls):
        """CORS options for /api/*"""
        return {
            "origins": cls.CORS_ORIGINS,
            "methods": ["GET", "POST", "OPTIONS"],
            "allow_headers": ["Content-Type", "X-API-Key", "Authorization"],
            "supports_credentials": True,
        }


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    LOG_LEVEL = 'DEBUG'


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    LOG_LEVEL = 'WARNING'

    @classmethod
    def validate(cls):
        """Warn about missing production settings"""
        errors = []

        if not os.environ.get('SECRET_KEY'):
            errors.append('SECRET_KEY is not set')

        if not os.environ.get('NOTION_API_KEY'):
            errors.append('NOTION_API_KEY is not set (every sync will fail with 401)')

        if not os.environ.get('API_KEY'):
            errors.append('API_KEY is not set (sync endpoints are unauthenticated)')

        if errors:
            print("Production configuration warnings:")
            for error in errors:
                print(f"  - {error}")
        return errors


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    NOTION_API_KEY = 'secret_test'
    BACKOFF_BASE = 0.0
    DOWNLOAD_RETRY_DELAY = 0.0
    QUEUE_WORKER_ENABLED = False


# Config lookup by FLASK_ENV
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}


def get_config():
    """Resolve the config class from FLASK_ENV"""
    env = os.environ.get('FLASK_ENV', 'development')
    return config.get(env, config['default'])
