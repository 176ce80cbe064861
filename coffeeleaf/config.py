# =============================================================================
# CoffeeLeaf Backend
# config.py - Configuration Management
#
# Environment-based configuration for development, testing, and production.
# Uses python-dotenv to load environment variables from .env file.
# =============================================================================

import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def _env_bool(name, default):
    return os.getenv(name, str(default)).lower() == 'true'


class Config:
    """
    Base configuration class with default settings.
    All other configuration classes inherit from this.
    """

    # ==========================================================================
    # Flask Core Settings
    # ==========================================================================
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')
    DEBUG = False
    TESTING = False

    # ==========================================================================
    # Database Configuration
    # ==========================================================================
    SQLALCHEMY_DATABASE_URI = os.getenv(
        'DATABASE_URL',
        'sqlite:///coffeeleaf.db'
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_pre_ping': True
    }

    # ==========================================================================
    # Rate Limiting Configuration
    # ==========================================================================
    RATELIMIT_ENABLED = _env_bool('RATELIMIT_ENABLED', True)
    RATELIMIT_STORAGE_URI = os.getenv('RATELIMIT_STORAGE_URL', 'memory://')
    RATELIMIT_STRATEGY = os.getenv('RATELIMIT_STRATEGY', 'fixed-window')
    RATELIMIT_DEFAULT = os.getenv('RATELIMIT_DEFAULT', '200 per hour')
    RATELIMIT_HEADERS_ENABLED = True

    # ==========================================================================
    # CORS Configuration
    # ==========================================================================
    CORS_ORIGINS = os.getenv('CORS_ORIGINS', 'http://localhost:5173').split(',')
    CORS_SUPPORTS_CREDENTIALS = True

    # ==========================================================================
    # File Upload Configuration
    # ==========================================================================
    MAX_CONTENT_LENGTH = 16 * 1024 * 1024  # 16MB max file size
    UPLOAD_FOLDER = os.getenv('UPLOAD_FOLDER', os.path.join(BASE_DIR, 'uploads'))
    ALLOWED_EXTENSIONS = {'png', 'jpg', 'jpeg', 'webp', 'bmp'}
    BATCH_MAX_IMAGES = int(os.getenv('BATCH_MAX_IMAGES', 10))

    # ==========================================================================
    # ML Model Configuration
    # ==========================================================================
    MODEL_PATH = os.getenv('MODEL_PATH', os.path.join(BASE_DIR, 'models'))
    MODEL_SEARCH_PATHS = os.getenv('MODEL_SEARCH_PATHS', '')
    CNN_MODEL_FILE = os.getenv('CNN_MODEL_FILE', 'coffee_resnet50_v1.1.onnx')
    MLP_MODEL_FILE = os.getenv('MLP_MODEL_FILE', 'coffee_mlp_v1.0.onnx')
    LOAD_MODELS = _env_bool('LOAD_MODELS', True)
    SYMPTOM_FUSION_ENABLED = _env_bool('SYMPTOM_FUSION_ENABLED', True)
    LEAF_SCORE_THRESHOLD = float(os.getenv('LEAF_SCORE_THRESHOLD', 0.3))
    ENHANCE_QUALITY_THRESHOLD = float(os.getenv('ENHANCE_QUALITY_THRESHOLD', 0.7))
    ENSEMBLE_MAX_WORKERS = int(os.getenv('ENSEMBLE_MAX_WORKERS', 4))

    # ==========================================================================
    # Result Cache Configuration
    # ==========================================================================
    REDIS_URL = os.getenv('REDIS_URL', '')
    CACHE_TTL_SECONDS = int(os.getenv('CACHE_TTL_SECONDS', 7 * 24 * 3600))
    CACHE_MEMORY_TTL_SECONDS = int(os.getenv('CACHE_MEMORY_TTL_SECONDS', 3600))
    CACHE_MEMORY_MAX_ENTRIES = int(os.getenv('CACHE_MEMORY_MAX_ENTRIES', 1000))
    CACHE_REDIS_TIMEOUT = float(os.getenv('CACHE_REDIS_TIMEOUT', 2.0))

    # ==========================================================================
    # Queue Configuration
    # ==========================================================================
    QUEUE_URL = os.getenv('QUEUE_URL', '')
    QUEUE_TOPIC = os.getenv('QUEUE_TOPIC', 'image-processing')
    QUEUE_RESULT_TOPIC = os.getenv('QUEUE_RESULT_TOPIC', 'prediction-results')
    QUEUE_GROUP_ID = os.getenv('QUEUE_GROUP_ID', 'coffeeleaf-workers')
    QUEUE_PUBLISH_TIMEOUT = float(os.getenv('QUEUE_PUBLISH_TIMEOUT', 5.0))
    QUEUE_POLL_TIMEOUT_MS = int(os.getenv('QUEUE_POLL_TIMEOUT_MS', 1000))

    # ==========================================================================
    # Logging Configuration
    # ==========================================================================
    LOG_DIR = os.getenv('LOG_DIR', '')


class DevelopmentConfig(Config):
    """
    Development configuration with debug mode enabled.
    Uses SQLite database and an in-process queue.
    """
    DEBUG = True

    SQLALCHEMY_DATABASE_URI = os.getenv(
        'DATABASE_URL',
        'sqlite:///coffeeleaf_dev.db'
    )

    QUEUE_URL = os.getenv('QUEUE_URL', 'memory://')

    # Relaxed rate limiting for development
    RATELIMIT_DEFAULT = '1000 per hour'


class TestingConfig(Config):
    """
    Testing configuration for automated tests.
    Uses in-memory SQLite database for fast test execution.
    """
    TESTING = True
    DEBUG = True

    # In-memory database for testing
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Disable rate limiting during tests
    RATELIMIT_ENABLED = False

    # No external services or model files
    REDIS_URL = ''
    QUEUE_URL = 'memory://'
    QUEUE_RESULT_TOPIC = ''
    LOAD_MODELS = False
    MODEL_SEARCH_PATHS = ''


class ProductionConfig(Config):
    """
    Production configuration with security hardening.
    Requires all secrets to be set via environment variables.
    """
    DEBUG = False
    TESTING = False

    # Production requires proper DATABASE_URL
    SQLALCHEMY_DATABASE_URI = os.getenv('DATABASE_URL')

    # Connection pooling for production performance
    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_size': 10,
        'pool_recycle': 3600,
        'pool_pre_ping': True,
        'max_overflow': 20,
        'pool_timeout': 30
    }

    # Use Redis for rate limiting in production
    RATELIMIT_STORAGE_URI = os.getenv('REDIS_URL') or 'memory://'

    # Stricter rate limits for production
    RATELIMIT_DEFAULT = '100 per hour'


# =============================================================================
# Configuration Dictionary
# Maps environment names to configuration classes
# =============================================================================
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': DevelopmentConfig
}



def get_config(config_name=None):
    """
    Get the configuration class for an environment name.

    Args:
        config_name: Environment name; defaults to FLASK_ENV or 'development'

    Returns:
        Config: Configuration class, DevelopmentConfig for unknown names
    """
    env = config_name or os.getenv('FLASK_ENV', 'development')
    return config.get(env, config['default'])
