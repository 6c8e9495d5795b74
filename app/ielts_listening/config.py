"""Flask application configuration."""
import os
from datetime import timedelta


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in {'1', 'true', 'yes', 'y'}


class Config:
    """Base configuration."""

    # Flask
    SECRET_KEY = os.environ.get('SECRET_KEY', 'dev-secret-key-change-in-production')

    # Database
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        'DATABASE_URL',
        'sqlite:///ielts_listening.db'
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_pre_ping': True,
        'pool_recycle': 300,
    }

    # Session
    PERMANENT_SESSION_LIFETIME = timedelta(days=7)
    SESSION_COOKIE_SECURE = False  # Set True in production with HTTPS
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'

    # CORS (dashboard client runs on its own origin)
    CORS_ALLOWED_ORIGINS = os.environ.get('CORS_ALLOWED_ORIGINS', '*')

    # Audio storage / synthesis
    AWS_REGION = os.environ.get('AWS_REGION', 'eu-west-2').strip()
    AUDIO_BUCKET = os.environ.get('AWS_S3_BUCKET', 'ielts-ai-audio')
    AUDIO_MIN_BYTES = int(os.environ.get('AUDIO_MIN_BYTES', '2048'))
    AUDIO_REJECT_UNDERSIZED = _env_bool('AUDIO_REJECT_UNDERSIZED', 'true')
    AUDIO_WORDS_PER_MINUTE = int(os.environ.get('AUDIO_WORDS_PER_MINUTE', '165'))
    POLLY_SAMPLE_RATE = os.environ.get('POLLY_SAMPLE_RATE', '22050')

    # Pipeline deadlines (seconds)
    SCRIPT_STAGE_TIMEOUT_SECONDS = float(os.environ.get('SCRIPT_STAGE_TIMEOUT_SECONDS', '60'))
    QUESTIONS_STAGE_TIMEOUT_SECONDS = float(os.environ.get('QUESTIONS_STAGE_TIMEOUT_SECONDS', '60'))
    AUDIO_STAGE_TIMEOUT_SECONDS = float(os.environ.get('AUDIO_STAGE_TIMEOUT_SECONDS', '90'))
    CONTENT_READ_TIMEOUT_SECONDS = float(os.environ.get('CONTENT_READ_TIMEOUT_SECONDS', '240'))

    # Pipeline behaviour
    STAGE_LOCK_TTL_SECONDS = int(os.environ.get('STAGE_LOCK_TTL_SECONDS', '300'))
    PREGENERATION_MAX_WORKERS = int(os.environ.get('PREGENERATION_MAX_WORKERS', '4'))
    PIPELINE_VERIFY_AUDIO_ON_READ = _env_bool('PIPELINE_VERIFY_AUDIO_ON_READ', 'false')

    # Learner defaults when no study plan exists
    DEFAULT_USER_LEVEL = 5
    DEFAULT_TARGET_BAND = 7.0
    FALLBACK_USER_LEVEL = 1


class DevelopmentConfig(Config):
    """Development configuration."""
    DEBUG = True
    TESTING = False


class ProductionConfig(Config):
    """Production configuration."""
    DEBUG = False
    TESTING = False
    SESSION_COOKIE_SECURE = True


class TestingConfig(Config):
    """Test configuration (in-memory database, no external deadlines)."""
    DEBUG = False
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_ENGINE_OPTIONS = {}
    SECRET_KEY = 'test-secret-key'


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}
