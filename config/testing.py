"""
Testing configuration for the Kleanr backend
"""
import os
from config.settings import Config


class TestingConfig(Config):
    """Testing configuration with isolated database and safe defaults"""

    TESTING = True
    DEBUG = False

    # Use in-memory SQLite for fast tests
    SQLALCHEMY_DATABASE_URI = os.getenv(
        'TEST_DATABASE_URL',
        'sqlite:///:memory:'
    )

    JWT_SECRET = 'test-jwt-secret'
    SESSION_COOKIE_SECURE = False

    # Disable rate limiting in tests
    RATELIMIT_ENABLED = False

    # No background threads while testing
    ENABLE_SCHEDULER = False
    SOCKETIO_ASYNC_MODE = 'threading'

    FRONTEND_URL = 'http://localhost:8081'
    CORS_ORIGINS = 'http://localhost:8081,http://localhost:3000'
