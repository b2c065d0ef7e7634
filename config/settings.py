"""
Configuration settings for different environments
"""
import os
from datetime import timedelta

from dotenv import load_dotenv

load_dotenv()


def _database_url():
    url = os.environ.get('DATABASE_URL', '')
    if not url:
        # Fallback to SQLite for local development
        return 'sqlite:///kleanr.db'
    # Fix postgres:// to postgresql:// for SQLAlchemy 2.x
    if url.startswith('postgres://'):
        url = url.replace('postgres://', 'postgresql://', 1)
    return url


class Config:
    """Base configuration"""
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'dev-secret-key-change-in-production'

    # Auth
    JWT_SECRET = os.environ.get('JWT_SECRET') or 'dev-jwt-secret-change-in-production'
    JWT_EXPIRES_DAYS = int(os.environ.get('JWT_EXPIRES_DAYS', 30))

    # Database
    SQLALCHEMY_DATABASE_URI = _database_url()
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Security
    SESSION_COOKIE_SECURE = True
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'
    PERMANENT_SESSION_LIFETIME = timedelta(days=7)
    MAX_CONTENT_LENGTH = 16 * 1024 * 1024  # 16MB

    # CORS
    CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '')

    # Links embedded in invitation emails
    FRONTEND_URL = os.environ.get('FRONTEND_URL', 'http://localhost:8081')

    # Real-time
    SOCKETIO_ASYNC_MODE = os.environ.get('SOCKETIO_ASYNC_MODE', 'eventlet')

    # Rate limiting (Flask-Limiter)
    RATELIMIT_ENABLED = True

    # Background jobs
    ENABLE_SCHEDULER = os.environ.get('ENABLE_SCHEDULER', '').lower() == 'true'
    SCHEDULER_TENANT_PRESENT_INTERVAL_MINUTES = 5

    # Tenant-present workflow
    TENANT_PRESENT_RESPONSE_DEADLINE_MINUTES = 30
    TENANT_PRESENT_MIN_HOURS_FOR_RETURN = 2
    TENANT_PRESENT_GPS_VERIFICATION_METERS = 200
    TENANT_PRESENT_SCRUTINY_WATCH_COUNT = 3
    TENANT_PRESENT_SCRUTINY_HIGH_RISK_COUNT = 5
    TENANT_PRESENT_MAX_EXTRA_MINUTES = 60


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    TESTING = False
    SESSION_COOKIE_SECURE = False


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    TESTING = False

    # Enforce HTTPS
    SESSION_COOKIE_SECURE = True

    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_size': 20,
        'max_overflow': 40,
        'pool_recycle': 3600,
        'pool_pre_ping': True,
    }
