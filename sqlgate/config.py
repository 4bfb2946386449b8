"""
SQLGate: SQL change-order platform
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when no DATABASE_URL is given
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'sqlgate_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,   # recycle connections every 5 min
        "pool_timeout": 20,    # wait max 20s for a connection from pool
    }

    # Redis: pub/sub broker and gh-ost socket lookup store.
    # "memory://" keeps both in-process (single worker only).
    REDIS_URL = os.getenv("REDIS_URL", "memory://")

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Role name that grants administrator rights
    ADMIN_ROLE = os.getenv("ADMIN_ROLE", "admin")

    # Statement execution against target databases
    EXECUTE_TIMEOUT_SECONDS = int(os.getenv("EXECUTE_TIMEOUT_SECONDS", "600"))
    EXPORT_DIR = os.getenv("EXPORT_DIR", os.path.join(basedir, "instance", "exports"))
    STOP_ON_TASK_FAILURE = _env_bool("STOP_ON_TASK_FAILURE", "false")

    # gh-ost online schema change
    GHOST_BINARY = os.getenv("GHOST_BINARY", "gh-ost")
    GHOST_SOCKET_DIR = os.getenv("GHOST_SOCKET_DIR", "/tmp")
    GHOST_EXTRA_ARGS = os.getenv("GHOST_EXTRA_ARGS", "")
    GHOST_SOCKET_TTL = int(os.getenv("GHOST_SOCKET_TTL", str(24 * 3600)))

    # Deferred (scheduled) execution
    SCHEDULER_ENABLED = _env_bool("SCHEDULER_ENABLED", "true")


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", _SQLITE_DEV)


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    # In-memory SQLite runs on a static pool that rejects sizing options
    SQLALCHEMY_ENGINE_OPTIONS = {}
    REDIS_URL = "memory://"
    RATELIMIT_ENABLED = False
    SCHEDULER_ENABLED = False


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL")
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
