"""
Shopfloor engine settings, one class per environment.

    from shopfloor.config import config
    app.config.from_object(config[os.getenv("APP_ENV", "development")])

Every engine knob can be overridden from the environment; production
refuses to start without a database URL and a stable secret key.
"""

import os
import secrets

PROJECT_ROOT = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

LOCAL_SQLITE_URL = "sqlite:///" + os.path.join(PROJECT_ROOT, "instance", "shopfloor_dev.db")
MEMORY_SQLITE_URL = "sqlite:///:memory:"


def _env_int(name, default):
    return int(os.getenv(name, str(default)))


def _database_url(fallback=None):
    url = os.getenv("DATABASE_URL", "")
    if not url:
        return fallback
    # SQLAlchemy 2.x only accepts the postgresql:// scheme
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}

    # Flask-Limiter storage; memory:// keeps counters per process
    REDIS_URL = os.getenv("REDIS_URL", "memory://")
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # ── Routing & remediation engine ─────────────────────────────────────
    # Parent hops walked when resolving the root of a remediation chain
    REMEDIATION_CHAIN_MAX_DEPTH = _env_int("REMEDIATION_CHAIN_MAX_DEPTH", 10)
    # Priority stamped on synthesized remediation child orders
    REMEDIATION_CHILD_PRIORITY = os.getenv("REMEDIATION_CHILD_PRIORITY", "High")
    # Digits of the millisecond clock in the -RW<suffix> order number
    REMEDIATION_SUFFIX_DIGITS = _env_int("REMEDIATION_SUFFIX_DIGITS", 6)
    DEFAULT_REMEDIATION_SEVERITY = os.getenv("DEFAULT_REMEDIATION_SEVERITY", "major")
    DEFAULT_REMEDIATION_REASON = "Units failed quality inspection"


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(LOCAL_SQLITE_URL)


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", MEMORY_SQLITE_URL)
    RATELIMIT_ENABLED = False


class ProductionConfig(Config):
    """Instantiated by the factory so the checks in ``__init__`` run."""

    SQLALCHEMY_DATABASE_URI = _database_url()
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": _env_int("DB_POOL_SIZE", 5),
        "max_overflow": _env_int("DB_MAX_OVERFLOW", 10),
        "pool_recycle": 300,
        "pool_timeout": 20,
        # Step transitions are short; anything past 30s is stuck
        "connect_args": {"options": "-c statement_timeout=30000"},
    }

    def __init__(self):
        missing = []
        if not self.SQLALCHEMY_DATABASE_URI:
            missing.append("DATABASE_URL")
        if not os.getenv("SECRET_KEY"):
            missing.append("SECRET_KEY")
        if missing:
            raise RuntimeError(f"Production requires environment variables: {', '.join(missing)}")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
