"""
Shopfloor Routing & Remediation Engine.

    from shopfloor import create_app
    app = create_app()                       # APP_ENV or "development"
    app = create_app("testing", role_repository=StaticRoleRepository({...}))
"""

import logging
import os

from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from shopfloor.config import config
from shopfloor.middleware.logging_config import configure_logging
from shopfloor.middleware.rate_limiter import init_rate_limits
from shopfloor.middleware.timing import init_request_timing
from shopfloor.models import db
from shopfloor.utils.errors import register_error_handlers

logger = logging.getLogger(__name__)

migrate = Migrate()
# Limits are attached per blueprint in init_rate_limits
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)


@event.listens_for(Engine, "connect")
def _sqlite_foreign_keys(dbapi_conn, connection_record):
    """SQLite ignores ON DELETE CASCADE / SET NULL unless asked per connection."""
    if "sqlite" not in type(dbapi_conn).__module__:
        return
    cur = dbapi_conn.cursor()
    try:
        cur.execute("PRAGMA foreign_keys=ON")
    finally:
        cur.close()


def _init_extensions(app):
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)

    origins = app.config.get("CORS_ORIGINS") or "*"
    if origins == "*":
        CORS(app)
    else:
        CORS(app, origins=[o.strip() for o in origins.split(",") if o.strip()])


def _load_models():
    """Import every model module so metadata (and Alembic) sees all tables."""
    from shopfloor.models import auth, batch, order, remediation, station, work_session  # noqa: F401


def _register_blueprints(app):
    from shopfloor.blueprints.batch_bp import batch_bp
    from shopfloor.blueprints.health_bp import health_bp
    from shopfloor.blueprints.order_bp import order_bp
    from shopfloor.blueprints.production_bp import production_bp
    from shopfloor.blueprints.remediation_bp import remediation_bp
    from shopfloor.blueprints.station_bp import station_bp

    for bp in (station_bp, order_bp, production_bp, remediation_bp, batch_bp, health_bp):
        app.register_blueprint(bp)


def _create_tables(app):
    uri = app.config["SQLALCHEMY_DATABASE_URI"]
    if uri.startswith("sqlite:///") and not uri.endswith(":memory:"):
        os.makedirs(app.instance_path, exist_ok=True)
    with app.app_context():
        try:
            db.create_all()
        except SQLAlchemyError as exc:
            app.logger.warning("Table creation skipped: %s", exc)
        else:
            app.logger.info("Tables ensured")


def create_app(config_name=None, role_repository=None):
    """
    Build the engine's Flask app.

    Args:
        config_name: "development", "testing" or "production"; defaults to
                     the APP_ENV env var, then "development".
        role_repository: ``RoleRepository`` used by the authorization
                         resolver. Defaults to the table-backed one.
    """
    config_name = config_name or os.getenv("APP_ENV", "development")
    settings = config[config_name]

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(settings() if settings is config["production"] else settings)

    # Logging first so extension setup is captured
    configure_logging(app)
    _init_extensions(app)
    init_request_timing(app)

    from shopfloor.services.role_repository import SqlRoleRepository
    app.extensions["role_repository"] = role_repository or SqlRoleRepository()

    _load_models()
    # Tests build and drop their own schema
    if not app.testing:
        _create_tables(app)

    _register_blueprints(app)
    register_error_handlers(app)
    init_rate_limits(app, limiter)
    return app
