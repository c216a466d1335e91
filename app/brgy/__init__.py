import logging
import os
from datetime import timedelta

from flask import Flask, g, request, session
from dotenv import load_dotenv
from sqlalchemy import inspect as sa_inspect

# Register every mapped class before anything touches the mapper registry.
import app.brgy.models  # noqa: F401
from app.brgy.config import load_config
from app.brgy.db import init_db, teardown_db_session
from app.brgy.errors import register_error_handlers
from app.brgy.notifications import LoggingNotificationSink
from app.brgy.routes import bp as routes_bp
from app.brgy.auth import bp as auth_bp, load_current_user
from app.brgy.storage import S3Storage, storage_from_config
from app.brgy.utils import utcnow
from app.brgy.modules.certificates.admin import bp as certificates_bp
from app.brgy.modules.certificates.rendering import renderer_from_config

_REQUIRED_TABLES = (
    "users",
    "residents",
    "certificate_requests",
    "issued_certificates",
    "certificate_sequences",
    "audit_events",
)


def create_app(overrides: dict | None = None) -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    if overrides:
        app.config.update(overrides)
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    logging.basicConfig(level=app.config.get("LOG_LEVEL") or "INFO")

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    # Collaborators; tests swap these out through app.extensions.
    app.extensions["brgy_clock"] = utcnow
    app.extensions["notification_sink"] = LoggingNotificationSink()
    app.extensions["brgy_storage"] = storage_from_config(app.config)
    app.extensions["brgy_renderer"] = renderer_from_config(app.config)

    # Storage health check (fail loudly on misconfiguration)
    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [k for k in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY") if not app.config.get(k)]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))
        else:
            try:
                storage = app.extensions["brgy_storage"]
                if isinstance(storage, S3Storage):
                    storage._client().head_bucket(Bucket=storage.bucket)
                    app.logger.info("Storage health check PASSED: S3 bucket '%s' accessible", storage.bucket)
            except Exception as e:
                app.logger.error("STORAGE CONFIG ERROR: Cannot access S3 bucket: %s", e)

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(certificates_bp, url_prefix="/api")
    register_error_handlers(app)

    @app.before_request
    def _load_user():
        if not request.path.startswith(("/health", "/healthz")):
            session.permanent = True
        return load_current_user()

    app.teardown_appcontext(teardown_db_session)

    # Schema health (lean): log once when the database is behind the models.
    def _run_schema_health_check() -> None:
        try:
            insp = sa_inspect(app.extensions["sqlalchemy_engine"])
            missing = [t for t in _REQUIRED_TABLES if not insp.has_table(t)]
        except Exception as e:
            app.logger.exception("Schema health check failed: %s", e)
            return
        if missing:
            app.logger.warning("DB schema out of date; run `alembic upgrade head`. Missing tables: %s", ", ".join(missing))

    _run_schema_health_check()

    @app.after_request
    def _request_id_header(response):
        rid = getattr(g, "request_id", None)
        if rid:
            response.headers["X-Request-ID"] = rid
        return response

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")
    return app
