import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request, session
from sqlalchemy import inspect as sa_inspect

from app.riskdocs.config import load_config
from app.riskdocs.db import init_db, teardown_db_session
from app.riskdocs.errors import LifecycleError
from app.riskdocs.models import Base
from app.riskdocs.routes import bp as routes_bp
from app.riskdocs.auth import bp as auth_bp, load_current_user
from app.riskdocs.modules.documents.admin import bp as documents_bp
from app.riskdocs.modules.documents.events import connect_default_handlers
from app.riskdocs.modules.documents.write_lock import install_write_lock
from app.riskdocs.modules.external_access.admin import bp as access_links_bp, client_bp
from app.riskdocs.storage import StorageError

_PUBLIC_PREFIXES = ("/static/", "/health", "/healthz", "/client/")


def _configure_logging(app: Flask) -> None:
    level = getattr(logging, str(app.config.get("LOG_LEVEL") or "INFO").upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger("app.riskdocs").setLevel(level)
    app.logger.setLevel(level)


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True
    _configure_logging(app)

    # CSRF protection (minimal)
    from app.riskdocs.security import ensure_csrf_token, validate_csrf

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(_PUBLIC_PREFIXES):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # Allow safe auth endpoints to pass through (login/logout)
            if (request.endpoint or "").startswith("auth."):
                return None
            if not validate_csrf(request):
                return jsonify({"success": False, "error": "CSRF token missing or invalid.", "code": "CSRF_INVALID"}), 400

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")
    if float(app.config.get("ARTIFACT_TIMEOUT_SECONDS") or 0) <= 0:
        raise RuntimeError("ARTIFACT_TIMEOUT_SECONDS must be positive.")

    init_db(app)
    # Flush-time write lock on every session handed out by this app.
    install_write_lock(app.extensions["sqlalchemy_sessionmaker"])

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    # Storage health check (fail loudly on misconfiguration)
    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = []
        for key in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY"):
            if not app.config.get(key):
                missing_s3.append(key)
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))
        else:
            try:
                from app.riskdocs.storage import storage_from_config, S3Storage
                storage = storage_from_config(app.config)
                if isinstance(storage, S3Storage):
                    storage._client().head_bucket(Bucket=storage.bucket)
                    app.logger.info("Storage health check PASSED: S3 bucket '%s' accessible", storage.bucket)
            except Exception as e:
                app.logger.error("STORAGE CONFIG ERROR: Cannot access S3 bucket: %s", e)

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(documents_bp, url_prefix="/api/documents")
    app.register_blueprint(access_links_bp, url_prefix="/api/access-links")
    app.register_blueprint(client_bp, url_prefix="/client")

    connect_default_handlers(app)

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)

    # Schema health (lean): detect drift between code expectations and DB schema.
    app.config.setdefault("_schema_health_ok", True)
    app.config.setdefault("_schema_health_missing", [])

    def _run_schema_health_check() -> None:
        missing: list[str] = []
        try:
            insp = sa_inspect(app.extensions["sqlalchemy_engine"])
            existing = set(insp.get_table_names())
            missing = sorted(t for t in Base.metadata.tables if t not in existing)
        except Exception as e:
            app.logger.exception("Schema health check failed: %s", e)
        # An empty database is a fresh install (tests/scripts create tables next); only partial schemas are drift.
        if missing and len(missing) < len(Base.metadata.tables):
            app.config["_schema_health_ok"] = False
            app.config["_schema_health_missing"] = missing
            app.logger.error("DB schema out of date; run `alembic upgrade head`. Missing: %s", ", ".join(missing))

    _run_schema_health_check()

    @app.before_request
    def _schema_health_guardrail():  # type: ignore[no-redef]
        if app.config.get("_schema_health_ok"):
            return None
        if request.path.startswith("/api/"):
            missing = app.config.get("_schema_health_missing") or []
            return jsonify({"success": False, "error": "Database schema is out of date.", "code": "SCHEMA_OUT_OF_DATE", "missing": missing}), 500
        return None

    @app.errorhandler(LifecycleError)
    def _err_lifecycle(e: LifecycleError):  # type: ignore[no-redef]
        if e.http_status >= 500:
            app.logger.error("%s (request_id=%s): %s", e.code, getattr(g, "request_id", None), e.message)
        return jsonify(e.to_dict()), e.http_status

    @app.errorhandler(StorageError)
    def _err_storage(e: StorageError):  # type: ignore[no-redef]
        app.logger.error("Storage failure (request_id=%s): %s", getattr(g, "request_id", None), e)
        return jsonify({"success": False, "error": "Storage is unavailable.", "code": "STORAGE_ERROR"}), 502

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return jsonify({"success": False, "error": "Internal server error.", "code": "INTERNAL_ERROR"}), 500

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        return jsonify({"success": False, "error": "Forbidden.", "code": "FORBIDDEN", "missing_permission": missing}), 403

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return jsonify({"success": False, "error": "Not found.", "code": "NOT_FOUND"}), 404

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        return jsonify({"success": False, "error": "File too large. Maximum size is 25MB.", "code": "FILE_TOO_LARGE"}), 413

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
