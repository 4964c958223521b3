from flask import Blueprint, current_app
from sqlalchemy import text

from app.riskdocs.db import db_session

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    return {"service": "riskdocs", "ok": True}


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON, including DB reachability."""
    db_ok = True
    try:
        db_session().execute(text("SELECT 1"))
    except Exception as e:
        current_app.logger.error("Health check DB probe failed: %s", e)
        db_ok = False
    return {"ok": db_ok, "db": db_ok}, (200 if db_ok else 503)


@bp.get("/healthz")
def healthz():
    """
    Fast health check for k8s/DO probes. No DB access, minimal overhead.
    Configure DO readiness probe to use this endpoint.
    """
    return "ok", 200
