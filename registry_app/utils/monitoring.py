# registry_app/utils/monitoring.py

import time
from datetime import datetime, timezone
from http import HTTPStatus

from flask import Response, abort, current_app, jsonify
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from registry_app.models import db


def _database_ping():
    started = time.perf_counter()
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.error("Health check database ping failed", extra={"error": str(exc)})
        return False, None
    return True, round((time.perf_counter() - started) * 1000, 2)


def _ensure_enabled():
    if not current_app.config.get("MONITORING_ENABLED", False):
        abort(HTTPStatus.NOT_FOUND)


def init_monitoring(app):
    """
    Register the health and metrics endpoints.

    Both answer 404 unless MONITORING_ENABLED is set when the request arrives.
    """
    if "registry_health" in app.view_functions:
        return

    health_path = app.config.get("HEALTH_CHECK_ENDPOINT", "/health")
    metrics_path = app.config.get("METRICS_ENDPOINT", "/metrics")

    @app.route(health_path, methods=["GET"], endpoint="registry_health")
    def health():
        _ensure_enabled()
        ok, latency_ms = _database_ping()
        payload = {
            "status": "ok" if ok else "degraded",
            "database": {"ok": ok, "latency_ms": latency_ms},
            "app": current_app.config.get("APP_NAME"),
            "version": current_app.config.get("APP_VERSION"),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        return jsonify(payload), HTTPStatus.OK if ok else HTTPStatus.SERVICE_UNAVAILABLE

    @app.route(metrics_path, methods=["GET"], endpoint="registry_metrics")
    def metrics():
        _ensure_enabled()
        return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)
