# registry_app/utils/error_handler.py

from http import HTTPStatus

from flask import current_app, jsonify, request
from werkzeug.exceptions import HTTPException

from registry_app.models import db
from registry_app.reconcile.errors import ErrorKind, ReconcileError

KIND_TO_STATUS = {
    ErrorKind.VALIDATION: HTTPStatus.UNPROCESSABLE_ENTITY,
    ErrorKind.CONFLICT: HTTPStatus.CONFLICT,
    ErrorKind.NOT_FOUND: HTTPStatus.NOT_FOUND,
    ErrorKind.FORBIDDEN: HTTPStatus.FORBIDDEN,
    ErrorKind.PERSISTENCE: HTTPStatus.INTERNAL_SERVER_ERROR,
}


def status_for(error: ReconcileError) -> HTTPStatus:
    return KIND_TO_STATUS.get(error.kind, HTTPStatus.INTERNAL_SERVER_ERROR)


def init_error_handlers(app):
    """Register JSON error handlers for engine errors and HTTP failures."""

    @app.errorhandler(ReconcileError)
    def handle_reconcile_error(error):
        db.session.rollback()
        status = status_for(error)
        log = current_app.logger.error if status >= 500 else current_app.logger.info
        log(
            "Registry request failed",
            extra={
                "error_kind": error.kind.value,
                "error_type": type(error).__name__,
                "path": request.path,
                "status": int(status),
            },
        )
        return jsonify(error.to_dict()), status

    @app.errorhandler(HTTPException)
    def handle_http_exception(error):
        return (
            jsonify({"error": error.description, "kind": "http", "details": {"status": error.code}}),
            error.code,
        )

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        db.session.rollback()
        current_app.logger.exception(
            "Unhandled error while processing request",
            extra={"path": request.path, "method": request.method},
        )
        return (
            jsonify({"error": "Internal server error.", "kind": "internal", "details": {}}),
            HTTPStatus.INTERNAL_SERVER_ERROR,
        )
