# registry_app/routes/public.py

"""
Public read endpoints: person listing, detail, export, stats and blob serving.
"""

import mimetypes

from flask import Blueprint, Response, current_app, jsonify, request, stream_with_context
from flask_login import current_user
from sqlalchemy import or_

from registry_app.models import Person, PersonVersion, db
from registry_app.reconcile.errors import NotFoundError
from registry_app.reconcile.export import iter_export_chunks
from registry_app.reconcile.stats import public_stats
from registry_app.services import BlobNotFound, get_blob_store
from registry_app.utils.identity import role_required

from .common import paginated, pagination_args

public_blueprint = Blueprint("registry_public", __name__, url_prefix="/api")


def _live_person_or_404(person_id: int) -> Person:
    person = db.session.get(Person, person_id)
    if person is None or person.is_deleted:
        raise NotFoundError(f"Person {person_id} not found.", person_id=person_id)
    return person


@public_blueprint.get("/persons")
def list_persons():
    page, per_page = pagination_args()
    query = Person.query.filter(Person.is_deleted.is_(False))
    external_id = (request.args.get("external_id") or "").strip()
    if external_id:
        query = query.filter(Person.external_id == external_id)
    name = (request.args.get("name") or "").strip()
    if name:
        query = query.filter(
            or_(Person.name.icontains(name, autoescape=True), Person.name_english.icontains(name, autoescape=True))
        )
    total = query.count()
    persons = query.order_by(Person.id).offset((page - 1) * per_page).limit(per_page).all()
    return jsonify(paginated([person.to_dict() for person in persons], total, page, per_page))


@public_blueprint.get("/persons/<int:person_id>")
def get_person(person_id: int):
    return jsonify(_live_person_or_404(person_id).to_dict())


@public_blueprint.get("/persons/<int:person_id>/history")
@role_required("moderator")
def person_history(person_id: int):
    """Full version history, including for soft-deleted persons."""
    person = db.session.get(Person, person_id)
    if person is None:
        raise NotFoundError(f"Person {person_id} not found.", person_id=person_id)
    versions = (
        PersonVersion.query.filter(PersonVersion.person_id == person.id)
        .order_by(PersonVersion.version_number)
        .all()
    )
    current_app.logger.debug(
        "Person history requested",
        extra={"person_id": person_id, "principal_id": current_user.id, "versions": len(versions)},
    )
    return jsonify({"person": person.to_dict(), "versions": [version.to_dict() for version in versions]})


@public_blueprint.get("/export.csv")
def export_persons():
    response = Response(stream_with_context(iter_export_chunks()), mimetype="text/csv")
    response.headers["Content-Disposition"] = "attachment; filename=persons.csv"
    return response


@public_blueprint.get("/stats")
def stats():
    return jsonify(public_stats())


def _register_blob_route(app):
    base_url = app.config.get("REGISTRY_BLOB_BASE_URL", "/blobs").rstrip("/")
    if "registry_blob" in app.view_functions:
        return

    @app.get(f"{base_url}/<key>", endpoint="registry_blob")
    def serve_blob(key: str):
        store = get_blob_store(current_app)
        try:
            data = store.open(f"{store.base_url}/{key}")
        except BlobNotFound as exc:
            raise NotFoundError("Blob not found.", key=key) from exc
        return Response(data, mimetype=mimetypes.guess_type(key)[0] or "application/octet-stream")


def register_public_routes(app):
    if public_blueprint.name not in app.blueprints:
        app.register_blueprint(public_blueprint)
    _register_blob_route(app)
